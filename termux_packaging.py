import argparse

import apt_repo
import bootstraps
import checkrepo
import debinfo
import notfound


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="termux-packaging",
        description="Termux packaging tools.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    bootstraps_parser = subparsers.add_parser(
        "bootstraps",
        help="Create bootstrap zips using packages from the apt repository"
    )
    bootstraps_parser.add_argument(
        'directory',
        help='Output directory to create the bootstrap-<arch>.zip files in'
    )
    bootstraps_parser.add_argument(
        '--repo-url',
        type=str,
        default=apt_repo.DEFAULT_REPO_URL,
        help='Base URL of the apt repository packages are downloaded from.'
    )
    bootstraps_parser.add_argument(
        '--arch',
        dest='arches',
        action='append',
        choices=bootstraps.ARCHITECTURES,
        help='Architecture to build (repeatable). Defaults to all of them.'
    )

    checkrepo_parser = subparsers.add_parser("checkrepo", help="Check a local repository for problems")
    checkrepo_parser.add_argument('directory', help='Path to directory containing binary-* directories')

    debinfo_parser = subparsers.add_parser("debinfo", help="Show information about a deb file")
    debinfo_parser.add_argument('file', metavar='DEBFILE', help='The .deb file to inspect')

    notfound_parser = subparsers.add_parser("notfound", help="Update the command-not-found headers")
    notfound_parser.add_argument('repo', help='A directory containing packages to scan for binaries')
    notfound_parser.add_argument('output', help='The directory where the commands-$ARCH.h files will be created')

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.command == "bootstraps":
            bootstraps.create(
                args.directory,
                arches=tuple(args.arches or bootstraps.ARCHITECTURES),
                repo_url=args.repo_url,
            )
        elif args.command == "checkrepo":
            problems = checkrepo.check(args.directory)
            if problems:
                print(f"\nFound {len(problems)} problem(s).")
                return 1
        elif args.command == "debinfo":
            debinfo.print_info(args.file)
        elif args.command == "notfound":
            notfound.update(args.repo, args.output)
    except RuntimeError as e:
        raise RuntimeError(f"\nCRITICAL ERROR while running '{args.command}': {e}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
