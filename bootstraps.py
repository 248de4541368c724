import hashlib
import os
import zipfile
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

import requests

import apt_repo
from apt_repo import PackageRecord
from deb_file import DebEntry, DebVisitor, EntryKind, visit_files

"""
Create bootstrap zips: one minimal Termux root filesystem per architecture.

For every architecture we download a hand-picked list of packages, unpack their data
members straight into a zip file and synthesize the dpkg database that apt/dpkg expect
to find on first start:

    var/lib/dpkg/status             -> one stanza per package, marked as installed
    var/lib/dpkg/info/$PKG.list     -> every file of the package plus its parent directories
    var/lib/dpkg/info/$PKG.md5sums  -> md5 of every regular file
    var/lib/dpkg/info/$PKG.conffiles
    SYMLINKS.txt                    -> zip files cannot hold symlinks, so the app creates
                                       them from this list ("target←path" per line)

Architectures are built in parallel, one thread each. They share nothing but the
read-only "all" index, which is built before any thread starts.
"""

ARCHITECTURES = ("arm", "aarch64", "i686", "x86_64")

BOOTSTRAP_PACKAGES = (
    # Having bash as shell:
    "bash",
    "readline",
    "ncurses",
    "command-not-found",
    "termux-tools",
    # Needed for bin/sh:
    "dash",
    # For use by dpkg and apt:
    "liblzma",
    # Needed by dpkg:
    "libandroid-support",
    # dpkg uses tar (and wants 'find' in path for some operations):
    "busybox",
    # apt uses STL:
    "libc++",
    # apt now includes apt-transport-https:
    "ca-certificates",
    "openssl",
    "libnghttp2",
    "libcurl",
    # gnupg for package verification:
    "gpgv",
    "libgcrypt",
    "libgpg-error",
    "libbz2",
    # termux-exec fixes shebangs (and apt depends on it):
    "termux-exec",
    # Everyone needs a working "am" (and termux-tools depends on it):
    "termux-am",
    # For package management:
    "dpkg",
    "apt",
)

# The app needs directories to appear before files.
BOOTSTRAP_DIRECTORIES = (
    "etc/apt/preferences.d/",
    "etc/apt/apt.conf.d/",
    "var/cache/apt/archives/partial/",
    "var/log/apt/",
    "tmp/",
    "var/lib/dpkg/triggers/",
    "var/lib/dpkg/updates/",
)

# Every data entry lives below the Termux prefix; the zip is rooted at that prefix.
INSTALL_PREFIX = "data/data/com.termux/files/usr/"
INSTALL_PREFIX_LENGTH = len(INSTALL_PREFIX)

# Fields that only make sense in a Packages index, not in dpkg/status.
RESERVED_FIELDS = frozenset(("Filename", "MD5Sum", "SHA1", "SHA256", "Size"))

INSTALLED_STATUS_LINE = "Status: install ok installed\n"
DPKG_INFO_DIR = "var/lib/dpkg/info"

COPY_CHUNK_SIZE = 64 * 1024


def relative_install_path(entry_path: str) -> str:
    """
    Strip "./" and the install prefix from a data entry path.

        ./data/data/com.termux/files/usr/bin/sh -> bin/sh

    Paths outside the prefix are an error instead of being silently cut at a fixed offset.
    """
    path = entry_path[2:] if entry_path.startswith("./") else entry_path
    if len(path) <= INSTALL_PREFIX_LENGTH or not path.startswith(INSTALL_PREFIX):
        raise RuntimeError(
            f"Entry path {entry_path!r} is not below the install prefix '{INSTALL_PREFIX}'"
        )
    return path[INSTALL_PREFIX_LENGTH:]


def build_list_document(paths: Sequence[str]) -> str:
    """
    Build the content of var/lib/dpkg/info/$PKG.list from the relative paths of a package.

    Each path is emitted once as "/path", followed by every parent directory not already
    listed. dpkg wants folders to be present as well, not just the files in them.
    """
    added = set()
    lines: List[str] = []
    for path in paths:
        if path not in added:
            added.add(path)
            lines.append(f"/{path}\n")

    for path in paths:
        index = path.find('/')
        while index != -1:
            parent = path[:index]
            if parent and parent not in added:
                added.add(parent)
                lines.append(f"/{parent}\n")
            index = path.find('/', index + 1)

    return "".join(lines)


class CreateBootstrapVisitor(DebVisitor):
    """
    Accumulates the bootstrap of one architecture.

    Owned by a single worker thread. status and symlinks grow over the whole run;
    package_digests, file_entries and conffiles are reset with begin_package().
    """

    def __init__(self, zip_writer: zipfile.ZipFile):
        self.zip_writer = zip_writer
        self.dpkg_status: List[str] = []
        self.symlinks: List[str] = []
        self.package_digests: List[str] = []
        # All files and symlinks of the current package, for "var/lib/dpkg/info/$PKG.list".
        self.file_entries: List[str] = []
        self.regular_files = 0
        self.conffiles = b""

    def begin_package(self):
        self.package_digests = []
        self.file_entries = []
        self.regular_files = 0
        self.conffiles = b""

    def visit_control(self, fields: Dict[str, str]):
        for key, value in fields.items():
            if key in RESERVED_FIELDS:
                continue
            self.dpkg_status.append(f"{key}: {value}\n")
        self.dpkg_status.append(INSTALLED_STATUS_LINE)
        self.dpkg_status.append("\n")

    def visit_conffiles(self, entry: DebEntry):
        self.conffiles = entry.read()

    def visit_file(self, entry: DebEntry):
        kind = entry.kind
        if kind is not EntryKind.REGULAR and kind is not EntryKind.SYMLINK:
            return

        relative_path = relative_install_path(entry.path)
        self.file_entries.append(relative_path)

        if kind is EntryKind.SYMLINK:
            self.symlinks.append(f"{entry.link_target}←{relative_path}\n")
            return

        # Copy into the zip and hash in the same pass over the (forward-only) entry data.
        md5 = hashlib.md5()
        try:
            with self.zip_writer.open(relative_path, 'w') as out:
                while True:
                    chunk = entry.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    md5.update(chunk)
                    out.write(chunk)
        except OSError as e:
            raise RuntimeError(f"Error writing {relative_path} zip entry: {e}")

        self.regular_files += 1
        self.package_digests.append(f"{md5.hexdigest()}  {relative_path}\n")

    def finish_package(self, package_name: str):
        """Write the dpkg info documents of the package that was just visited."""
        if self.regular_files:
            write_zip_file(self.zip_writer, f"{DPKG_INFO_DIR}/{package_name}.list",
                           build_list_document(self.file_entries).encode('utf-8'))
            write_zip_file(self.zip_writer, f"{DPKG_INFO_DIR}/{package_name}.md5sums",
                           "".join(self.package_digests).encode('utf-8'))
        if self.conffiles:
            write_zip_file(self.zip_writer, f"{DPKG_INFO_DIR}/{package_name}.conffiles",
                           self.conffiles)

    def status_document(self) -> bytes:
        return "".join(self.dpkg_status).encode('utf-8')

    def symlinks_document(self) -> bytes:
        return "".join(self.symlinks).encode('utf-8')


def write_zip_file(zip_writer: zipfile.ZipFile, file_name: str, file_contents: bytes):
    try:
        zip_writer.writestr(file_name, file_contents)
    except OSError as e:
        raise RuntimeError(f"Error writing {file_name} zip entry: {e}")


def write_zip_directory(zip_writer: zipfile.ZipFile, dir_name: str):
    info = zipfile.ZipInfo(dir_name)
    info.external_attr = (0o40755 << 16) | 0x10
    try:
        zip_writer.writestr(info, b"")
    except OSError as e:
        raise RuntimeError(f"Error creating {dir_name} zip directory: {e}")


def add_package(visitor: CreateBootstrapVisitor, package_name: str,
                arch_index: Dict[str, PackageRecord], all_index: Dict[str, PackageRecord],
                arch: str = "", session: Optional[requests.Session] = None):
    """Resolve, download and unpack one package into the bootstrap of `visitor`."""
    record = apt_repo.lookup_package(package_name, arch_index, all_index, arch)
    deb_stream = apt_repo.download_package(record, session)

    visitor.begin_package()
    try:
        visit_files(deb_stream, visitor)
    except RuntimeError as e:
        raise RuntimeError(f"Error processing package '{package_name}' ({arch}): {e}")
    visitor.finish_package(package_name)


def create_bootstrap(output_zip_path: str, arch: str, all_index: Dict[str, PackageRecord],
                     packages: Sequence[str] = BOOTSTRAP_PACKAGES,
                     repo_url: str = apt_repo.DEFAULT_REPO_URL) -> str:
    """
    Build the bootstrap zip of one architecture. Runs inside a worker thread.

    `all_index` is shared between workers and only read here.
    """
    session = requests.Session()
    arch_index = apt_repo.fetch_index(arch, repo_url, session)

    with zipfile.ZipFile(output_zip_path, 'w', compression=zipfile.ZIP_DEFLATED) as zip_writer:
        visitor = CreateBootstrapVisitor(zip_writer)

        for dir_name in BOOTSTRAP_DIRECTORIES:
            write_zip_directory(zip_writer, dir_name)

        # This needs to be an empty file, else removing a package fails:
        write_zip_file(zip_writer, "var/lib/dpkg/available", b"")

        for package_name in packages:
            add_package(visitor, package_name, arch_index, all_index, arch, session)

        write_zip_file(zip_writer, "var/lib/dpkg/status", visitor.status_document())
        write_zip_file(zip_writer, "SYMLINKS.txt", visitor.symlinks_document())

    print(f"[{arch}] Wrote {output_zip_path}")
    return output_zip_path


def _create_bootstrap_for_arch(output_dir: str, arch: str, all_index: Dict[str, PackageRecord],
                               packages: Sequence[str], repo_url: str) -> str:
    output_zip_path = os.path.join(output_dir, f"bootstrap-{arch}.zip")
    try:
        return create_bootstrap(output_zip_path, arch, all_index, packages, repo_url)
    except RuntimeError as e:
        raise RuntimeError(f"Creating bootstrap for architecture '{arch}' failed: {e}")


def create(output_dir: str, arches: Sequence[str] = ARCHITECTURES,
           packages: Sequence[str] = BOOTSTRAP_PACKAGES,
           repo_url: str = apt_repo.DEFAULT_REPO_URL) -> List[str]:
    """
    Create bootstrap-$ARCH.zip for every architecture in `output_dir`.

    Returns the written zip paths in architecture order. Any failing architecture fails
    the whole run; the remaining workers are still waited for before the error surfaces.
    """
    if not os.path.isdir(output_dir):
        raise RuntimeError(f"Output directory '{output_dir}' does not exist")
    if not arches:
        raise RuntimeError("No architectures given")

    arch_all_packages = apt_repo.fetch_index("all", repo_url)

    with ThreadPoolExecutor(max_workers=len(arches)) as executor:
        futures = [
            executor.submit(_create_bootstrap_for_arch, output_dir, arch,
                            arch_all_packages, packages, repo_url)
            for arch in arches
        ]
        # result() re-raises a worker's error; leaving the with block joins every worker.
        return [future.result() for future in futures]
