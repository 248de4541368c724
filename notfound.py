import contextlib
import os
from typing import Dict, List, TextIO

from bootstraps import ARCHITECTURES, INSTALL_PREFIX
from deb_file import DebEntry, DebVisitor, EntryKind, visit_files

"""
Generate the command-not-found headers, commands-<arch>.h.

Each header is a list of C string literals: the package name, followed by every
command that package installs into usr/bin (prefixed with a space):

    "busybox",
    " ash",
    " awk",
"""

BIN_PREFIX = f"{INSTALL_PREFIX}bin/"


class CommandsNotFoundVisitor(DebVisitor):

    def __init__(self, arch_files: Dict[str, TextIO]):
        self.arch_files = arch_files
        self.current_arch = ""
        self.current_package = ""
        self.first_file = True

    def write_arch_line(self, line: str):
        if self.current_arch == "all":
            targets = list(self.arch_files)
        elif self.current_arch in self.arch_files:
            targets = [self.current_arch]
        else:
            raise RuntimeError(
                f"Package '{self.current_package}' has unknown architecture '{self.current_arch}'"
            )
        for arch in targets:
            try:
                self.arch_files[arch].write(line)
            except OSError as e:
                raise RuntimeError(f"Unable to write to commands-{arch}.h: {e}")

    def visit_control(self, fields: Dict[str, str]):
        for required in ("Package", "Architecture"):
            if required not in fields:
                raise RuntimeError(f"control file has no '{required}' field")
        self.current_arch = fields["Architecture"]
        self.current_package = fields["Package"]
        self.first_file = True

    def visit_file(self, entry: DebEntry):
        kind = entry.kind
        if kind is not EntryKind.REGULAR and kind is not EntryKind.SYMLINK:
            return

        path = entry.path
        if path.startswith("./"):
            path = path[2:]
        if not path.startswith(BIN_PREFIX):
            return
        file_name = path[len(BIN_PREFIX):]

        if self.first_file:
            self.first_file = False
            self.write_arch_line(f"\"{self.current_package}\",\n")

        if file_name.startswith("applets/"):
            file_name = file_name[len("applets/"):]
        self.write_arch_line(f"\" {file_name}\",\n")


def _deb_files(repo_dir: str) -> List[str]:
    found = []
    for root, dirs, files in os.walk(repo_dir):
        dirs.sort()
        for file_name in sorted(files):
            if file_name.endswith(".deb"):
                found.append(os.path.join(root, file_name))
    return found


def update(repo_dir: str, output_dir: str) -> List[str]:
    """Scan every .deb below `repo_dir` and (re)write commands-<arch>.h in `output_dir`."""
    if not os.path.isdir(output_dir):
        raise RuntimeError(f"Output dir '{output_dir}' is not a directory")

    output_paths = [os.path.join(output_dir, f"commands-{arch}.h") for arch in ARCHITECTURES]

    with contextlib.ExitStack() as stack:
        arch_files = {
            arch: stack.enter_context(open(path, 'w', encoding='utf-8'))
            for arch, path in zip(ARCHITECTURES, output_paths)
        }
        visitor = CommandsNotFoundVisitor(arch_files)

        for deb_path in _deb_files(repo_dir):
            with open(deb_path, 'rb') as deb_file:
                try:
                    visit_files(deb_file, visitor)
                except RuntimeError as e:
                    raise RuntimeError(f"Error scanning {deb_path}: {e}")

    print(f"Updated {len(output_paths)} command headers in {output_dir}")
    return output_paths
