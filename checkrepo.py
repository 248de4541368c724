import os
from typing import Dict, List

from deb_file import DebEntry, DebVisitor, EntryKind, visit_files

"""
Consistency check of a local repository laid out as
    <directory>/binary-<arch>/*.deb

Reports, per architecture:
 - hard links inside data members (the bootstrap and the app cannot install those),
 - files or symlinks shipped by more than one package.
"""

CHECKED_ARCHITECTURES = ("arm", "aarch64", "i686", "x86_64", "all")


class CheckRepoVisitor(DebVisitor):

    def __init__(self):
        self.current_package_name = ""
        self.files_to_package: Dict[str, str] = {}
        self.problems: List[str] = []

    def _report(self, message: str):
        print(message)
        self.problems.append(message)

    def visit_control(self, fields: Dict[str, str]):
        if "Package" not in fields:
            raise RuntimeError("control file has no 'Package' field")
        self.current_package_name = fields["Package"]

    def visit_file(self, entry: DebEntry):
        kind = entry.kind
        path = entry.path

        if kind is EntryKind.HARDLINK:
            self._report(f"Invalid link {path} in package {self.current_package_name}")
            return

        if kind is not EntryKind.REGULAR and kind is not EntryKind.SYMLINK:
            return

        existing = self.files_to_package.get(path)
        if existing is not None:
            self._report(
                f"Duplicated file {path} in both {self.current_package_name} and {existing}"
            )
        self.files_to_package[path] = self.current_package_name


def check(directory: str) -> List[str]:
    """Check every binary-<arch> directory below `directory`; returns the problems found."""
    if not os.path.isdir(directory):
        raise RuntimeError(f"Not a directory: {directory}")

    problems: List[str] = []
    for arch in CHECKED_ARCHITECTURES:
        visitor = CheckRepoVisitor()
        arch_path = os.path.join(directory, f"binary-{arch}")
        print(f"Checking {arch_path}")

        if not os.path.isdir(arch_path):
            raise RuntimeError(f"No such dir: {arch_path}")

        for file_name in sorted(os.listdir(arch_path)):
            if not file_name.endswith(".deb"):
                continue
            deb_path = os.path.join(arch_path, file_name)
            print(f"Checking {deb_path}")
            with open(deb_path, 'rb') as deb_file:
                try:
                    visit_files(deb_file, visitor)
                except RuntimeError as e:
                    raise RuntimeError(f"Error checking {deb_path}: {e}")

        problems.extend(visitor.problems)

    return problems
