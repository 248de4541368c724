from typing import Dict, List

from deb_file import DebEntry, DebVisitor, visit_files


class PrintControlVisitor(DebVisitor):
    """Collects the control fields of a package as sorted "Key: value" lines."""

    def __init__(self):
        self.lines: List[str] = []

    def visit_control(self, fields: Dict[str, str]):
        for key in sorted(fields):
            self.lines.append(f"{key}: {fields[key]}")

    def visit_file(self, entry: DebEntry):
        # Ignore
        pass


def print_info(file_path: str) -> List[str]:
    """Print the control fields of the .deb at `file_path`, sorted by field name."""
    visitor = PrintControlVisitor()
    try:
        with open(file_path, 'rb') as deb_file:
            visit_files(deb_file, visitor)
    except OSError as e:
        raise RuntimeError(f"Cannot read {file_path}: {e}")

    for line in visitor.lines:
        print(line)
    return visitor.lines
