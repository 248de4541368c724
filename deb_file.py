import enum
import lzma
import tarfile
import zlib
from typing import BinaryIO, Dict, Iterable, Optional

from debian.arfile import ArError, ArFile

"""
Streaming decoder for .deb packages.

A .deb is an ar archive holding (in this order) `debian-binary`, a control member
(`control.tar.gz` or `control.tar.xz`) and a data member (`data.tar.xz`).
visit_files() walks those members once, front to back, and reports what it finds
to a DebVisitor:

    visit_conffiles(entry)  -> the `conffiles` listing of the control member, if any
    visit_control(fields)   -> the parsed `control` file, once the control member is done
    visit_file(entry)       -> every entry of the data member, in archive order

Tar members are opened in stream mode ("r|xz"), so the data of an entry can only be
read until the decoder moves on to the next entry. A visitor that wants to keep
content around has to copy it while it is being visited.
"""

CONTROL_MEMBERS = {
    "control.tar.gz": "r|gz",
    "control.tar.xz": "r|xz",
}
DATA_MEMBERS = {
    "data.tar.xz": "r|xz",
}

# Errors raised while decompressing or walking a member.
_DECODE_ERRORS = (tarfile.TarError, lzma.LZMAError, zlib.error, EOFError)


class EntryKind(enum.Enum):
    REGULAR = "regular"
    SYMLINK = "symlink"
    HARDLINK = "hardlink"
    OTHER = "other"


class DebEntry:
    """
    One entry of a tar member, valid only while it is being visited.

    `path` is the name as stored in the archive, e.g. "./data/data/com.termux/files/usr/bin/sh".
    """
    __slots__ = ("info", "_tar", "_reader")

    def __init__(self, info: tarfile.TarInfo, tar: tarfile.TarFile):
        self.info = info
        self._tar = tar
        self._reader: Optional[BinaryIO] = None

    @property
    def path(self) -> str:
        name = self.info.name
        try:
            # tarfile decodes names with surrogateescape; reject anything that isn't UTF-8.
            name.encode('utf-8')
        except UnicodeEncodeError:
            raise RuntimeError(f"Entry path is not valid UTF-8: {name!r}")
        return name

    @property
    def link_target(self) -> str:
        target = self.info.linkname
        try:
            target.encode('utf-8')
        except UnicodeEncodeError:
            raise RuntimeError(f"Link target of {self.info.name!r} is not valid UTF-8: {target!r}")
        return target

    @property
    def kind(self) -> EntryKind:
        if self.info.isreg():
            return EntryKind.REGULAR
        if self.info.issym():
            return EntryKind.SYMLINK
        if self.info.islnk():
            return EntryKind.HARDLINK
        return EntryKind.OTHER

    def read(self, size: int = -1) -> bytes:
        if self.kind is not EntryKind.REGULAR:
            raise RuntimeError(f"Cannot read content of non-regular entry {self.info.name!r}")
        if self._reader is None:
            self._reader = self._tar.extractfile(self.info)
        return self._reader.read(size)


class DebVisitor:
    """
    Receiver of the callbacks made by visit_files().

    Subclasses must implement visit_control() and visit_file(). visit_file() is called for
    every data entry, whatever its kind, so implementations look at `entry.kind` first and
    leave entries they don't care about unread.
    """

    def visit_control(self, fields: Dict[str, str]):
        raise NotImplementedError

    def visit_conffiles(self, entry: DebEntry):
        # Default implementation does nothing.
        pass

    def visit_file(self, entry: DebEntry):
        raise NotImplementedError


def parse_control(lines: Iterable[str]) -> Dict[str, str]:
    """
    Parse the text of a `control` file into an ordered {field: value} mapping.

    Continuation lines (starting with whitespace) are dropped, so only the first line of
    multi-line fields such as Description survives. A line of the form "Key: value" is split
    at the first ": "; a line like "Key:value" falls back to the first ":" with the value
    trimmed. Any other non-blank line is a fatal parse error.
    """
    fields: Dict[str, str] = {}
    for raw_line in lines:
        line = raw_line.rstrip('\r\n')
        if not line.strip():
            continue
        if line[0] in " \t":
            continue
        if ": " in line:
            key, value = line.split(": ", 1)
        elif ":" in line:
            key, value = line.split(":", 1)
            value = value.strip()
        else:
            raise RuntimeError(f"Invalid control line without separator: {line!r}")
        fields[key] = value
    return fields


def _tar_entry_name(info: tarfile.TarInfo) -> str:
    name = info.name
    return name[2:] if name.startswith("./") else name


def _parse_control_member(member, mode: str, visitor: DebVisitor) -> Dict[str, str]:
    fields: Optional[Dict[str, str]] = None
    with tarfile.open(fileobj=member, mode=mode) as control_tar:
        for info in control_tar:
            name = _tar_entry_name(info)
            if name == "control":
                entry = DebEntry(info, control_tar)
                try:
                    text = entry.read().decode('utf-8')
                except UnicodeDecodeError as e:
                    raise RuntimeError(f"control file is not valid UTF-8: {e}")
                fields = parse_control(text.split('\n'))
            elif name == "conffiles" and info.isreg():
                visitor.visit_conffiles(DebEntry(info, control_tar))

    if fields is None:
        raise RuntimeError("control member has no 'control' file")
    return fields


def _visit_data_member(member, mode: str, visitor: DebVisitor):
    with tarfile.open(fileobj=member, mode=mode) as data_tar:
        for info in data_tar:
            visitor.visit_file(DebEntry(info, data_tar))


def visit_files(stream: BinaryIO, visitor: DebVisitor):
    """
    Decode the .deb in `stream` and drive `visitor` with its contents.

    Members are handled in the order they appear in the container; visit_control() is
    called when the control member has been fully read. Members other than the control
    and data members (`debian-binary`, signatures) are skipped without being decompressed.
    Any structural or compression error raises RuntimeError naming the member.
    """
    try:
        archive = ArFile(fileobj=stream)
    except (ArError, OSError) as e:
        raise RuntimeError(f"Not a valid deb (ar) archive: {e}")

    for member in archive.getmembers():
        name = member.name.rstrip('/')
        if name in CONTROL_MEMBERS:
            try:
                fields = _parse_control_member(member, CONTROL_MEMBERS[name], visitor)
            except _DECODE_ERRORS as e:
                raise RuntimeError(f"Error decoding {name}: {e}")
            visitor.visit_control(fields)
        elif name in DATA_MEMBERS:
            try:
                _visit_data_member(member, DATA_MEMBERS[name], visitor)
            except _DECODE_ERRORS as e:
                raise RuntimeError(f"Error decoding {name}: {e}")
