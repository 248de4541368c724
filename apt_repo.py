import gzip
import io
import lzma
from typing import Dict, Iterable, Optional

import requests

"""
Access to the remote apt repository that the bootstrap packages come from.

A repository publishes one `Packages` index per architecture under
    <repo_url>/dists/stable/main/binary-<arch>/Packages
plus a special "all" index for architecture independent packages.
Every stanza of that index becomes a PackageRecord, keyed by its `Package` field.
"""

DEFAULT_REPO_URL = 'https://packages-cf.termux.dev/apt/termux-main'
INDEX_PATH_TEMPLATE = 'dists/stable/main/binary-{arch}/Packages'
REQUEST_TIMEOUT = 60


class PackageRecord:
    """
    One binary package stanza from a `Packages` index.

    `fields` holds every single-line field of the stanza. Multi-line fields
    (the long description) only keep their first line; continuation lines are dropped.
    """
    __slots__ = ("fields", "repo_url")

    def __init__(self, fields: Dict[str, str], repo_url: str = DEFAULT_REPO_URL):
        self.fields = fields
        self.repo_url = repo_url

    @property
    def name(self) -> str:
        return self.fields["Package"]

    def download_locator(self) -> str:
        filename = self.fields.get("Filename")
        if not filename:
            raise RuntimeError(f"Package '{self.fields.get('Package')}' has no 'Filename' field")
        return f"{self.repo_url.rstrip('/')}/{filename.lstrip('/')}"


def index_url(arch: str, repo_url: str = DEFAULT_REPO_URL) -> str:
    return f"{repo_url.rstrip('/')}/{INDEX_PATH_TEMPLATE.format(arch=arch)}"


def parse_packages(lines: Iterable[str], repo_url: str = DEFAULT_REPO_URL) -> Dict[str, PackageRecord]:
    """
    Parse the stanzas of a `Packages` index into {package name: PackageRecord}.

    Stanzas are separated by blank lines. A line starting with a space is a continuation
    of a multi-line field and is ignored. A stanza without `Package` or `Filename`, or a
    field line without a colon, is a fatal error: a half-parsed index would only resurface
    later as a confusing "cannot find package".
    """
    result: Dict[str, PackageRecord] = {}
    current: Dict[str, str] = {}

    def _flush():
        for required in ("Package", "Filename"):
            if not current.get(required):
                raise RuntimeError(
                    f"Malformed stanza in Packages index: missing '{required}' field. "
                    f"Stanza keys: {list(current.keys())}"
                )
        result[current["Package"]] = PackageRecord(dict(current), repo_url)

    for raw_line in lines:
        line = raw_line.rstrip('\r\n')
        if line == "":
            if current:
                _flush()
                current = {}
        elif line[0] in " \t":
            # Ignore multiline (description) fields.
            continue
        else:
            if ":" not in line:
                raise RuntimeError(f"Invalid Packages index line without colon: {line!r}")
            key, value = line.split(":", 1)
            current[key] = value.strip()

    if current:
        _flush()

    return result


def _decompress_index(url: str, content: bytes) -> bytes:
    """Indexes may be published compressed; pick the decoder from the URL extension."""
    try:
        if url.endswith('.gz'):
            return gzip.decompress(content)
        if url.endswith('.xz'):
            return lzma.decompress(content)
    except (OSError, EOFError, lzma.LZMAError) as e:
        raise RuntimeError(f"Failed to extract {url}: {e}")
    return content


def fetch_index(arch: str, repo_url: str = DEFAULT_REPO_URL,
                session: Optional[requests.Session] = None) -> Dict[str, PackageRecord]:
    """Download and parse the `Packages` index of one architecture ("all" included)."""
    url = index_url(arch, repo_url)
    http = session or requests
    print(f"Fetching index: {url}")
    try:
        response = http.get(url, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error fetching {url}: {e}")

    content = _decompress_index(url, response.content)
    try:
        text = content.decode('utf-8')
    except UnicodeDecodeError as e:
        raise RuntimeError(f"Packages index {url} is not valid UTF-8: {e}")

    packages = parse_packages(io.StringIO(text), repo_url)
    print(f"Indexed {len(packages)} packages for architecture '{arch}'.")
    return packages


def lookup_package(name: str, arch_index: Dict[str, PackageRecord],
                   all_index: Dict[str, PackageRecord], arch: str = "") -> PackageRecord:
    """Resolve `name` in the architecture index first, then in the "all" index."""
    record = arch_index.get(name) or all_index.get(name)
    if record is None:
        raise RuntimeError(
            f"Cannot find package '{name}' in the '{arch or '?'}' index "
            f"nor in the 'all' index."
        )
    return record


def download_package(record: PackageRecord, session: Optional[requests.Session] = None) -> io.BytesIO:
    """
    Fetch the .deb of `record` and return its bytes as a readable stream.

    The whole package is held in memory: the ar container needs to know member
    offsets, and bootstrap packages are small.
    """
    url = record.download_locator()
    http = session or requests
    print(f"Downloading: {record.name} from {url}")
    try:
        response = http.get(url, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Failed fetching {url} for package '{record.name}': {e}")
    return io.BytesIO(response.content)
