"""Host specifications and the ordered host set they resolve to.

A raw target string can mean five different things. ``classify`` decides
which one once, at the edge, so the resolver only ever sees a tagged value.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Union


# Targets that mean "this machine".
LOCAL_SENTINELS = frozenset({"", "127.0.0.1", "localhost", "."})

LIST_SEPARATOR = ","

# RFC 1123 label, plus dots for FQDNs. NetBIOS names fit inside this.
_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)


@dataclass(frozen=True)
class Local:
    """The machine running labfleet."""


@dataclass(frozen=True)
class Single:
    """One hostname. Falls back to a prefix if it does not answer a probe.

    Attributes:
        name: The hostname as typed.
    """

    name: str


@dataclass(frozen=True)
class HostList:
    """An explicit list of hostnames.

    Attributes:
        names: Hostnames in the order given.
    """

    names: tuple[str, ...]


@dataclass(frozen=True)
class FilePath:
    """A file with one hostname per line.

    Attributes:
        path: Path to the host file.
    """

    path: Path


@dataclass(frozen=True)
class Prefix:
    """A name prefix expanded through the directory service.

    Attributes:
        prefix: Leading characters of the wanted hostnames.
    """

    prefix: str


HostSpec = Union[Local, Single, HostList, FilePath, Prefix]


def is_valid_hostname(name: str) -> bool:
    """Check whether name is a syntactically valid hostname."""
    return bool(_HOSTNAME_RE.match(name))


def classify(raw: str, force_prefix: bool = False) -> HostSpec:
    """Turn a raw target string into a HostSpec.

    Order: local sentinel, comma list, existing file, single name. A single
    name that later fails its probe is treated as a prefix by the resolver.

    Args:
        raw: Target as typed by the operator.
        force_prefix: Skip sniffing and treat raw as a directory prefix.

    Returns:
        HostSpec: The tagged specification.
    """
    text = (raw or "").strip()

    if force_prefix and text:
        return Prefix(text)

    if text.lower() in LOCAL_SENTINELS:
        return Local()

    if LIST_SEPARATOR in text:
        return HostList(tuple(part.strip() for part in text.split(LIST_SEPARATOR)))

    try:
        path = Path(text).expanduser()
        is_file = path.is_file()
    except (OSError, ValueError, RuntimeError):
        is_file = False
    if is_file:
        return FilePath(path)

    return Single(text)


class HostSet:
    """Ordered, case-insensitively unique collection of hostnames.

    The first spelling seen for a host is the one kept. Blank entries are
    dropped on the way in.
    """

    def __init__(self, hosts: Iterable[str | None] = ()):
        seen: set[str] = set()
        ordered: list[str] = []
        for host in hosts:
            if host is None:
                continue
            name = host.strip()
            if not name:
                continue
            key = name.lower()
            if key in seen:
                continue
            seen.add(key)
            ordered.append(name)
        self._hosts = tuple(ordered)
        self._index = {h.lower(): i for i, h in enumerate(self._hosts)}

    def __iter__(self) -> Iterator[str]:
        return iter(self._hosts)

    def __len__(self) -> int:
        return len(self._hosts)

    def __bool__(self) -> bool:
        return bool(self._hosts)

    def __contains__(self, host: object) -> bool:
        return isinstance(host, str) and host.lower() in self._index

    def __getitem__(self, i: int) -> str:
        return self._hosts[i]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HostSet):
            return self._hosts == other._hosts
        if isinstance(other, (list, tuple)):
            return list(self._hosts) == list(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"HostSet({list(self._hosts)!r})"

    def index_of(self, host: str) -> int:
        """Position of host in the set, matched case-insensitively.

        Raises:
            KeyError: If host is not in the set.
        """
        return self._index[host.lower()]

    def as_list(self) -> list[str]:
        """The hostnames as a plain list."""
        return list(self._hosts)
