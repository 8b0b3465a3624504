"""Host resolution for labfleet.

Turns a host specification into a concrete, de-duplicated HostSet. The only
I/O performed here is reading host files, the one-shot probe for single
names, and the directory query for prefixes.
"""

from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from labfleet.config import LabConfig
from labfleet.directory import DirectoryLookup
from labfleet.errors import DirectoryError, InvalidSpecError, UnresolvableSpecError
from labfleet.hostspec import (
    FilePath,
    HostList,
    HostSet,
    HostSpec,
    Local,
    Prefix,
    Single,
    classify,
    is_valid_hostname,
)
from labfleet.probe import Probe, local_hostname


def read_host_file(path: Path) -> list[str]:
    """Read one hostname per line, skipping blanks and # comments.

    Args:
        path: Host file to read.

    Returns:
        list[str]: Hostnames in file order, duplicates included.

    Raises:
        UnresolvableSpecError: If the file cannot be read.
    """
    try:
        text = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        raise UnresolvableSpecError(f"Cannot read host file {path}: {exc}") from exc

    hosts = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        hosts.append(stripped)
    return hosts


class HostSpecResolver:
    """Resolve host specifications against a directory and a probe.

    Args:
        config: Lab configuration.
        directory: Prefix lookup backend.
        probe: One-shot reachability check used for single names.
    """

    def __init__(self, config: LabConfig, directory: DirectoryLookup, probe: Probe):
        self.config = config
        self.directory = directory
        self.probe = probe

    async def resolve(self, spec: HostSpec | str | Sequence[str] | None) -> HostSet:
        """Resolve a specification to a HostSet.

        Bare strings are classified first. Other sequences are taken as a
        literal host list.

        Args:
            spec: Tagged spec, raw target string, or sequence of names.

        Returns:
            HostSet: Ordered unique hosts. Prefix results are sorted.

        Raises:
            InvalidSpecError: If the spec is missing or yields no names.
            UnresolvableSpecError: If a host file or prefix yields no hosts.
        """
        if spec is None:
            raise InvalidSpecError("No host specification given.")

        if isinstance(spec, str):
            spec = classify(spec)
        elif isinstance(spec, Sequence):
            # Reason: a structured sequence is already a host list; no sniffing.
            spec = HostList(tuple(n for n in spec if n is not None))

        hosts = await self._resolve_tagged(spec)
        logger.info(f"Resolved {spec!r} to {len(hosts)} host(s)")
        return hosts

    async def _resolve_tagged(self, spec: HostSpec) -> HostSet:
        if isinstance(spec, Local):
            return HostSet([local_hostname()])

        if isinstance(spec, HostList):
            hosts = HostSet(spec.names)
            if not hosts:
                raise InvalidSpecError("Host list contains no names.")
            return hosts

        if isinstance(spec, FilePath):
            hosts = HostSet(read_host_file(spec.path))
            if not hosts:
                raise UnresolvableSpecError(f"Host file {spec.path} lists no hosts.")
            return hosts

        if isinstance(spec, Single):
            if is_valid_hostname(spec.name) and await self.probe(spec.name):
                return HostSet([spec.name])
            logger.debug(f"'{spec.name}' did not answer; treating it as a prefix")
            return await self._expand_prefix(spec.name)

        if isinstance(spec, Prefix):
            return await self._expand_prefix(spec.prefix)

        raise InvalidSpecError(f"Unsupported host specification: {spec!r}")

    async def _expand_prefix(self, prefix: str) -> HostSet:
        if not prefix.strip():
            raise InvalidSpecError("Empty host prefix.")
        try:
            names = await self.directory.find(prefix)
        except DirectoryError as exc:
            raise UnresolvableSpecError(str(exc)) from exc

        wanted = prefix.strip().lower()
        matches = [n for n in names if n and n.lower().startswith(wanted)]
        if not matches:
            raise UnresolvableSpecError(f"No hosts found matching '{prefix}*'.")
        return HostSet(sorted(matches, key=str.lower))
