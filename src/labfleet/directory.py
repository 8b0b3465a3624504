"""Directory lookup: expand a name prefix into known hostnames."""

import asyncio
import re
from typing import Protocol

from loguru import logger

from labfleet.config import LabConfig
from labfleet.errors import DirectoryError
from labfleet.remote import ps_quote


# Characters allowed in a prefix embedded in an AD filter.
_PREFIX_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class DirectoryLookup(Protocol):
    """Anything that can list hostnames beginning with a prefix."""

    async def find(self, prefix: str) -> list[str]:
        ...


def _check_prefix(prefix: str) -> str:
    prefix = prefix.strip()
    if not _PREFIX_RE.match(prefix):
        raise DirectoryError(f"Invalid host prefix '{prefix}'.")
    return prefix


class StaticDirectory:
    """Prefix lookup over a fixed list of hostnames.

    Matching is case-insensitive. Used when no domain is configured.
    """

    def __init__(self, names: list[str]):
        self.names = list(names)

    async def find(self, prefix: str) -> list[str]:
        prefix = _check_prefix(prefix).lower()
        return [n for n in self.names if n.lower().startswith(prefix)]


def build_ad_query(prefix: str, domain: str | None = None) -> list[str]:
    """Build the PowerShell command listing AD computers by name prefix.

    Args:
        prefix: Leading characters of the computer names.
        domain: Optional domain or DC passed to -Server.

    Returns:
        list[str]: Command and arguments for subprocess execution.
    """
    prefix = _check_prefix(prefix)
    server = f" -Server {ps_quote(domain)}" if domain else ""
    script = (
        f"Get-ADComputer -Filter \"Name -like '{prefix}*'\"{server} "
        "| Select-Object -ExpandProperty Name"
    )
    return ["powershell", "-NoProfile", "-NonInteractive", "-Command", script]


class ActiveDirectoryLookup:
    """Prefix lookup through Get-ADComputer on the admin workstation.

    Args:
        domain: Domain or domain controller to query.
        timeout: Seconds before the query is abandoned.
    """

    def __init__(self, domain: str | None, timeout: int = 30):
        self.domain = domain
        self.timeout = timeout

    async def find(self, prefix: str) -> list[str]:
        cmd = build_ad_query(prefix, self.domain)
        logger.debug(f"Directory: querying AD for '{prefix}*' on {self.domain or 'default domain'}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise DirectoryError(f"Directory query for '{prefix}' timed out.") from None
        except OSError as exc:
            raise DirectoryError(f"Directory query failed to start: {exc}") from exc

        if proc.returncode != 0:
            raise DirectoryError(
                f"Directory query for '{prefix}' failed: {stderr_bytes.decode(errors='replace').strip()}"
            )

        return [line.strip() for line in stdout_bytes.decode(errors="replace").splitlines() if line.strip()]


def directory_from_config(config: LabConfig) -> DirectoryLookup:
    """Pick the directory backend for the configuration.

    Args:
        config: Lab configuration.

    Returns:
        DirectoryLookup: AD lookup when directory_domain is set, otherwise a
            static lookup over known_hosts.
    """
    if config.directory_domain:
        return ActiveDirectoryLookup(config.directory_domain, timeout=config.remote_timeout)
    return StaticDirectory(config.known_hosts)
