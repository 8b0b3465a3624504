"""Reachability probe: one bounded ICMP echo per host."""

import asyncio
import socket
import sys
from typing import Awaitable, Callable

from loguru import logger

from labfleet.config import LabConfig
from labfleet.hostspec import LOCAL_SENTINELS


Probe = Callable[[str], Awaitable[bool]]


def local_hostname() -> str:
    """The local machine's name as other hosts see it."""
    return socket.gethostname()


def is_local(host: str) -> bool:
    """True when host names the machine running labfleet."""
    lowered = host.lower()
    if lowered in LOCAL_SENTINELS:
        return True
    local = local_hostname().lower()
    return lowered == local or lowered.split(".", 1)[0] == local.split(".", 1)[0]


def build_ping_cmd(host: str, timeout: int, attempts: int = 1) -> list[str]:
    """Build the platform ping command for a single probe.

    Args:
        host: Target hostname.
        timeout: Seconds to wait for each reply.
        attempts: Echo requests sent within the probe.

    Returns:
        list[str]: Command and arguments.
    """
    if sys.platform == "win32":
        return ["ping", "-n", str(attempts), "-w", str(timeout * 1000), host]
    return ["ping", "-c", str(attempts), "-W", str(timeout), host]


async def probe_host(host: str, timeout: int = 2, attempts: int = 1) -> bool:
    """Check whether host answers an echo request.

    The whole probe is bounded by asyncio.wait_for, so an unresponsive host
    yields False within roughly timeout * attempts seconds.

    Args:
        host: Target hostname.
        timeout: Seconds to wait for each reply.
        attempts: Echo requests sent within this one probe.

    Returns:
        bool: True if at least one reply came back.
    """
    if is_local(host):
        return True

    cmd = build_ping_cmd(host, timeout, attempts)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.warning(f"Probe: could not start ping for {host}: {exc}")
        return False

    try:
        returncode = await asyncio.wait_for(proc.wait(), timeout=timeout * attempts + 1)
    except asyncio.TimeoutError:
        logger.debug(f"Probe: {host} timed out")
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        return False

    logger.debug(f"Probe: {host} -> {'up' if returncode == 0 else 'down'}")
    return returncode == 0


def make_probe(config: LabConfig, attempts: int = 1) -> Probe:
    """Bind the configured timeout into a one-argument probe.

    Args:
        config: Lab configuration supplying probe_timeout.
        attempts: Echo requests per probe.

    Returns:
        Probe: Async callable taking a hostname.
    """

    async def _probe(host: str) -> bool:
        return await probe_host(host, timeout=config.probe_timeout, attempts=attempts)

    return _probe
