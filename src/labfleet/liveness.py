"""Liveness filtering: split a host set into reachable and unreachable."""

import asyncio

from loguru import logger

from labfleet.config import LabConfig
from labfleet.hostspec import HostSet
from labfleet.probe import Probe, make_probe


class LivenessFilter:
    """Probe every candidate host once and partition the set.

    Batches smaller than config.liveness_threshold are not probed at all,
    because the dispatcher probes each host again right before it runs.

    Args:
        config: Lab configuration.
        probe: Optional probe override. Defaults to ping with the configured
            timeout and attempt count given to filter().
    """

    def __init__(self, config: LabConfig, probe: Probe | None = None):
        self.config = config
        self.probe = probe

    async def filter(self, hosts: HostSet, attempts: int = 1) -> tuple[HostSet, HostSet]:
        """Partition hosts by reachability.

        Args:
            hosts: Candidate hosts.
            attempts: Echo requests per probe. Not a retry count.

        Returns:
            tuple[HostSet, HostSet]: (reachable, unreachable), both in input order.
        """
        if len(hosts) < self.config.liveness_threshold:
            logger.debug(
                f"Liveness: {len(hosts)} host(s) below threshold "
                f"{self.config.liveness_threshold}, skipping pre-probe"
            )
            return hosts, HostSet()

        probe = self.probe or make_probe(self.config, attempts=attempts)
        semaphore = asyncio.Semaphore(self.config.max_concurrent_probes)

        async def _probe_with_semaphore(host: str) -> bool:
            async with semaphore:
                return await probe(host)

        results = await asyncio.gather(
            *[_probe_with_semaphore(host) for host in hosts],
            return_exceptions=True,
        )

        liveness: dict[str, bool] = {}
        for host, result in zip(hosts, results):
            if isinstance(result, Exception):
                logger.warning(f"Liveness: probe of {host} raised {result!r}")
                liveness[host] = False
            else:
                liveness[host] = bool(result)

        reachable = HostSet(h for h in hosts if liveness[h])
        unreachable = HostSet(h for h in hosts if not liveness[h])
        logger.info(f"Liveness: {len(reachable)} reachable, {len(unreachable)} unreachable")
        return reachable, unreachable
