"""Batch orchestration: resolve, filter, dispatch, collect."""

import asyncio
from collections.abc import Sequence

from loguru import logger

from labfleet.config import LabConfig
from labfleet.directory import DirectoryLookup, directory_from_config
from labfleet.dispatch import RemoteDispatcher
from labfleet.hostspec import HostSet, HostSpec
from labfleet.liveness import LivenessFilter
from labfleet.operations import RemoteOperation
from labfleet.probe import Probe, make_probe
from labfleet.remote import Transport, WinRMTransport
from labfleet.resolve import HostSpecResolver
from labfleet.results import UNREACHABLE, HostOutcome, ResultBatch, collect


class Fleet:
    """Wires the resolver, liveness filter and dispatcher for one config.

    Collaborators default to the real implementations (AD or static
    directory, ping, WinRM) and can be replaced for testing.

    Args:
        config: Lab configuration.
        transport: Remote session opener. Defaults to WinRM.
        directory: Prefix lookup. Defaults from config.
        probe: Reachability check. Defaults to ping.
    """

    def __init__(
        self,
        config: LabConfig,
        transport: Transport | None = None,
        directory: DirectoryLookup | None = None,
        probe: Probe | None = None,
    ):
        self.config = config
        self.probe = probe or make_probe(config)
        self.resolver = HostSpecResolver(config, directory or directory_from_config(config), self.probe)
        self.liveness = LivenessFilter(config, probe)
        self.dispatcher = RemoteDispatcher(config, transport or WinRMTransport(config), self.probe)

    async def resolve(self, target: HostSpec | str | Sequence[str]) -> HostSet:
        """Resolve a target. Resolution errors propagate to the caller."""
        return await self.resolver.resolve(target)

    async def run(
        self,
        target: HostSpec | str | Sequence[str],
        op: RemoteOperation,
        cancel: asyncio.Event | None = None,
        abort: asyncio.Event | None = None,
    ) -> ResultBatch:
        """Run op against every host the target resolves to.

        Hosts dropped by the liveness pass are recorded as unreachable
        failures without being contacted again.

        Args:
            target: Host specification.
            op: Operation to run.
            cancel: Optional cancellation event passed to the dispatcher.
            abort: Optional event that abandons hosts in progress.

        Returns:
            ResultBatch: One outcome per resolved host, in resolution order.

        Raises:
            InvalidSpecError: If the target is unusable.
            UnresolvableSpecError: If the target yields no hosts.
        """
        hosts = await self.resolve(target)
        reachable, unreachable = await self.liveness.filter(hosts)
        for host in unreachable:
            logger.warning(f"{host}: unreachable, skipping")

        batch = await self.dispatcher.dispatch(reachable, op, cancel=cancel, abort=abort)
        outcomes = batch.outcomes + [HostOutcome.failure(h, UNREACHABLE) for h in unreachable]
        return collect(outcomes, op.name, order=hosts)
