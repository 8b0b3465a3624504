"""Fan-out dispatch of one remote operation across a host set."""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

from loguru import logger

from labfleet.config import LabConfig
from labfleet.errors import HostAbandoned, PreconditionSkipped, RemoteExecutionError, UnreachableHostError
from labfleet.hostspec import HostSet
from labfleet.operations import RemoteOperation
from labfleet.probe import Probe, make_probe
from labfleet.remote import PsResult, RemoteSession, Transport
from labfleet.results import UNREACHABLE, HostOutcome, ResultBatch, collect


CANCELLED = "cancelled"
BATCH_TIMEOUT = "batch timeout"
INTERRUPTED = "interrupted"


class GuardedSession:
    """RemoteSession that refuses further remote calls once stop is set.

    Args:
        session: The open session being wrapped.
        stop: Set by the dispatcher when it abandons the host.
    """

    def __init__(self, session: RemoteSession, stop: threading.Event):
        self.host = session.host
        self._session = session
        self._stop = stop

    def run_ps(self, script: str) -> PsResult:
        if self._stop.is_set():
            raise HostAbandoned(self.host)
        return self._session.run_ps(script)

    def close(self) -> None:
        self._session.close()


class RemoteDispatcher:
    """Run an operation on every host, isolating failures per host.

    Hosts are consumed from a queue by config.max_concurrent workers; with
    the default of one worker the batch runs strictly in order. Each host is
    attempted exactly once and gets exactly one outcome.

    Blocking session work runs on a thread pool owned by each dispatch. When
    the batch is cut short the pool is released without waiting, and work
    still running stops at its next remote call.

    Args:
        config: Lab configuration.
        transport: Opens remote sessions.
        probe: Reachability check run right before each host. Defaults to a
            single ping with the configured timeout.
    """

    def __init__(self, config: LabConfig, transport: Transport, probe: Probe | None = None):
        self.config = config
        self.transport = transport
        self.probe = probe or make_probe(config)

    async def dispatch(
        self,
        hosts: HostSet,
        op: RemoteOperation,
        cancel: asyncio.Event | None = None,
        abort: asyncio.Event | None = None,
    ) -> ResultBatch:
        """Run op against each host.

        Args:
            hosts: Hosts to attempt.
            op: Operation to run.
            cancel: Checked before each host starts. Hosts not yet started
                when it is set are recorded as skipped.
            abort: When set, hosts in progress are abandoned and recorded as
                interrupted failures.

        Returns:
            ResultBatch: One outcome per host, in host order.
        """
        queue: asyncio.Queue[str] = asyncio.Queue()
        for host in hosts:
            queue.put_nowait(host)

        outcomes: dict[str, HostOutcome] = {}
        started: set[str] = set()
        stop = threading.Event()
        worker_count = max(1, min(self.config.max_concurrent, len(hosts)))
        executor = ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="labfleet")

        async def _worker() -> None:
            while True:
                try:
                    host = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if cancel is not None and cancel.is_set():
                    outcomes[host] = HostOutcome.skipped(host, CANCELLED)
                    continue
                started.add(host)
                outcomes[host] = await self.run_host(host, op, executor, stop)
                self._log_outcome(outcomes[host])

        workers = [asyncio.create_task(_worker()) for _ in range(worker_count)]
        logger.info(f"Dispatching {op.name} to {len(hosts)} host(s) with {worker_count} worker(s)")

        try:
            cut_short = await self._wait(workers, abort)
            if cut_short:
                logger.warning(f"Dispatch cut short ({cut_short}); abandoning hosts in progress")
                stop.set()
                pending = [task for task in workers if not task.done()]
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for host in hosts:
            if host in outcomes:
                continue
            if cut_short == INTERRUPTED and host not in started:
                outcomes[host] = HostOutcome.skipped(host, CANCELLED)
            else:
                outcomes[host] = HostOutcome.failure(host, cut_short or BATCH_TIMEOUT)

        return collect(outcomes.values(), op.name, order=hosts)

    async def _wait(self, workers: list[asyncio.Task], abort: asyncio.Event | None) -> str | None:
        """Wait for every worker. Returns why the batch was cut short, or None."""
        loop = asyncio.get_running_loop()
        deadline = None
        if self.config.batch_timeout is not None:
            deadline = loop.time() + self.config.batch_timeout
        abort_task = asyncio.create_task(abort.wait()) if abort is not None else None
        pending: set[asyncio.Task] = set(workers)

        try:
            while pending:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        return BATCH_TIMEOUT
                waiting = (pending | {abort_task}) if abort_task is not None else pending
                done, _ = await asyncio.wait(waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
                if abort_task is not None and abort_task in done:
                    return INTERRUPTED
                if not done:
                    return BATCH_TIMEOUT
                pending -= done
            return None
        finally:
            if abort_task is not None:
                abort_task.cancel()

    async def run_host(
        self,
        host: str,
        op: RemoteOperation,
        executor: ThreadPoolExecutor | None = None,
        stop: threading.Event | None = None,
    ) -> HostOutcome:
        """Probe, then run op on one host, converting every error to an outcome."""
        try:
            if not await self.probe(host):
                raise UnreachableHostError(host)
        except UnreachableHostError:
            return HostOutcome.failure(host, UNREACHABLE)
        except Exception as exc:
            logger.warning(f"{host}: probe raised {exc!r}")
            return HostOutcome.failure(host, UNREACHABLE)

        # Reason: the whole session lifecycle runs in one worker thread so the
        # close in _run_in_session happens even if this task is cancelled.
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, self._run_in_session, host, op, stop or threading.Event())

    def _run_in_session(self, host: str, op: RemoteOperation, stop: threading.Event) -> HostOutcome:
        try:
            session = self.transport.open(host)
        except RemoteExecutionError as exc:
            return HostOutcome.failure(host, str(exc))
        except Exception as exc:
            return HostOutcome.failure(host, f"connection error: {exc}")

        guarded = GuardedSession(session, stop)
        try:
            reason = op.precondition(guarded)
            if reason:
                raise PreconditionSkipped(reason)
            if stop.is_set():
                raise HostAbandoned(host)
            payload = op.run(guarded)
        except PreconditionSkipped as exc:
            return HostOutcome.skipped(host, str(exc))
        except HostAbandoned as exc:
            logger.debug(f"{host}: stopped after being abandoned")
            return HostOutcome.failure(host, str(exc))
        except Exception as exc:
            return HostOutcome.failure(host, str(exc) or type(exc).__name__)
        finally:
            try:
                session.close()
            except Exception as exc:
                logger.debug(f"{host}: error closing session: {exc!r}")

        return HostOutcome.success(host, payload if op.produces_result else None)

    @staticmethod
    def _log_outcome(outcome: HostOutcome) -> None:
        if outcome.reason:
            logger.info(f"{outcome.host}: {outcome.status.value} ({outcome.reason})")
        else:
            logger.info(f"{outcome.host}: {outcome.status.value}")
