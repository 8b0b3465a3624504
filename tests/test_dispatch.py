"""Tests for fan-out dispatch (dispatch.py).

A FakeTransport stands in for WinRM and FakeOperation scripts per-host
behaviour, so these tests exercise isolation and ordering only.
"""

import asyncio
import time

import pytest

from conftest import FakeOperation, FakeTransport, make_probe
from labfleet.config import LabConfig
from labfleet.dispatch import BATCH_TIMEOUT, CANCELLED, INTERRUPTED, RemoteDispatcher
from labfleet.hostspec import HostSet
from labfleet.results import OutcomeStatus


def _statuses(batch):
    return {o.host: (o.status, o.reason) for o in batch.outcomes}


@pytest.mark.asyncio
async def test_unreachable_host_isolated():
    """B's probe fails; A and C keep their real outcomes, A's failure does not touch C."""
    transport = FakeTransport()
    op = FakeOperation(fail={"A"})
    dispatcher = RemoteDispatcher(LabConfig(), transport, make_probe(down={"B"}))

    batch = await dispatcher.dispatch(HostSet(["A", "B", "C"]), op)

    assert [o.host for o in batch.outcomes] == ["A", "B", "C"]
    assert batch.outcomes[0].status is OutcomeStatus.FAILURE
    assert "boom on A" in batch.outcomes[0].reason
    assert batch.outcomes[1].status is OutcomeStatus.FAILURE
    assert batch.outcomes[1].reason == "unreachable"
    assert batch.outcomes[2].status is OutcomeStatus.SUCCESS
    assert batch.outcomes[2].payload == [{"host": "C"}]
    # Reason: the unreachable host must never get a session.
    assert transport.opened == ["A", "C"]


@pytest.mark.asyncio
async def test_every_session_closed_even_on_error():
    transport = FakeTransport()
    op = FakeOperation(fail={"A"}, skip={"B"})
    dispatcher = RemoteDispatcher(LabConfig(), transport, make_probe())

    await dispatcher.dispatch(HostSet(["A", "B", "C"]), op)

    assert all(session.closed for session in transport.sessions.values())
    assert set(transport.sessions) == {"A", "B", "C"}


@pytest.mark.asyncio
async def test_precondition_yields_skipped():
    """A reachable host whose precondition declines is Skipped, never Success or Failure."""
    op = FakeOperation(skip={"B"})
    dispatcher = RemoteDispatcher(LabConfig(), FakeTransport(), make_probe())

    batch = await dispatcher.dispatch(HostSet(["A", "B"]), op)

    assert _statuses(batch)["B"] == (OutcomeStatus.SKIPPED, "user alice logged on")
    assert op.ran == ["A"]


@pytest.mark.asyncio
async def test_connection_error_is_failure():
    dispatcher = RemoteDispatcher(LabConfig(), FakeTransport(refuse={"B"}), make_probe())

    batch = await dispatcher.dispatch(HostSet(["A", "B"]), FakeOperation())

    status, reason = _statuses(batch)["B"]
    assert status is OutcomeStatus.FAILURE
    assert reason.startswith("connection error")


@pytest.mark.asyncio
async def test_fire_and_forget_has_no_payload():
    op = FakeOperation(produces_result=False)
    dispatcher = RemoteDispatcher(LabConfig(), FakeTransport(), make_probe())

    batch = await dispatcher.dispatch(HostSet(["A"]), op)

    assert batch.outcomes[0].status is OutcomeStatus.SUCCESS
    assert batch.outcomes[0].payload is None


@pytest.mark.asyncio
async def test_rerun_yields_same_classification():
    """Same hosts, same remote state: the status of every host is stable."""
    dispatcher = RemoteDispatcher(LabConfig(), FakeTransport(), make_probe(down={"C"}))
    hosts = HostSet(["A", "B", "C"])
    op = FakeOperation(fail={"A"}, skip={"B"})

    first = await dispatcher.dispatch(hosts, op)
    second = await dispatcher.dispatch(hosts, op)

    assert [o.status for o in first.outcomes] == [o.status for o in second.outcomes]


@pytest.mark.asyncio
async def test_parallel_preserves_input_order():
    """Workers finish out of order; the batch still follows host order."""
    hosts = HostSet([f"h{i}" for i in range(6)])
    transport = FakeTransport()
    dispatcher = RemoteDispatcher(LabConfig(max_concurrent=3), transport, make_probe())

    batch = await dispatcher.dispatch(hosts, FakeOperation(delay=0.01))

    assert [o.host for o in batch.outcomes] == hosts.as_list()
    assert sorted(transport.opened) == sorted(hosts.as_list())
    assert len(transport.opened) == 6


@pytest.mark.asyncio
async def test_cancel_skips_unstarted_hosts():
    cancel = asyncio.Event()
    dispatcher = RemoteDispatcher(LabConfig(), FakeTransport(), make_probe())

    class CancellingOp(FakeOperation):
        def run(self, session):
            rows = super().run(session)
            if session.host == "A":
                cancel.set()
            return rows

    batch = await dispatcher.dispatch(HostSet(["A", "B", "C"]), CancellingOp(), cancel=cancel)

    statuses = _statuses(batch)
    assert statuses["A"][0] is OutcomeStatus.SUCCESS
    assert statuses["B"] == (OutcomeStatus.SKIPPED, CANCELLED)
    assert statuses["C"] == (OutcomeStatus.SKIPPED, CANCELLED)


@pytest.mark.asyncio
async def test_batch_timeout_fails_unfinished_hosts():
    config = LabConfig(batch_timeout=0.05)
    dispatcher = RemoteDispatcher(config, FakeTransport(), make_probe())
    op = FakeOperation(delay=0.2)

    batch = await dispatcher.dispatch(HostSet(["A", "B"]), op)

    assert len(batch) == 2
    assert all(o.status is OutcomeStatus.FAILURE for o in batch.outcomes)
    assert all(o.reason == BATCH_TIMEOUT for o in batch.outcomes)


@pytest.mark.asyncio
async def test_probe_exception_counts_as_unreachable():
    async def broken_probe(host):
        raise OSError("no route")

    dispatcher = RemoteDispatcher(LabConfig(), FakeTransport(), broken_probe)

    batch = await dispatcher.dispatch(HostSet(["A"]), FakeOperation())

    assert batch.outcomes[0].is_unreachable


@pytest.mark.asyncio
async def test_empty_host_set():
    dispatcher = RemoteDispatcher(LabConfig(), FakeTransport(), make_probe())

    batch = await dispatcher.dispatch(HostSet(), FakeOperation())

    assert len(batch) == 0
    assert batch.operation == "fake"


class SlowThenRemoteOp(FakeOperation):
    """Blocks for delay seconds, then makes one more remote call."""

    def run(self, session):
        self.ran.append(session.host)
        time.sleep(self.delay)
        session.run_ps("Write-Output after-deadline")
        return [{"host": session.host}]


def test_batch_timeout_bounds_the_whole_run():
    """The event loop shuts down at the deadline, not when the host's work ends."""
    transport = FakeTransport()
    op = SlowThenRemoteOp(delay=1.5)
    dispatcher = RemoteDispatcher(LabConfig(batch_timeout=0.1), transport, make_probe())

    started = time.monotonic()
    batch = asyncio.run(dispatcher.dispatch(HostSet(["A"]), op))
    elapsed = time.monotonic() - started

    assert batch.outcomes[0].reason == BATCH_TIMEOUT
    assert elapsed < 1.0

    # Reason: let the abandoned thread wake up and reach its next remote call.
    time.sleep(op.delay + 0.5)
    session = transport.sessions["A"]
    assert not any("after-deadline" in s for s in session.scripts)
    assert session.closed


@pytest.mark.asyncio
async def test_abort_abandons_running_host_and_skips_the_rest():
    abort = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, abort.set)
    dispatcher = RemoteDispatcher(LabConfig(), FakeTransport(), make_probe())

    started = time.monotonic()
    batch = await dispatcher.dispatch(HostSet(["A", "B"]), FakeOperation(delay=0.5), abort=abort)

    assert time.monotonic() - started < 0.4
    statuses = _statuses(batch)
    assert statuses["A"] == (OutcomeStatus.FAILURE, INTERRUPTED)
    assert statuses["B"] == (OutcomeStatus.SKIPPED, CANCELLED)


@pytest.mark.asyncio
async def test_abandoned_session_refuses_remote_calls():
    """Precondition and run happen in one session; a stop between them ends the host."""
    transport = FakeTransport()
    dispatcher = RemoteDispatcher(LabConfig(batch_timeout=0.05), transport, make_probe())

    class SlowPrecondition(FakeOperation):
        def precondition(self, session):
            time.sleep(0.2)
            return None

    op = SlowPrecondition()
    batch = await dispatcher.dispatch(HostSet(["A"]), op)
    await asyncio.sleep(0.4)

    assert batch.outcomes[0].reason == BATCH_TIMEOUT
    assert op.ran == []
    assert transport.sessions["A"].closed
