"""Shared test fixtures for the labfleet test suite."""

import asyncio

import pytest

from labfleet.config import LabConfig
from labfleet.operations import RemoteOperation
from labfleet.remote import PsResult


class FakeSession:
    """In-memory RemoteSession.

    Scripts are matched against registered substrings in registration order;
    the first match supplies the result. Unmatched scripts succeed with empty
    output.

    Attributes:
        host: Host the session belongs to.
        scripts: Every script run, in order.
        closed: Whether close() was called.
    """

    def __init__(self, host: str):
        self.host = host
        self.scripts: list[str] = []
        self.closed = False
        self._responses: list[tuple[str, str, str, int]] = []

    def register(self, pattern: str, stdout: str = "", stderr: str = "", status_code: int = 0):
        self._responses.append((pattern, stdout, stderr, status_code))

    def run_ps(self, script: str) -> PsResult:
        self.scripts.append(script)
        for pattern, stdout, stderr, status_code in self._responses:
            if pattern in script:
                return PsResult(stdout=stdout, stderr=stderr, status_code=status_code, host=self.host)
        return PsResult(stdout="", stderr="", status_code=0, host=self.host)

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Transport handing out FakeSessions.

    Attributes:
        sessions: Every session opened, keyed by host.
        refuse: Hosts whose session cannot be established.
    """

    def __init__(self, refuse: set[str] | None = None):
        self.refuse = refuse or set()
        self.sessions: dict[str, FakeSession] = {}
        self.opened: list[str] = []

    def open(self, host: str) -> FakeSession:
        from labfleet.errors import RemoteExecutionError

        self.opened.append(host)
        if host in self.refuse:
            raise RemoteExecutionError("connection error: refused")
        session = FakeSession(host)
        self.sessions[host] = session
        return session


class FakeOperation(RemoteOperation):
    """Operation whose behaviour per host is scripted by the test.

    Args:
        fail: Hosts whose run() raises.
        skip: Hosts whose precondition declines.
        delay: Seconds run() sleeps, to exercise timeouts.
    """

    name = "fake"
    title = "Fake"
    columns = ["host"]

    def __init__(self, fail=(), skip=(), delay: float = 0.0, produces_result: bool = True):
        self.fail = set(fail)
        self.skip = set(skip)
        self.delay = delay
        self.produces_result = produces_result
        self.ran: list[str] = []

    def precondition(self, session):
        if session.host in self.skip:
            return "user alice logged on"
        return None

    def run(self, session):
        import time

        self.ran.append(session.host)
        if self.delay:
            time.sleep(self.delay)
        if session.host in self.fail:
            raise RuntimeError(f"boom on {session.host}")
        return [{"host": session.host}]


def make_probe(down=()):
    """Build an async probe reporting hosts in down as unreachable.

    The returned callable records every host it was asked about in .calls.
    """
    down = set(down)
    calls: list[str] = []

    async def _probe(host: str) -> bool:
        calls.append(host)
        await asyncio.sleep(0)
        return host not in down

    _probe.calls = calls
    return _probe


@pytest.fixture
def lab_config(tmp_path) -> LabConfig:
    """LabConfig writing reports under tmp_path and never pre-probing."""
    return LabConfig(
        report_root=str(tmp_path / "reports"),
        known_hosts=["g-lab-02", "g-lab-01", "other-pc"],
        liveness_threshold=20,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
