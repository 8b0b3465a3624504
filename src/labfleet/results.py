"""Per-host outcomes and the batch that collects them."""

from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from labfleet.hostspec import HostSet


UNREACHABLE = "unreachable"


class OutcomeStatus(str, Enum):
    """Classification of what happened on one host."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class HostOutcome(BaseModel):
    """Immutable result of attempting an operation on one host.

    Attributes:
        host: Hostname the operation targeted.
        status: Success, failure, or skipped.
        payload: Rows returned by the operation, None for fire-and-forget.
        reason: Failure message or skip reason.
        finished_at: When the outcome was recorded.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    status: OutcomeStatus
    payload: list[dict[str, Any]] | None = None
    reason: str | None = None
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def success(cls, host: str, payload: list[dict[str, Any]] | None = None) -> "HostOutcome":
        return cls(host=host, status=OutcomeStatus.SUCCESS, payload=payload)

    @classmethod
    def failure(cls, host: str, reason: str) -> "HostOutcome":
        return cls(host=host, status=OutcomeStatus.FAILURE, reason=reason)

    @classmethod
    def skipped(cls, host: str, reason: str) -> "HostOutcome":
        return cls(host=host, status=OutcomeStatus.SKIPPED, reason=reason)

    @property
    def is_unreachable(self) -> bool:
        return self.status is OutcomeStatus.FAILURE and self.reason == UNREACHABLE


class ResultBatch(BaseModel):
    """Ordered outcomes of one operation, one entry per attempted host.

    Attributes:
        operation: Name of the operation that produced the batch.
        outcomes: Outcomes in host order.
    """

    operation: str
    outcomes: list[HostOutcome] = []

    def __len__(self) -> int:
        return len(self.outcomes)

    def successes(self) -> list[HostOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.SUCCESS]

    def failures(self) -> list[HostOutcome]:
        """Failed outcomes other than unreachable hosts."""
        return [
            o for o in self.outcomes
            if o.status is OutcomeStatus.FAILURE and not o.is_unreachable
        ]

    def unreachable(self) -> list[HostOutcome]:
        return [o for o in self.outcomes if o.is_unreachable]

    def skipped(self) -> list[HostOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.SKIPPED]

    @property
    def ok(self) -> bool:
        """True when no host failed or was unreachable."""
        return all(o.status is not OutcomeStatus.FAILURE for o in self.outcomes)

    def rerun_target(self) -> str:
        """Comma list of failed and unreachable hosts, usable as a new target."""
        return ",".join(o.host for o in self.outcomes if o.status is OutcomeStatus.FAILURE)


def collect(
    outcomes: Iterable[HostOutcome],
    operation: str,
    order: HostSet | None = None,
) -> ResultBatch:
    """Aggregate outcomes into a ResultBatch.

    Stable and order-preserving; nothing is de-duplicated. When order is given,
    outcomes are re-sorted to match it, which parallel dispatch needs because
    workers finish in any order. Hosts missing from order sort last.

    Args:
        outcomes: Outcomes in arrival order.
        operation: Operation name recorded on the batch.
        order: Host input order to restore.

    Returns:
        ResultBatch: The collected outcomes.
    """
    items = list(outcomes)
    if order is not None:
        def _position(outcome: HostOutcome) -> int:
            return order.index_of(outcome.host) if outcome.host in order else len(order)

        items.sort(key=_position)
    return ResultBatch(operation=operation, outcomes=items)


def partition_by_host(batch: ResultBatch) -> dict[str, HostOutcome]:
    """Map each hostname to its outcome for per-host report generation."""
    return {outcome.host: outcome for outcome in batch.outcomes}
