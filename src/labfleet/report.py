"""Report writing: one CSV per host plus a batch summary."""

import csv
import re
from datetime import datetime
from pathlib import Path

from rich.markup import escape
from rich.table import Table

from labfleet.results import OutcomeStatus, ResultBatch, partition_by_host


SUMMARY_NAME = "summary.csv"
SUMMARY_COLUMNS = ["Host", "Status", "Reason", "Rows", "FinishedAt"]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name).strip("_") or "report"


def report_dir(root: Path, title: str, now: datetime | None = None) -> Path:
    """Directory for one run's reports: <root>/<title>-<YYYYmmdd-HHMMSS>."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return root / f"{_safe_name(title)}-{stamp}"


def write_reports(
    batch: ResultBatch,
    title: str,
    root: Path,
    columns: list[str] | None = None,
    now: datetime | None = None,
) -> list[Path]:
    """Write per-host CSV reports and a summary for a batch.

    Hosts with a payload get <host>.csv holding their rows. Every host appears
    in summary.csv. Columns default to the union of row keys in first-seen
    order.

    Args:
        batch: Collected outcomes.
        title: Report title, used for the run directory name.
        root: Parent directory for run directories.
        columns: Column order for host reports.
        now: Timestamp for the directory name. Defaults to the current time.

    Returns:
        list[Path]: Files written, summary last.
    """
    out_dir = report_dir(root, title, now)
    out_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    for host, outcome in partition_by_host(batch).items():
        if not outcome.payload:
            continue
        fieldnames = list(columns or [])
        for row in outcome.payload:
            for key in row:
                if key not in fieldnames:
                    fieldnames.append(key)
        path = out_dir / f"{_safe_name(host)}.csv"
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=["Host", *fieldnames], extrasaction="ignore")
            writer.writeheader()
            for row in outcome.payload:
                writer.writerow({"Host": host, **row})
        written.append(path)

    summary_path = out_dir / SUMMARY_NAME
    with open(summary_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(SUMMARY_COLUMNS)
        for outcome in batch.outcomes:
            writer.writerow([
                outcome.host,
                outcome.status.value,
                outcome.reason or "",
                len(outcome.payload) if outcome.payload is not None else "",
                outcome.finished_at.isoformat(timespec="seconds"),
            ])
    written.append(summary_path)
    return written


_STATUS_LABELS = {
    OutcomeStatus.SUCCESS: "[OK]",
    OutcomeStatus.FAILURE: "[FAILED]",
    OutcomeStatus.SKIPPED: "[SKIPPED]",
}


def render_summary(batch: ResultBatch) -> Table:
    """Build a rich table listing every host's outcome.

    Unreachable hosts are labelled separately from other failures.
    """
    table = Table(title=f"{batch.operation}: {len(batch.successes())}/{len(batch)} succeeded")
    table.add_column("Host")
    table.add_column("Status")
    table.add_column("Detail")

    for outcome in batch.outcomes:
        if outcome.is_unreachable:
            label = "[UNREACHABLE]"
        else:
            label = _STATUS_LABELS[outcome.status]
        if outcome.reason:
            detail = escape(outcome.reason)
        elif outcome.payload is not None:
            detail = f"{len(outcome.payload)} row(s)"
        else:
            detail = ""
        table.add_row(escape(outcome.host), label, detail)

    return table
