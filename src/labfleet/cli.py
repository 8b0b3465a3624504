"""labfleet CLI entry point.

Exit codes: 0 when every host succeeded or was skipped, 1 when any host
failed or was unreachable, 2 when the target or configuration is unusable.
"""

import asyncio
import signal
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from labfleet import __version__
from labfleet.config import LabConfig, load_config
from labfleet.errors import InvalidSpecError, UnresolvableSpecError
from labfleet.fleet import Fleet
from labfleet.hostspec import classify
from labfleet.log import setup_logger
from labfleet.operations import (
    DefenderStatus,
    InstallApp,
    Inventory,
    PushFile,
    Reboot,
    RemoteOperation,
    UsbDevices,
)
from labfleet.report import render_summary, write_reports
from labfleet.results import ResultBatch


EXIT_FAILURES = 1
EXIT_BAD_INPUT = 2

app = typer.Typer(
    name="labfleet",
    help="labfleet: Windows lab maintenance across many hosts.",
    no_args_is_help=True,
)

console = Console()

TARGET_HELP = (
    "Hosts: a name, a comma list, a file of names, a name prefix, "
    "or blank/localhost for this machine."
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"labfleet {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to lab.toml."),
    parallel: Optional[int] = typer.Option(None, "--parallel", "-p", min=1, help="Hosts to work on at once."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr."),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """labfleet: Windows lab maintenance across many hosts."""
    setup_logger(verbose)
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except (ValidationError, OSError, ValueError) as exc:
        console.print(f"Error: invalid configuration: {escape(str(exc))}")
        raise typer.Exit(code=EXIT_BAD_INPUT)
    if parallel is not None:
        config = config.model_copy(update={"max_concurrent": parallel})
    ctx.obj["config"] = config


def make_fleet(config: LabConfig) -> Fleet:
    """Build the Fleet used by commands."""
    return Fleet(config)


def make_interrupt_handler(cancel: asyncio.Event, abort: asyncio.Event):
    """Build the SIGINT handler for a batch.

    The first Ctrl-C sets cancel so no new host starts. Any later one sets
    abort, which abandons the hosts still in progress.
    """

    def _on_interrupt() -> None:
        if not cancel.is_set():
            logger.warning("Interrupted: no new hosts will be started")
            console.print("Interrupted: finishing hosts in progress. Press Ctrl-C again to abandon them.")
            cancel.set()
        elif not abort.is_set():
            logger.warning("Interrupted again: abandoning hosts in progress")
            console.print("Abandoning hosts in progress.")
            abort.set()

    return _on_interrupt


async def _run_with_cancel(fleet: Fleet, spec, op: RemoteOperation) -> ResultBatch:
    """Run a batch with a two-stage Ctrl-C: stop starting hosts, then abandon."""
    cancel = asyncio.Event()
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, make_interrupt_handler(cancel, abort))
    except (NotImplementedError, RuntimeError, ValueError):
        # Reason: signal handlers are unavailable on Windows event loops and
        # outside the main thread; Ctrl-C then aborts the run outright.
        pass
    try:
        return await fleet.run(spec, op, cancel=cancel, abort=abort)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError, ValueError):
            pass


def _print_followup(batch: ResultBatch) -> None:
    unreachable = batch.unreachable()
    failures = batch.failures()
    skipped = batch.skipped()
    if unreachable:
        console.print(f"Unreachable ({len(unreachable)}): {escape(', '.join(o.host for o in unreachable))}")
    if failures:
        console.print(f"Failed ({len(failures)}): {escape(', '.join(o.host for o in failures))}")
    if skipped:
        console.print(f"Skipped ({len(skipped)}): {escape(', '.join(o.host for o in skipped))}")
    if not batch.ok:
        console.print(f"Re-run failures with target: {escape(batch.rerun_target())}")


def run_operation(
    ctx: typer.Context,
    target: str,
    op: RemoteOperation,
    output: Optional[str] = None,
    prefix: bool = False,
) -> None:
    """Resolve target, run op on it, report, and exit with the batch status."""
    config: LabConfig = ctx.obj["config"]
    spec = classify(target, force_prefix=prefix)
    fleet = make_fleet(config)

    try:
        batch = asyncio.run(_run_with_cancel(fleet, spec, op))
    except (InvalidSpecError, UnresolvableSpecError) as exc:
        logger.error(f"Target '{target}': {exc}")
        console.print(f"Error: {escape(str(exc))}")
        raise typer.Exit(code=EXIT_BAD_INPUT)

    console.print(render_summary(batch))

    if op.produces_result:
        paths = write_reports(batch, output or op.title, config.reports_dir, columns=op.columns)
        console.print(f"Wrote {len(paths)} report file(s) to {escape(str(paths[-1].parent))}")

    _print_followup(batch)

    if not batch.ok:
        raise typer.Exit(code=EXIT_FAILURES)


@app.command("resolve")
def resolve_cmd(
    ctx: typer.Context,
    target: str = typer.Argument("", help=TARGET_HELP),
    prefix: bool = typer.Option(False, "--prefix", help="Treat TARGET as a directory name prefix."),
) -> None:
    """Print the hosts a target resolves to, one per line."""
    config: LabConfig = ctx.obj["config"]
    fleet = make_fleet(config)
    try:
        hosts = asyncio.run(fleet.resolve(classify(target, force_prefix=prefix)))
    except (InvalidSpecError, UnresolvableSpecError) as exc:
        console.print(f"Error: {escape(str(exc))}")
        raise typer.Exit(code=EXIT_BAD_INPUT)
    for host in hosts:
        typer.echo(host)


@app.command("scan")
def scan_cmd(
    ctx: typer.Context,
    target: str = typer.Argument("", help=TARGET_HELP),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Report name."),
    prefix: bool = typer.Option(False, "--prefix", help="Treat TARGET as a directory name prefix."),
) -> None:
    """Report Microsoft Defender engine and scan status."""
    run_operation(ctx, target, DefenderStatus(), output, prefix)


@app.command("inventory")
def inventory_cmd(
    ctx: typer.Context,
    target: str = typer.Argument("", help=TARGET_HELP),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Report name."),
    prefix: bool = typer.Option(False, "--prefix", help="Treat TARGET as a directory name prefix."),
) -> None:
    """Collect hardware details and installed software."""
    run_operation(ctx, target, Inventory(), output, prefix)


@app.command("usb")
def usb_cmd(
    ctx: typer.Context,
    target: str = typer.Argument("", help=TARGET_HELP),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Report name."),
    prefix: bool = typer.Option(False, "--prefix", help="Treat TARGET as a directory name prefix."),
) -> None:
    """List USB devices connected to each host."""
    run_operation(ctx, target, UsbDevices(), output, prefix)


@app.command("reboot")
def reboot_cmd(
    ctx: typer.Context,
    target: str = typer.Argument(..., help=TARGET_HELP),
    force: bool = typer.Option(False, "--force", "-f", help="Reboot even if a user is logged on."),
    prefix: bool = typer.Option(False, "--prefix", help="Treat TARGET as a directory name prefix."),
) -> None:
    """Restart hosts, skipping those with a logged-on user unless forced."""
    run_operation(ctx, target, Reboot(force=force), prefix=prefix)


@app.command("push")
def push_cmd(
    ctx: typer.Context,
    target: str = typer.Argument(..., help=TARGET_HELP),
    source: Path = typer.Argument(..., help="Local file to copy."),
    destination: str = typer.Argument(..., help=r"Destination path on each host, e.g. C:\Users\Public\file.txt."),
    prefix: bool = typer.Option(False, "--prefix", help="Treat TARGET as a directory name prefix."),
) -> None:
    """Copy a file to the same path on every host."""
    try:
        op = PushFile(source, destination)
    except FileNotFoundError as exc:
        console.print(f"Error: {escape(str(exc))}")
        raise typer.Exit(code=EXIT_BAD_INPUT)
    run_operation(ctx, target, op, prefix=prefix)


@app.command("install")
def install_cmd(
    ctx: typer.Context,
    target: str = typer.Argument(..., help=TARGET_HELP),
    installer: Path = typer.Argument(..., help="Local .msi or .exe installer."),
    args: str = typer.Option("", "--args", help="Extra installer arguments."),
    force: bool = typer.Option(False, "--force", "-f", help="Install even if a user is logged on."),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Report name."),
    prefix: bool = typer.Option(False, "--prefix", help="Treat TARGET as a directory name prefix."),
) -> None:
    """Push an installer to each host and run it silently."""
    try:
        op = InstallApp(installer, args=args, force=force)
    except FileNotFoundError as exc:
        console.print(f"Error: {escape(str(exc))}")
        raise typer.Exit(code=EXIT_BAD_INPUT)
    run_operation(ctx, target, op, output, prefix)
