"""Logging setup for labfleet.

File sink: always on, rotated, under ~/.config/labfleet/logs.
Console sink: stderr, WARNING and above unless verbose.
"""

import sys
from pathlib import Path

from loguru import logger


DEFAULT_LOG_DIR = Path.home() / ".config" / "labfleet" / "logs"
LOG_NAME = "labfleet.log"


def setup_logger(verbose: bool = False, log_dir: Path | None = None) -> None:
    """Configure loguru sinks for a CLI run.

    Args:
        verbose: Log DEBUG and above to stderr.
        log_dir: Directory for the rotating log file. Defaults to
            ~/.config/labfleet/logs.
    """
    logger.remove()

    directory = log_dir or DEFAULT_LOG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"Warning: cannot create log directory {directory}: {exc}", file=sys.stderr)
    else:
        logger.add(
            directory / LOG_NAME,
            rotation="5 MB",
            retention=5,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        )

    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level="DEBUG" if verbose else "WARNING",
        colorize=None,
    )
