"""Logging configuration for group tasks."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional


def format_timespan(duration_seconds: float) -> str:
    """Return a human-readable representation of a duration.

    Examples:
        74.2 -> "1m 14.2s"
        8.9 -> "08.90s"
    """

    if duration_seconds < 0:
        duration_seconds = 0.0

    total_seconds = int(duration_seconds)
    fractional = duration_seconds - total_seconds
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    seconds_with_fraction = seconds + fractional

    if hours:
        return f"{hours}h {minutes:02d}m {seconds_with_fraction:04.1f}s"
    if minutes:
        return f"{minutes}m {seconds_with_fraction:04.1f}s"
    return f"{seconds_with_fraction:05.2f}s"


_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_CONSOLE_FORMAT = "%(levelname)s - %(message)s"


def _reset_root_logger(level: int) -> logging.Logger:
    """Remove existing handlers and configure the root logger."""
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)
    return root_logger


def setup_basic_logging(verbose: bool = False) -> None:
    """Console-only logging used before this task knows its rank."""
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = _reset_root_logger(level)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)


def setup_rank_logging(
    rank: int,
    verbose: bool,
    output_dir: Optional[Path] = None,
    log_prefix: str = "spmd",
) -> Optional[Path]:
    """Initialise per-rank logging for one task of the group.

    Only rank 0 logs to the console unless ``verbose`` is set, in which case
    other ranks prefix their lines with ``[rank N]``. Every rank writes its
    own file when ``output_dir`` is given.

    Returns:
        Path of this rank's log file, or None without ``output_dir``
    """
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = _reset_root_logger(level)

    log_path = None
    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        log_path = output_dir / f"{log_prefix}_rank{rank}.log"

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root_logger.addHandler(file_handler)

    if verbose or rank == 0:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        if verbose and rank != 0:
            console_format = logging.Formatter(f"[rank {rank}] {_CONSOLE_FORMAT}")
        else:
            console_format = logging.Formatter(_CONSOLE_FORMAT)
        console_handler.setFormatter(console_format)
        root_logger.addHandler(console_handler)

    return log_path
