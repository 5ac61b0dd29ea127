"""Logging setup and timing helpers.

Verbosity comes from the environment:
- ZEN_DEBUG=1    full debug output with source paths and locals in tracebacks
- ZEN_VERBOSE=1  debug output and stage timings
- ZEN_QUIET=1    errors only
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from enum import IntEnum
from typing import Generator

from rich.console import Console
from rich.logging import RichHandler

# Global console for rich output
console = Console(stderr=True)

LOGGER_NAME = "zen_context"


class Verbosity(IntEnum):
    """Verbosity levels."""

    QUIET = 0  # Only errors
    NORMAL = 1  # Info + warnings
    VERBOSE = 2  # Debug info
    DEBUG = 3  # Full trace


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def get_verbosity() -> Verbosity:
    """Get current verbosity level from environment."""
    if _env_flag("ZEN_DEBUG"):
        return Verbosity.DEBUG
    if _env_flag("ZEN_VERBOSE"):
        return Verbosity.VERBOSE
    if _env_flag("ZEN_QUIET"):
        return Verbosity.QUIET
    return Verbosity.NORMAL


def is_verbose() -> bool:
    """Check if verbose mode is enabled."""
    return get_verbosity() >= Verbosity.VERBOSE


def setup_logging(
    level: int | str | None = None,
    verbosity: Verbosity | None = None,
    rich_tracebacks: bool = True,
) -> logging.Logger:
    """
    Setup logging with rich formatting on the package logger.

    Args:
        level: Log level (defaults based on verbosity)
        verbosity: Explicit verbosity, otherwise read from the environment
        rich_tracebacks: Use rich for exception formatting

    Returns:
        Configured logger
    """
    if verbosity is None:
        verbosity = get_verbosity()

    if level is None:
        level = {
            Verbosity.QUIET: logging.ERROR,
            Verbosity.NORMAL: logging.WARNING,
            Verbosity.VERBOSE: logging.DEBUG,
            Verbosity.DEBUG: logging.DEBUG,
        }[verbosity]

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = RichHandler(
        console=console,
        show_time=True,
        show_path=verbosity >= Verbosity.DEBUG,
        rich_tracebacks=rich_tracebacks,
        tracebacks_show_locals=verbosity >= Verbosity.DEBUG,
    )
    handler.setLevel(level)
    logger.addHandler(handler)

    return logger


@contextmanager
def timer(name: str, log: bool = True) -> Generator[dict[str, float], None, None]:
    """
    Context manager to time a block of code.

    Usage:
        with timer("scan") as t:
            diff = scanner.scan(root, previous)
        print(f"Took {t['elapsed']:.2f}s")
    """
    result: dict[str, float] = {"start": 0, "end": 0, "elapsed": 0}
    result["start"] = time.perf_counter()

    try:
        yield result
    finally:
        result["end"] = time.perf_counter()
        result["elapsed"] = result["end"] - result["start"]

        if log:
            logging.getLogger(LOGGER_NAME).debug("%s took %.3fs", name, result["elapsed"])


__all__ = [
    "Verbosity",
    "console",
    "get_verbosity",
    "is_verbose",
    "setup_logging",
    "timer",
]
