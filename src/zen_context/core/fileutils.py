"""File utilities - atomic writes and cross-process locking."""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)


def ensure_dir(path: Path) -> Path:
    """Ensure directory exists."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def fsync_directory(path: Path) -> None:
    """Flush a directory entry so a completed rename survives a crash."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


@contextmanager
def atomic_write(
    path: Path,
    mode: str = "w",
    encoding: str | None = "utf-8",
    fsync: bool = True,
) -> Generator:
    """Context manager for atomic file writes.

    Writes go to a temp file in the target directory which replaces the
    target only after the block finishes without error.

    Example:
        with atomic_write(Path("config.yaml")) as f:
            f.write(text)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )
    tmp_file = Path(tmp_path)

    try:
        if "b" in mode:
            f = os.fdopen(fd, mode)
        else:
            f = os.fdopen(fd, mode, encoding=encoding)

        try:
            yield f

            if fsync:
                f.flush()
                os.fsync(f.fileno())
        finally:
            f.close()

        tmp_file.replace(path)
        if fsync:
            fsync_directory(path.parent)

    except BaseException:
        try:
            tmp_file.unlink()
        except OSError:
            pass
        raise


@contextmanager
def file_lock(lock_path: Path, timeout: float = 10.0) -> Generator[None, None, None]:
    """Cross-process file lock using flock.

    Raises:
        TimeoutError: If the lock is not acquired within ``timeout`` seconds
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    start = time.time()
    lock_fd = None

    try:
        lock_fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT)
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.time() - start > timeout:
                    raise TimeoutError(f"Could not acquire lock on {lock_path} within {timeout}s")
                time.sleep(0.1)
        yield
    finally:
        if lock_fd is not None:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
            except OSError:
                pass
            os.close(lock_fd)


__all__ = ["ensure_dir", "fsync_directory", "atomic_write", "file_lock"]
