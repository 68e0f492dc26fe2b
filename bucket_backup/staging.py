"""Scratch directory handling and the per-run lock."""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from .errors import LockBusyError, Stage, StagingError

logger = logging.getLogger(__name__)


def prepare_scratch_dir(scratch_dir: Path) -> Path:
    """Create the scratch directory (and parents). Existing contents are left alone."""
    scratch_dir = Path(scratch_dir)
    try:
        scratch_dir.mkdir(parents=True, exist_ok=True)
    except FileExistsError as e:
        raise StagingError(f"Scratch path exists and is not a directory: {scratch_dir}") from e
    except OSError as e:
        raise StagingError(f"Cannot create scratch directory {scratch_dir}: {e}") from e

    if not os.access(scratch_dir, os.W_OK | os.X_OK):
        raise StagingError(f"Scratch directory is not writable: {scratch_dir}")

    logger.debug(f"Scratch directory ready: {scratch_dir}")
    return scratch_dir


def clean_scratch_dir(scratch_dir: Path) -> bool:
    """
    Remove the scratch directory and everything in it.

    Returns:
        True if something was removed, False if the directory did not exist
    """
    scratch_dir = Path(scratch_dir)
    if not scratch_dir.exists() and not scratch_dir.is_symlink():
        return False
    try:
        if scratch_dir.is_dir() and not scratch_dir.is_symlink():
            shutil.rmtree(scratch_dir)
        else:
            scratch_dir.unlink()
    except OSError as e:
        raise StagingError(
            f"Cannot remove scratch directory {scratch_dir}: {e}", stage=Stage.CLEANUP
        ) from e
    logger.info(f"Removed scratch directory: {scratch_dir}")
    return True


class RunLock:
    """Exclusive, non-blocking lock held for the duration of one run.

    Uses flock(2) so the kernel drops the lock when the holder dies; a lock
    file left behind by a killed run never blocks the next one.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StagingError(f"Cannot open lock file {self.path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise LockBusyError(
                f"Another run holds {self.path}; skipping this trigger"
            ) from e

        try:
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
        except OSError as e:
            os.close(fd)
            raise StagingError(f"Cannot write lock file {self.path}: {e}") from e
        self._fd = fd
        logger.debug(f"Acquired run lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released run lock {self.path}")

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
