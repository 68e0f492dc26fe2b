"""Error taxonomy and exit codes for bucket-backup runs."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class Stage(str, Enum):
    """Stages a run (or a restore) can fail in."""

    CONFIG = "config"
    LOCK = "lock"
    PREPARE = "prepare"
    ARCHIVE = "archive"
    UPLOAD = "upload"
    CLEANUP = "cleanup"
    DOWNLOAD = "download"
    EXTRACT = "extract"


EXIT_OK = 0
EXIT_INTERRUPTED = 130

EXIT_CODES = {
    Stage.CONFIG: 1,
    Stage.PREPARE: 3,
    Stage.ARCHIVE: 4,
    Stage.UPLOAD: 5,
    Stage.CLEANUP: 6,
    Stage.LOCK: 7,
    Stage.DOWNLOAD: 8,
    Stage.EXTRACT: 9,
}


def exit_code_for(stage: Optional[Stage]) -> int:
    """Map a failing stage to the process exit code."""
    if stage is None:
        return EXIT_OK
    return EXIT_CODES[stage]


class BackupError(Exception):
    """Base class for every error raised by a backup stage."""

    stage: Stage = Stage.CONFIG

    def __init__(self, message: str, *, stage: Optional[Stage] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigError(BackupError, ValueError):
    """Missing or invalid bucket, path or credential configuration."""

    stage = Stage.CONFIG


class StagingError(BackupError, OSError):
    """Local filesystem failure while preparing or cleaning the scratch area."""

    stage = Stage.PREPARE


class LockBusyError(BackupError):
    """Another run already holds the run lock."""

    stage = Stage.LOCK


class ArchiveError(BackupError):
    stage = Stage.ARCHIVE


class StoreError(BackupError):
    """Object store failure (network, authentication, store-side rejection)."""

    stage = Stage.UPLOAD


class UploadError(StoreError):
    stage = Stage.UPLOAD


class DownloadError(StoreError):
    stage = Stage.DOWNLOAD


class BackupTimeoutError(BackupError, TimeoutError):
    """A stage exceeded the configured timeout."""


class ArchiveTimeoutError(BackupTimeoutError, ArchiveError):
    stage = Stage.ARCHIVE


class UploadTimeoutError(BackupTimeoutError, UploadError):
    stage = Stage.UPLOAD
