"""Backup run orchestration: prepare, archive, upload, clean up."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .archiver import ArchiveResult, SourceAnalysis, analyze_source, create_archive, extract_archive
from .config import BackupConfig
from .errors import (
    BackupError,
    ConfigError,
    DownloadError,
    Stage,
    StoreError,
)
from .naming import (
    archive_name,
    is_valid_timestamp,
    make_run_timestamp,
    object_key,
    timestamp_from_key,
)
from .staging import RunLock, clean_scratch_dir, prepare_scratch_dir
from .uploader import ObjectStore

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "PENDING"
    PREPARED = "PREPARED"
    ARCHIVED = "ARCHIVED"
    UPLOADED = "UPLOADED"
    CLEANED = "CLEANED"
    FAILED = "FAILED"


class RunResult:
    """Result of a backup run."""

    def __init__(
        self,
        timestamp: str,
        key: str,
        state: RunState,
        history: Optional[List[RunState]] = None,
        failed_stage: Optional[Stage] = None,
        error_message: str = "",
        archive_size: int = 0,
        file_count: int = 0,
        execution_time: float = 0.0,
        kept_archive: Optional[Path] = None,
        pruned_keys: Optional[List[str]] = None,
    ):
        self.timestamp = timestamp
        self.key = key
        self.state = state
        self.history = history or []
        self.failed_stage = failed_stage
        self.error_message = error_message
        self.archive_size = archive_size
        self.file_count = file_count
        self.execution_time = execution_time
        self.kept_archive = kept_archive
        self.pruned_keys = pruned_keys or []

    @property
    def success(self) -> bool:
        return self.state is RunState.CLEANED


class DryRunResult:
    """What a backup run would do, computed without side effects."""

    def __init__(self, source_root: str, key: str, analysis: SourceAnalysis):
        self.source_root = source_root
        self.key = key
        self.analysis = analysis


class RestoreResult:
    """Outcome of restoring one backup into a destination directory."""

    def __init__(self, key: str, destination: Path, size_bytes: int, entry_count: int):
        self.key = key
        self.destination = destination
        self.size_bytes = size_bytes
        self.entry_count = entry_count


def format_size(size_bytes: int) -> str:
    """Format byte size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024.0

    return f"{size:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        return f"{seconds // 60:.0f}m {seconds % 60:.0f}s"
    else:
        return f"{seconds // 3600:.0f}h {(seconds % 3600) // 60:.0f}m"


class BackupRun:
    """One run of the backup job.

    The run timestamp is fixed here, once, and both the archive filename and
    the object key are derived from it.
    """

    def __init__(
        self,
        config: BackupConfig,
        store: ObjectStore,
        now: Optional[datetime] = None,
    ):
        self.config = config
        self.store = store
        self.started_at = now or datetime.now()
        self.timestamp = make_run_timestamp(self.started_at)
        self.key = object_key(config.key_prefix, self.timestamp)
        self.scratch_dir = Path(config.scratch_dir)
        self.archive_path = self.scratch_dir / archive_name(self.key)

        self.state = RunState.PENDING
        self.history: List[RunState] = [RunState.PENDING]
        self.failed_stage: Optional[Stage] = None
        self.error_message = ""
        self.archive: Optional[ArchiveResult] = None
        self.kept_archive: Optional[Path] = None
        self.pruned_keys: List[str] = []

    def _transition(self, state: RunState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"Run {self.timestamp}: {state.value}")

    def _fail(self, error: BackupError) -> None:
        self.failed_stage = error.stage
        self.error_message = str(error)
        self._transition(RunState.FAILED)
        logger.error(f"{error.stage.value} stage failed: {error}")

    def run(self) -> RunResult:
        """Execute all stages in order and return the outcome. Never retries."""
        logger.info(f"Starting backup run {self.timestamp} -> {self.store.location}/{self.key}")

        lock = RunLock(self.config.lock_path)
        try:
            lock.acquire()
        except BackupError as e:
            self._fail(e)
            return self._result()

        try:
            self._run_stages()
        finally:
            lock.release()

        return self._result()

    def _run_stages(self) -> None:
        try:
            prepare_scratch_dir(self.scratch_dir)
        except BackupError as e:
            self._fail(e)
            return
        self._transition(RunState.PREPARED)

        try:
            self.archive = create_archive(
                Path(self.config.source_root),
                self.config.exclusions,
                self.archive_path,
                timeout=self.config.timeout,
            )
            self._transition(RunState.ARCHIVED)

            self.store.upload(self.archive.path, self.key)
            self._transition(RunState.UPLOADED)
        except BackupError as e:
            self._fail(e)
            self._cleanup_after_failure()
            return

        logger.info(f"Backup uploaded: {self.store.location}/{self.key}")

        if self.config.retention:
            self.pruned_keys = prune_old_backups(
                self.store, self.config.key_prefix, self.config.retention, keep=self.key
            )

        try:
            clean_scratch_dir(self.scratch_dir)
        except BackupError as e:
            self._fail(e)
            return
        self._transition(RunState.CLEANED)

    def _cleanup_after_failure(self) -> None:
        if not self.config.cleanup_on_failure:
            if self.archive_path.exists():
                self.kept_archive = self.archive_path
                logger.warning(
                    f"Keeping archive for a manual retry: {self.archive_path} "
                    f"(re-upload with the 'upload' command)"
                )
            else:
                logger.warning(f"Keeping scratch directory: {self.scratch_dir}")
            return

        try:
            clean_scratch_dir(self.scratch_dir)
        except BackupError as e:
            # the original failure stays the reported one
            logger.error(f"Cleanup after failed run also failed: {e}")

    def _result(self) -> RunResult:
        return RunResult(
            timestamp=self.timestamp,
            key=self.key,
            state=self.state,
            history=list(self.history),
            failed_stage=self.failed_stage,
            error_message=self.error_message,
            archive_size=self.archive.size_bytes if self.archive else 0,
            file_count=self.archive.file_count if self.archive else 0,
            execution_time=(datetime.now() - self.started_at).total_seconds(),
            kept_archive=self.kept_archive,
            pruned_keys=self.pruned_keys,
        )


def run_backup(config: BackupConfig, store: ObjectStore, now: Optional[datetime] = None) -> RunResult:
    """Run one scheduled backup against store."""
    return BackupRun(config, store, now=now).run()


def dry_run(config: BackupConfig, now: Optional[datetime] = None) -> DryRunResult:
    """Analyse the source tree for a run without archiving or uploading."""
    key = object_key(config.key_prefix, make_run_timestamp(now))
    analysis = analyze_source(Path(config.source_root), config.exclusions)
    logger.info(
        f"Analysis complete for '{config.source_root}': "
        f"{analysis.total_files} files, {format_size(analysis.total_size)}"
    )
    return DryRunResult(config.source_root, key, analysis)


def prune_old_backups(
    store: ObjectStore, key_prefix: str, retention: int, keep: Optional[str] = None
) -> List[str]:
    """
    Delete remote backups beyond the newest `retention` ones.

    Failures are logged and never raised; pruning must not fail a run whose
    upload already succeeded.

    Returns:
        Keys that were deleted
    """
    deleted = []
    try:
        backups = store.list_backups(key_prefix)
    except StoreError as e:
        logger.warning(f"Could not list backups for retention: {e}")
        return deleted

    for backup in backups[retention:]:
        if backup.key == keep:
            continue
        try:
            store.delete(backup.key)
            deleted.append(backup.key)
        except StoreError as e:
            logger.warning(f"Could not delete old backup {backup.key}: {e}")

    if deleted:
        logger.info(f"Retention: removed {len(deleted)} old backups, kept {retention}")
    return deleted


def resolve_restore_key(
    config: BackupConfig,
    store: ObjectStore,
    key: Optional[str] = None,
    timestamp: Optional[str] = None,
    latest: bool = False,
) -> str:
    """Turn an explicit key, a run timestamp or 'latest' into an object key."""
    if key:
        return key
    if timestamp:
        if not is_valid_timestamp(timestamp):
            raise ConfigError(f"Invalid timestamp '{timestamp}', expected YYYYMMDD_HHMMSS")
        return object_key(config.key_prefix, timestamp)
    if latest:
        try:
            backups = store.list_backups(config.key_prefix)
        except StoreError as e:
            raise DownloadError(str(e)) from e
        if not backups:
            raise DownloadError(
                f"No backups found under {store.location}/{config.key_prefix}_*"
            )
        return backups[0].key
    raise ConfigError("A key, a timestamp or 'latest' is required to restore")


def restore_backup(
    config: BackupConfig,
    store: ObjectStore,
    destination: Path,
    key: Optional[str] = None,
    timestamp: Optional[str] = None,
    latest: bool = False,
) -> RestoreResult:
    """
    Download a backup into the scratch directory and extract it.

    The scratch directory is always removed afterwards.

    Raises:
        BackupError: with the stage (config, lock, prepare, download, extract,
            cleanup) that failed
    """
    resolved = resolve_restore_key(config, store, key=key, timestamp=timestamp, latest=latest)
    scratch_dir = Path(config.scratch_dir)
    local_path = scratch_dir / archive_name(resolved)
    destination = Path(destination)

    logger.info(f"Restoring {store.location}/{resolved} into {destination}")
    with RunLock(config.lock_path):
        prepare_scratch_dir(scratch_dir)
        try:
            size = store.download(resolved, local_path)
            entries = extract_archive(local_path, destination)
        finally:
            try:
                clean_scratch_dir(scratch_dir)
            except BackupError as e:
                logger.error(f"Cleanup after restore failed: {e}")

    logger.info(f"Restore complete: {entries} entries from {resolved}")
    return RestoreResult(resolved, destination, size, entries)


def upload_existing_archive(
    config: BackupConfig, store: ObjectStore, archive_path: Path
) -> str:
    """
    Upload an archive kept by a failed run, under the key of that run.

    The key is rebuilt from the archive filename, so the archive and the
    object keep sharing the original run timestamp.

    Returns:
        The object key
    """
    archive_path = Path(archive_path)
    timestamp = timestamp_from_key(archive_path.name, archive_name(config.key_prefix))
    if timestamp is None:
        raise ConfigError(
            f"{archive_path.name} is not an archive of prefix '{config.key_prefix}'"
        )
    if not archive_path.is_file():
        raise ConfigError(f"Archive not found: {archive_path}")

    key = object_key(config.key_prefix, timestamp)
    scratch_dir = Path(config.scratch_dir)
    with RunLock(config.lock_path):
        store.upload(archive_path, key)
        logger.info(f"Backup uploaded: {store.location}/{key}")
        if archive_path.parent.resolve() == scratch_dir.resolve():
            clean_scratch_dir(scratch_dir)
        else:
            logger.info(f"Archive left in place: {archive_path}")
    return key
