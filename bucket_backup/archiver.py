"""Archive creation and extraction for backup runs."""

from __future__ import annotations

import fnmatch
import logging
import os
import tarfile
import time
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, List, Optional, Tuple

from .errors import ArchiveError, ArchiveTimeoutError, Stage

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"


class ArchiveResult:
    """Result of an archive operation."""

    def __init__(self, path: Path, size_bytes: int, file_count: int, entry_count: int):
        self.path = path
        self.size_bytes = size_bytes
        self.file_count = file_count
        self.entry_count = entry_count

    @property
    def name(self) -> str:
        return self.path.name


class SourceAnalysis:
    """What a backup of the source tree would contain."""

    def __init__(
        self,
        files: Optional[List[str]] = None,
        excluded: Optional[List[str]] = None,
        total_size: int = 0,
    ):
        self.files = files or []
        self.excluded = excluded or []
        self.total_size = total_size

    @property
    def total_files(self) -> int:
        return len(self.files)


def is_excluded(rel_path: str, patterns: Iterable[str]) -> bool:
    """
    Check a path relative to the source root against the exclusion patterns.

    A path is excluded when it, or any of its ancestor directories, matches
    one of the glob patterns. 'logs' therefore excludes 'logs/out.log', and
    'jobs/*/workspace' excludes everything under 'jobs/x/workspace'.
    """
    parts = PurePosixPath(rel_path).parts
    prefixes = ["/".join(parts[: i + 1]) for i in range(len(parts))]
    for pattern in patterns:
        for prefix in prefixes:
            if fnmatch.fnmatchcase(prefix, pattern):
                return True
    return False


def _walk_source(
    source_root: Path, patterns: List[str], excluded: Optional[List[str]] = None
) -> Iterator[Tuple[str, str]]:
    """
    Yield (absolute path, relative posix path) for every entry to archive.

    Excluded directories are pruned so they are never descended. Symlinks to
    directories are yielded as entries but not followed.
    """

    def _raise(error: OSError) -> None:
        raise error

    for dirpath, dirnames, filenames in os.walk(source_root, onerror=_raise):
        rel_dir = os.path.relpath(dirpath, source_root)
        rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/")

        kept_dirs = []
        for name in sorted(dirnames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if is_excluded(rel, patterns):
                if excluded is not None:
                    excluded.append(rel)
                continue
            full = os.path.join(dirpath, name)
            yield full, rel
            if not os.path.islink(full):
                kept_dirs.append(name)
        dirnames[:] = kept_dirs

        for name in sorted(filenames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if is_excluded(rel, patterns):
                if excluded is not None:
                    excluded.append(rel)
                continue
            yield os.path.join(dirpath, name), rel


def _check_source(source_root: Path) -> None:
    if not source_root.is_dir():
        raise ArchiveError(f"Source root is not a directory: {source_root}")
    if not os.access(source_root, os.R_OK | os.X_OK):
        raise ArchiveError(f"Source root is not readable: {source_root}")


def analyze_source(source_root: Path, exclusions: Iterable[str]) -> SourceAnalysis:
    """Collect the files a backup would include, without writing anything."""
    source_root = Path(source_root)
    _check_source(source_root)

    patterns = list(exclusions)
    analysis = SourceAnalysis()
    try:
        for full, rel in _walk_source(source_root, patterns, analysis.excluded):
            if os.path.isfile(full) and not os.path.islink(full):
                analysis.files.append(rel)
                analysis.total_size += os.lstat(full).st_size
    except OSError as e:
        raise ArchiveError(f"Cannot read source tree {source_root}: {e}") from e

    return analysis


def create_archive(
    source_root: Path,
    exclusions: Iterable[str],
    output_path: Path,
    timeout: Optional[float] = None,
) -> ArchiveResult:
    """
    Write a gzip-compressed tar of source_root minus the excluded paths.

    The archive is written to '<output_path>.partial' and renamed into place
    only once complete, so a file at output_path is always a whole archive.

    Raises:
        ArchiveError: source unreadable or output unwritable
        ArchiveTimeoutError: the walk did not finish within timeout seconds
    """
    source_root = Path(source_root)
    output_path = Path(output_path)
    _check_source(source_root)

    patterns = list(exclusions)
    partial_path = output_path.with_name(output_path.name + PARTIAL_SUFFIX)
    deadline = time.monotonic() + timeout if timeout else None

    file_count = 0
    entry_count = 0
    logger.info(f"Archiving {source_root} -> {output_path}")
    if patterns:
        logger.info(f"Excluding: {', '.join(patterns)}")

    try:
        with tarfile.open(partial_path, "w:gz") as tar:
            for full, rel in _walk_source(source_root, patterns):
                if deadline is not None and time.monotonic() > deadline:
                    raise ArchiveTimeoutError(
                        f"Archiving {source_root} exceeded {timeout:g}s"
                    )
                tar.add(full, arcname=rel, recursive=False)
                entry_count += 1
                if os.path.isfile(full) and not os.path.islink(full):
                    file_count += 1
        os.replace(partial_path, output_path)
    except ArchiveError:
        _discard(partial_path)
        raise
    except (OSError, tarfile.TarError) as e:
        _discard(partial_path)
        raise ArchiveError(f"Failed to create archive {output_path}: {e}") from e
    except BaseException:
        _discard(partial_path)
        raise

    size_bytes = output_path.stat().st_size
    if file_count == 0:
        logger.warning(f"No files left to archive in {source_root} after exclusions")
    logger.info(f"Archive created: {output_path.name} ({file_count} files, {size_bytes} bytes)")
    return ArchiveResult(output_path, size_bytes, file_count, entry_count)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove partial archive {path}: {e}")


def list_archive(archive_path: Path) -> List[str]:
    """Names of the regular files stored in an archive."""
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            return [member.name for member in tar.getmembers() if member.isfile()]
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Cannot read archive {archive_path}: {e}") from e


def extract_archive(archive_path: Path, destination: Path) -> int:
    """
    Extract an archive into destination, creating it if needed.

    Uses tarfile's 'tar' filter: absolute names and members escaping the
    destination are refused, permissions are kept.

    Returns:
        Number of members extracted
    """
    if not hasattr(tarfile, "data_filter"):
        raise ArchiveError(
            "Safe extraction needs tarfile extraction filters "
            "(Python 3.12, 3.11.4 or 3.10.12 and later)",
            stage=Stage.EXTRACT,
        )

    destination = Path(destination)
    try:
        destination.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, "r:gz") as tar:
            members = tar.getmembers()
            tar.extractall(destination, members=members, filter="tar")
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(
            f"Failed to extract {archive_path} into {destination}: {e}", stage=Stage.EXTRACT
        ) from e

    logger.info(f"Extracted {len(members)} entries into {destination}")
    return len(members)
