#!/usr/bin/env python3
"""
bucket-backup: archive a directory tree and upload it to an object store.

Main entry point for the backup application.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from bucket_backup.backup_manager import (
    DryRunResult,
    RunResult,
    dry_run,
    format_duration,
    format_size,
    restore_backup,
    run_backup,
    upload_existing_archive,
)
from bucket_backup.config import BackupConfig, load_config
from bucket_backup.credentials import resolve_credentials
from bucket_backup.errors import (
    EXIT_INTERRUPTED,
    EXIT_OK,
    BackupError,
    ConfigError,
    Stage,
    exit_code_for,
)
from bucket_backup.naming import TIMESTAMP_FORMAT
from bucket_backup.notify import send_monitor_push
from bucket_backup.uploader import ObjectStore

DEFAULT_CONFIG = "config.yaml"
LOGGER_NAME = "bucket_backup"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Set up console (and optional file) logging for the application."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter("%(asctime)s %(levelname)-8s %(message)s")

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def format_run_summary(result: RunResult) -> str:
    """Format a run result into a readable summary."""
    summary = ["=== Backup Run Summary ==="]
    status = "SUCCESS" if result.success else "FAILED"
    summary.append(f"Run: {result.timestamp} [{status}]")
    summary.append(f"Object key: {result.key}")
    summary.append(f"States: {' -> '.join(state.value for state in result.history)}")

    if result.archive_size:
        summary.append(
            f"Archive: {result.file_count} files, {format_size(result.archive_size)}"
        )
    summary.append(f"Execution time: {format_duration(result.execution_time)}")

    if not result.success:
        summary.append(f"Failed stage: {result.failed_stage.value}")
        summary.append(f"Error: {result.error_message}")
    if result.kept_archive:
        summary.append(f"Kept archive: {result.kept_archive}")
    if result.pruned_keys:
        summary.append(f"Pruned: {', '.join(result.pruned_keys)}")

    return "\n".join(summary)


def format_dry_run_summary(result: DryRunResult, max_listed: int = 10) -> str:
    """Format a dry run result, listing at most max_listed entries per section."""
    analysis = result.analysis
    lines = ["=== DRY RUN SUMMARY ==="]
    lines.append(f"Source: {result.source_root}")
    lines.append(f"Object key: {result.key}")
    lines.append(f"Total files: {analysis.total_files:,}")
    lines.append(f"Total size: {format_size(analysis.total_size)}")

    if analysis.files:
        lines.append("Files to archive:")
        for rel in analysis.files[:max_listed]:
            lines.append(f"  {rel}")
        if analysis.total_files > max_listed:
            lines.append(f"  ... and {analysis.total_files - max_listed} more files")

    if analysis.excluded:
        lines.append(f"Excluded ({len(analysis.excluded)}):")
        for rel in analysis.excluded[:max_listed]:
            lines.append(f"  {rel}")
        if len(analysis.excluded) > max_listed:
            lines.append(f"  ... and {len(analysis.excluded) - max_listed} more")

    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        "-c",
        help=f"YAML configuration file (default: {DEFAULT_CONFIG} when present)",
    )
    common.add_argument("--bucket", help="Target bucket")
    common.add_argument("--key-prefix", help="Object key prefix")
    common.add_argument("--scratch-dir", help="Temporary staging directory")
    common.add_argument("--endpoint-url", help="Endpoint of an S3-compatible store")
    common.add_argument("--region", help="Object store region")
    common.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL")

    parser = argparse.ArgumentParser(
        description="Archive a directory tree and upload it to an object store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py backup                                # Use config.yaml
  python main.py backup --source-root /var/lib/jenkins --exclude 'jobs/*/workspace' --exclude logs
  python main.py backup --dry-run                      # Show what would be archived
  python main.py list                                  # List stored backups
  python main.py restore --latest --destination /srv/restore
  python main.py restore --timestamp 20240101_020000 --destination /srv/restore
  python main.py upload /tmp/bucket-backup/jenkins_20240101_020000.tar.gz
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", parents=[common], help="Run one backup")
    backup.add_argument("--source-root", help="Directory to back up")
    backup.add_argument(
        "--exclude",
        action="append",
        dest="exclusions",
        metavar="PATTERN",
        help="Relative path/glob to leave out (repeatable, replaces configured list)",
    )
    backup.add_argument(
        "--keep-on-failure",
        action="store_true",
        help="Keep the scratch directory and archive when the run fails",
    )
    backup.add_argument("--timeout", type=float, help="Per-stage timeout in seconds")
    backup.add_argument(
        "--dry-run",
        "-n",
        action="store_true",
        help="List what would be archived without archiving or uploading",
    )

    restore = subparsers.add_parser("restore", parents=[common], help="Restore a backup")
    which = restore.add_mutually_exclusive_group(required=True)
    which.add_argument("--timestamp", help="Run timestamp (YYYYMMDD_HHMMSS)")
    which.add_argument("--key", help="Explicit object key")
    which.add_argument("--latest", action="store_true", help="Most recent backup")
    restore.add_argument(
        "--destination", "-d", required=True, help="Directory to extract into"
    )

    subparsers.add_parser("list", parents=[common], help="List stored backups")

    upload = subparsers.add_parser(
        "upload", parents=[common], help="Upload an archive kept by a failed run"
    )
    upload.add_argument("archive", help="Path of the kept archive")

    return parser


def config_from_args(args: argparse.Namespace) -> BackupConfig:
    """Load the configuration file and apply command line overrides."""
    overrides = {
        "bucket": args.bucket,
        "key_prefix": args.key_prefix,
        "scratch_dir": args.scratch_dir,
        "endpoint_url": args.endpoint_url,
        "region": args.region,
        "log_level": args.log_level,
    }
    if args.command == "backup":
        overrides.update(
            {
                "source_root": args.source_root,
                "exclusions": args.exclusions,
                "timeout": args.timeout,
            }
        )
        if args.keep_on_failure:
            overrides["cleanup_on_failure"] = False

    config_path = args.config or DEFAULT_CONFIG
    return load_config(config_path, overrides, required=args.config is not None)


def build_store(config: BackupConfig) -> ObjectStore:
    """Resolve credentials and create the object store client."""
    credentials = resolve_credentials(config.credentials)
    return ObjectStore.from_config(config, credentials)


def command_backup(args: argparse.Namespace, config: BackupConfig, logger: logging.Logger) -> int:
    """Run a backup, or a dry run with --dry-run."""
    config.validate_for_backup()

    if args.dry_run:
        logger.info("Running in DRY RUN mode - nothing will be archived or uploaded")
        result = dry_run(config)
        summary = format_dry_run_summary(result)
        if sys.stdout.isatty():
            print(summary)
        else:
            logger.info("\n" + summary)
        return EXIT_OK

    store = build_store(config)
    result = run_backup(config, store)
    logger.info("\n" + format_run_summary(result))

    if config.monitor_url and result.failed_stage is not Stage.LOCK:
        send_monitor_push(config.monitor_url, result.success)

    if result.success:
        logger.info(f"Backup completed successfully: {store.location}/{result.key}")
        return EXIT_OK

    logger.error(f"Backup failed in {result.failed_stage.value} stage: {result.error_message}")
    return exit_code_for(result.failed_stage)


def command_restore(args: argparse.Namespace, config: BackupConfig, logger: logging.Logger) -> int:
    """Download and extract one stored backup."""
    store = build_store(config)
    result = restore_backup(
        config,
        store,
        Path(args.destination),
        key=args.key,
        timestamp=args.timestamp,
        latest=args.latest,
    )
    logger.info(
        f"Restored {result.key} ({format_size(result.size_bytes)}, "
        f"{result.entry_count} entries) into {result.destination}"
    )
    return EXIT_OK


def command_list(args: argparse.Namespace, config: BackupConfig, logger: logging.Logger) -> int:
    """Print the stored backups, newest first."""
    store = build_store(config)
    backups = store.list_backups(config.key_prefix)

    if not backups:
        print(f"No backups found under {store.location}/{config.key_prefix}_*")
        return EXIT_OK

    for backup in backups:
        when = datetime.strptime(backup.timestamp, TIMESTAMP_FORMAT)
        print(f"{when:%Y-%m-%d %H:%M:%S}  {format_size(backup.size):>10}  {backup.key}")
    return EXIT_OK


def command_upload(args: argparse.Namespace, config: BackupConfig, logger: logging.Logger) -> int:
    """Upload an archive kept by a failed run."""
    store = build_store(config)
    key = upload_existing_archive(config, store, Path(args.archive))
    logger.info(f"Upload completed successfully: {store.location}/{key}")
    return EXIT_OK


COMMANDS = {
    "backup": command_backup,
    "restore": command_restore,
    "list": command_list,
    "upload": command_upload,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point."""
    start_time = datetime.now()
    args = build_parser().parse_args(argv)
    logger = None

    try:
        config = config_from_args(args)
        logger = setup_logging(config.log_level, config.log_file)
        logger.info(f"Starting bucket-backup {args.command}")
        return COMMANDS[args.command](args, config, logger)

    except ConfigError as e:
        error_msg = f"Configuration error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg)
        return exit_code_for(Stage.CONFIG)

    except BackupError as e:
        error_msg = f"{e.stage.value} stage failed: {e}"
        if logger:
            logger.error(error_msg)
        else:
            print(f"ERROR: {error_msg}", file=sys.stderr)
        return exit_code_for(e.stage)

    except KeyboardInterrupt:
        error_msg = f"{args.command} interrupted by user"
        print(f"\nINTERRUPTED: {error_msg}", file=sys.stderr)
        if logger:
            logger.warning(error_msg)
        return EXIT_INTERRUPTED

    except Exception as e:
        error_msg = f"Unexpected error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg, exc_info=True)
        return 1

    finally:
        if logger:
            total_time = (datetime.now() - start_time).total_seconds()
            logger.info(f"{args.command} completed in {total_time:.2f} seconds")


if __name__ == "__main__":
    sys.exit(main())
