"""Configuration management for the bucket-backup job."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .archiver import is_excluded
from .errors import ConfigError

BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.\-]{1,61}[a-z0-9]$")


class CredentialsConfig(BaseModel):
    """Where the object store credentials come from.

    Only the names of the environment variables live in the config; the
    secret values are resolved at startup and never written anywhere.
    """

    provider: Literal["env", "default"] = Field(
        default="env",
        description="'env' reads the variables below, 'default' uses boto3's own chain",
    )
    access_key_id_var: str = Field(default="AWS_ACCESS_KEY_ID")
    secret_access_key_var: str = Field(default="AWS_SECRET_ACCESS_KEY")


class BackupConfig(BaseModel):
    """Main application configuration."""

    source_root: Optional[str] = Field(
        default=None, description="Directory tree to back up"
    )
    exclusions: List[str] = Field(
        default_factory=list,
        description="Glob patterns relative to source_root that are left out",
    )
    scratch_dir: str = Field(
        default="/tmp/bucket-backup", description="Temporary staging directory"
    )
    bucket: str = Field(description="Target bucket name")
    key_prefix: str = Field(description="Object key prefix, e.g. 'backups/jenkins'")
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    timeout: float = Field(
        default=3600, gt=0, description="Per-stage timeout in seconds"
    )
    cleanup_on_failure: bool = Field(
        default=True,
        description="Remove the scratch directory even when archiving or upload failed",
    )
    endpoint_url: Optional[str] = Field(
        default=None, description="Custom endpoint for S3-compatible stores"
    )
    region: Optional[str] = Field(default=None)
    retention: int = Field(
        default=0, ge=0, description="Remote backups to keep (0 keeps all)"
    )
    lock_file: Optional[str] = Field(
        default=None, description="Run lock path (defaults to '<scratch_dir>.lock')"
    )
    monitor_url: Optional[str] = Field(
        default=None, description="Push URL notified with the run status"
    )
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    @field_validator("bucket")
    @classmethod
    def validate_bucket(cls, v: str) -> str:
        """Validate the bucket name against S3 naming rules."""
        if not BUCKET_NAME_PATTERN.match(v):
            raise ValueError(f"Invalid bucket name: {v!r}")
        return v

    @field_validator("key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v or v.endswith("/"):
            raise ValueError("key_prefix must be non-empty and must not end with '/'")
        return v.lstrip("/")

    @field_validator("exclusions")
    @classmethod
    def validate_exclusions(cls, v: List[str]) -> List[str]:
        """Normalise patterns to the relative form the archiver matches on."""
        patterns = []
        for pattern in v:
            pattern = pattern.strip()
            while pattern.startswith("./"):
                pattern = pattern[2:]
            pattern = pattern.rstrip("/")
            if not pattern:
                continue
            if pattern.startswith("/"):
                raise ValueError(
                    f"Exclusion '{pattern}' must be relative to source_root"
                )
            patterns.append(pattern)
        return patterns

    @field_validator("scratch_dir")
    @classmethod
    def validate_scratch_dir(cls, v: str) -> str:
        if Path(v).resolve() == Path("/"):
            raise ValueError("scratch_dir must not be the filesystem root")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    @model_validator(mode="after")
    def validate_scratch_outside_source(self) -> BackupConfig:
        """The scratch area must not be archived into itself."""
        if self.source_root:
            source = Path(self.source_root).resolve()
            scratch = Path(self.scratch_dir).resolve()
            if scratch == source:
                raise ValueError("scratch_dir must differ from source_root")
            if source in scratch.parents:
                rel = scratch.relative_to(source).as_posix()
                if not is_excluded(rel, self.exclusions):
                    raise ValueError(
                        f"scratch_dir lies inside source_root; add '{rel}' to exclusions"
                    )
        return self

    @property
    def lock_path(self) -> Path:
        if self.lock_file:
            return Path(self.lock_file)
        scratch = Path(self.scratch_dir)
        return scratch.with_name(f"{scratch.name}.lock")

    def validate_for_backup(self) -> None:
        """Check the fields only the backup command needs."""
        if not self.source_root:
            raise ConfigError("source_root is required for backups")
        source = Path(self.source_root)
        if not source.is_dir():
            raise ConfigError(f"source_root is not a directory: {self.source_root}")


def load_config(
    config_path: str = "config.yaml",
    overrides: Optional[Dict[str, Any]] = None,
    required: bool = True,
) -> BackupConfig:
    """Load configuration from a YAML file, apply CLI overrides and validate it.

    Args:
        config_path: YAML file to read
        overrides: Values taken from the command line (None values are ignored)
        required: When False a missing file is treated as empty

    Raises:
        ConfigError: on a missing file, malformed YAML or invalid values
    """
    config_file = Path(config_path)
    config_data: Dict[str, Any] = {}

    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML format in config file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {config_path}: {e}") from e

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError("Configuration file must contain a mapping")
        config_data.update(loaded)
    elif required:
        raise ConfigError(f"Configuration file not found: {config_path}")

    for key, value in (overrides or {}).items():
        if value is not None:
            config_data[key] = value

    try:
        return BackupConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation error: {e}") from e
