"""Object store access (S3 and S3-compatible) for backup archives."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

import boto3
from boto3.exceptions import RetriesExceededError, S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    NoCredentialsError,
    ReadTimeoutError,
)

from .config import BackupConfig
from .credentials import Credentials
from .errors import DownloadError, Stage, StoreError, UploadError, UploadTimeoutError
from .naming import timestamp_from_key

ARCHIVE_CONTENT_TYPE = "application/gzip"
CONNECT_TIMEOUT = 10


class RemoteBackup:
    """A backup archive stored in the bucket."""

    def __init__(
        self,
        key: str,
        timestamp: str,
        size: int = 0,
        last_modified: Optional[datetime] = None,
    ):
        self.key = key
        self.timestamp = timestamp
        self.size = size
        self.last_modified = last_modified

    def __repr__(self) -> str:
        return f"RemoteBackup(key={self.key!r}, size={self.size})"


def _client_error_message(error: ClientError) -> str:
    details = error.response.get("Error", {})
    code = details.get("Code", "Unknown")
    message = details.get("Message", str(error))
    return f"{code}: {message}"


class ObjectStore:
    """Handles object store operations for one bucket."""

    def __init__(
        self,
        bucket: str,
        credentials: Optional[Credentials] = None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Any = None,
    ):
        self.bucket = bucket
        self.logger = logging.getLogger(__name__)

        if client is None:
            client = self._build_client(credentials, endpoint_url, region, timeout)
        self.client = client
        # single-threaded transfers, one run is one logical thread
        self.transfer_config = TransferConfig(use_threads=False)

    @classmethod
    def from_config(
        cls, config: BackupConfig, credentials: Optional[Credentials]
    ) -> ObjectStore:
        return cls(
            bucket=config.bucket,
            credentials=credentials,
            endpoint_url=config.endpoint_url,
            region=config.region,
            timeout=config.timeout,
        )

    @staticmethod
    def _build_client(
        credentials: Optional[Credentials],
        endpoint_url: Optional[str],
        region: Optional[str],
        timeout: Optional[float],
    ):
        client_config = Config(
            connect_timeout=min(timeout or CONNECT_TIMEOUT, CONNECT_TIMEOUT),
            read_timeout=timeout or 60,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        kwargs = {"config": client_config}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if region:
            kwargs["region_name"] = region
        if credentials is not None:
            kwargs["aws_access_key_id"] = credentials.access_key_id.get_secret_value()
            kwargs["aws_secret_access_key"] = credentials.secret_access_key.get_secret_value()
        return boto3.client("s3", **kwargs)

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}"

    def upload(self, path: Path, key: str) -> int:
        """
        Upload a local file under key.

        Returns:
            Number of bytes uploaded

        Raises:
            UploadTimeoutError: connect or read timeout
            UploadError: network, authentication or store-side failure
        """
        path = Path(path)
        try:
            size = path.stat().st_size
        except OSError as e:
            raise UploadError(f"Cannot read archive {path}: {e}") from e

        self.logger.info(f"Uploading {path.name} to {self.location}/{key} ({size} bytes)")
        try:
            self.client.upload_file(
                str(path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": ARCHIVE_CONTENT_TYPE},
                Config=self.transfer_config,
            )
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            raise UploadTimeoutError(f"Upload of {key} timed out: {e}") from e
        except S3UploadFailedError as e:
            raise UploadError(f"Upload of {key} rejected: {e}") from e
        except ClientError as e:
            raise UploadError(f"Upload of {key} rejected: {_client_error_message(e)}") from e
        except NoCredentialsError as e:
            raise UploadError(f"No credentials available for {self.location}") from e
        except BotoCoreError as e:
            raise UploadError(f"Upload of {key} failed: {e}") from e
        except OSError as e:
            raise UploadError(f"Upload of {key} failed: {e}") from e

        self.logger.info(f"Uploaded {self.location}/{key}")
        return size

    def download(self, key: str, path: Path) -> int:
        """Download key into a local file; returns its size."""
        path = Path(path)
        self.logger.info(f"Downloading {self.location}/{key} to {path}")
        try:
            self.client.download_file(self.bucket, key, str(path))
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("404", "NoSuchKey", "NotFound"):
                raise DownloadError(f"Backup not found: {self.location}/{key}") from e
            raise DownloadError(
                f"Download of {key} rejected: {_client_error_message(e)}"
            ) from e
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            raise DownloadError(f"Download of {key} timed out: {e}") from e
        except RetriesExceededError as e:
            raise DownloadError(f"Download of {key} timed out: {e}") from e
        except BotoCoreError as e:
            raise DownloadError(f"Download of {key} failed: {e}") from e
        except OSError as e:
            raise DownloadError(f"Cannot write {path}: {e}") from e
        return path.stat().st_size

    def list_backups(self, key_prefix: str) -> List[RemoteBackup]:
        """List backups stored for key_prefix, newest first."""
        backups = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{key_prefix}_"):
                for item in page.get("Contents", []):
                    timestamp = timestamp_from_key(item["Key"], key_prefix)
                    if timestamp is None:
                        continue
                    backups.append(
                        RemoteBackup(
                            key=item["Key"],
                            timestamp=timestamp,
                            size=item.get("Size", 0),
                            last_modified=item.get("LastModified"),
                        )
                    )
        except ClientError as e:
            raise StoreError(
                f"Cannot list {self.location}/{key_prefix}_*: {_client_error_message(e)}",
                stage=Stage.DOWNLOAD,
            ) from e
        except BotoCoreError as e:
            raise StoreError(
                f"Cannot list {self.location}/{key_prefix}_*: {e}", stage=Stage.DOWNLOAD
            ) from e

        backups.sort(key=lambda b: b.timestamp, reverse=True)
        return backups

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise StoreError(f"Cannot delete {key}: {_client_error_message(e)}") from e
        except BotoCoreError as e:
            raise StoreError(f"Cannot delete {key}: {e}") from e
        self.logger.info(f"Deleted {self.location}/{key}")
