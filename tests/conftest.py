"""Shared fixtures: an in-memory S3 client and sample source trees."""

from datetime import datetime, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from bucket_backup.config import BackupConfig
from bucket_backup.uploader import ObjectStore

BUCKET = "backups"


def client_error(code, operation, message="error"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakePaginator:
    def __init__(self, client):
        self.client = client

    def paginate(self, Bucket, Prefix=""):
        self.client._check_bucket(Bucket, "ListObjectsV2")
        keys = sorted(k for k in self.client.objects[Bucket] if k.startswith(Prefix))
        yield {
            "Contents": [
                {
                    "Key": key,
                    "Size": len(self.client.objects[Bucket][key]),
                    "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
                }
                for key in keys
            ]
        }


class FakeS3Client:
    """Just enough of the boto3 S3 client for the object store wrapper."""

    def __init__(self, buckets=(BUCKET,)):
        self.objects = {name: {} for name in buckets}
        self.upload_error = None
        self.download_error = None
        self.uploads = []
        self.deleted = []

    def _check_bucket(self, bucket, operation):
        if bucket not in self.objects:
            raise client_error("NoSuchBucket", operation, "The specified bucket does not exist")

    def upload_file(self, Filename, Bucket, Key, ExtraArgs=None, Config=None):
        if self.upload_error is not None:
            raise self.upload_error
        self._check_bucket(Bucket, "PutObject")
        self.objects[Bucket][Key] = Path(Filename).read_bytes()
        self.uploads.append(Key)

    def download_file(self, Bucket, Key, Filename):
        if self.download_error is not None:
            raise self.download_error
        self._check_bucket(Bucket, "HeadObject")
        if Key not in self.objects[Bucket]:
            raise client_error("404", "HeadObject", "Not Found")
        Path(Filename).write_bytes(self.objects[Bucket][Key])

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator(self)

    def delete_object(self, Bucket, Key):
        self._check_bucket(Bucket, "DeleteObject")
        self.objects[Bucket].pop(Key, None)
        self.deleted.append(Key)


@pytest.fixture
def fake_client():
    return FakeS3Client()


@pytest.fixture
def store(fake_client):
    return ObjectStore(bucket=BUCKET, client=fake_client)


def write_file(root, rel, content="data"):
    path = Path(root) / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def source_tree(tmp_path):
    """Source tree with a.txt, jobs/x/workspace/tmp.log and logs/out.log."""
    root = tmp_path / "source"
    write_file(root, "a.txt", "alpha")
    write_file(root, "jobs/x/workspace/tmp.log", "scratch")
    write_file(root, "logs/out.log", "log line")
    return root


@pytest.fixture
def make_config(tmp_path, source_tree):
    def _make(**overrides):
        values = {
            "source_root": str(source_tree),
            "exclusions": ["jobs/*/workspace", "logs"],
            "scratch_dir": str(tmp_path / "scratch"),
            "bucket": BUCKET,
            "key_prefix": "jenkins/backup",
        }
        values.update(overrides)
        return BackupConfig(**values)

    return _make
