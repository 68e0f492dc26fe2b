from datetime import datetime

import pytest

from bucket_backup.naming import (
    archive_name,
    is_valid_timestamp,
    make_run_timestamp,
    object_key,
    timestamp_from_key,
)


def test_run_timestamp_format():
    assert make_run_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "20240102_030405"


def test_object_key_and_archive_name():
    key = object_key("backups/jenkins", "20240102_030405")

    assert key == "backups/jenkins_20240102_030405.tar.gz"
    assert archive_name(key) == "jenkins_20240102_030405.tar.gz"


@pytest.mark.parametrize(
    "value,expected",
    [
        ("20240102_030405", True),
        ("20241302_030405", False),
        ("2024-01-02", False),
        ("20240102030405", False),
    ],
)
def test_is_valid_timestamp(value, expected):
    assert is_valid_timestamp(value) is expected


def test_timestamp_from_key():
    assert timestamp_from_key("db_20240102_030405.tar.gz", "db") == "20240102_030405"
    assert timestamp_from_key("db_latest.tar.gz", "db") is None
    assert timestamp_from_key("dbx_20240102_030405.tar.gz", "db") is None
    assert timestamp_from_key("db_20240102_030405.zip", "db") is None
