"""Run timestamps and the object keys derived from them."""

import re
from datetime import datetime
from typing import Optional

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
ARCHIVE_SUFFIX = ".tar.gz"

_TIMESTAMP_RE = re.compile(r"^\d{8}_\d{6}$")


def make_run_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp identifying one run. Call it once per run."""
    if now is None:
        now = datetime.now()
    return now.strftime(TIMESTAMP_FORMAT)


def is_valid_timestamp(value: str) -> bool:
    """Check that value is a real YYYYMMDD_HHMMSS run timestamp."""
    if not _TIMESTAMP_RE.match(value):
        return False
    try:
        datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        return False
    return True


def object_key(key_prefix: str, timestamp: str) -> str:
    """Object key for a run: '<prefix>_<timestamp>.tar.gz'."""
    return f"{key_prefix}_{timestamp}{ARCHIVE_SUFFIX}"


def archive_name(key: str) -> str:
    """Local archive filename, the last component of the object key."""
    return key.rsplit("/", 1)[-1]


def timestamp_from_key(key: str, key_prefix: str) -> Optional[str]:
    """Extract the run timestamp from a key, or None if it is not one of ours."""
    head = f"{key_prefix}_"
    if not key.startswith(head) or not key.endswith(ARCHIVE_SUFFIX):
        return None
    timestamp = key[len(head):-len(ARCHIVE_SUFFIX)]
    if not is_valid_timestamp(timestamp):
        return None
    return timestamp
