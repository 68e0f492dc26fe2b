"""
bucket-backup: scheduled archive-and-upload backups to an S3-compatible store.

Each run archives a directory tree minus configured exclusions, uploads the
archive under a timestamped key and removes the local scratch copy.
"""

__version__ = "0.1.0"
