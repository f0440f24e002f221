"""
Archive module for pg-pitr.

This module stores WAL segments and base backups for:
- Point-in-time restore to any archived position
- Disaster recovery of the whole cluster
- Retention of a bounded, always-recoverable history

Invariants:
    - Archives are immutable once written
    - Every object carries a checksum verified on read
    - Backends are swappable behind the ArchiveBackend protocol
"""

from .base import (
    ArchiveAck,
    ArchiveBackend,
    ArchiveSnapshot,
    BackupFile,
    BaseBackup,
    ObjectKind,
    Segment,
    compute_checksum,
    create_archive_backend,
)
from .local import LocalArchiveBackend
from .memory import InMemoryArchiveBackend
from .s3 import S3ArchiveBackend
from .store import ArchiveStore, validate_backup_id

__all__ = [
    # Types
    "ArchiveAck",
    "ArchiveSnapshot",
    "BackupFile",
    "BaseBackup",
    "ObjectKind",
    "Segment",
    "compute_checksum",
    # Store
    "ArchiveStore",
    "validate_backup_id",
    # Backends
    "ArchiveBackend",
    "create_archive_backend",
    "LocalArchiveBackend",
    "InMemoryArchiveBackend",
    "S3ArchiveBackend",
]
