"""
Base backup creation for pg-pitr.

This module takes base backups and hands them to the archive:
- PgBaseBackupSource streams `pg_basebackup -Ft` output from a running server
- DirectoryBackupSource snapshots a stopped cluster's data directory

Invariants:
    - A backup's LSN and timeline come from its backup_label
    - A backup is visible only once its manifest is committed
"""

from .creator import (
    BackupCreator,
    BackupLabel,
    BackupSource,
    DirectoryBackupSource,
    PgBaseBackupSource,
    parse_backup_label,
)

__all__ = [
    "BackupCreator",
    "BackupLabel",
    "BackupSource",
    "DirectoryBackupSource",
    "PgBaseBackupSource",
    "parse_backup_label",
]
