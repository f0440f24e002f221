"""
pg-pitr - Continuous WAL archiving and point-in-time restore for PostgreSQL.

This package implements the engine behind a PITR-enabled Postgres container:
- WAL segments are picked up as soon as Postgres completes them
- Segments and base backups land in an append-only, checksummed archive
- A retention manager prunes the archive without breaking recovery chains
- Restores are planned against archive metadata and driven to a target point

Architecture:
    ┌──────────────┐   completed    ┌──────────────────┐
    │  Postgres    │───segments────▶│  Segment Reader  │
    │  (pg_wal)    │                └────────┬─────────┘
    └──────┬───────┘                         │ put
           │ pg_basebackup                   ▼
           │                        ┌──────────────────┐     ┌───────────────┐
           └───────────────────────▶│  Archive Store   │◀────│  Retention    │
                                    │ (local/S3/memory)│     │  Manager      │
                                    └────────┬─────────┘     └───────────────┘
                                             │ snapshot
                                             ▼
                                    ┌──────────────────┐ plan ┌───────────────┐
                                    │  Restore Planner │─────▶│ Recovery      │
                                    └──────────────────┘      │ Driver        │
                                                              └───────────────┘

Invariants:
    - Archived objects are immutable; ids are never overwritten
    - Each retained base backup has an unbroken segment chain to the latest segment
    - A data directory is restored by at most one driver at a time
    - A failed restore always leaves the data directory marked as unusable

How to change safely:
    - Archive layout changes require a new metadata version field
    - Never relax the retention protected-set computation without tests
    - Recovery state transitions live in recovery/state.py only

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
