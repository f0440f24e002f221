"""
WAL vocabulary and segment pickup for pg-pitr.

This package provides:
- Lsn and Postgres segment file naming (base)
- The persisted archive cursor (cursor)
- The SegmentReader that feeds completed segments to the archive (reader)

SegmentReader is imported from .reader directly; the archive package
depends on the naming helpers here, so this module stays import-light.

Invariants:
    - Segments are archived exactly once, in sequence order
    - The cursor never moves backwards on a timeline
"""

from .base import (
    DEFAULT_SEGMENT_SIZE,
    Lsn,
    is_segment_name,
    is_history_file_name,
    parse_segment_name,
    segment_name,
    segments_per_xlogid,
)
from .cursor import CursorState, SegmentCursor

__all__ = [
    # Positions and naming
    "Lsn",
    "DEFAULT_SEGMENT_SIZE",
    "segment_name",
    "parse_segment_name",
    "is_segment_name",
    "is_history_file_name",
    "segments_per_xlogid",
    # Cursor
    "SegmentCursor",
    "CursorState",
]
