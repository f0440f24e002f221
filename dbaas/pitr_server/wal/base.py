"""
Base types for WAL positions and segment naming.

This module defines the Postgres-compatible vocabulary shared by every
component:
- Lsn: a position in the WAL stream
- segment file names: TTTTTTTT LLLLLLLL SSSSSSSS (timeline, log, segment)
- history file names: timeline history, backup history and .partial files
  Postgres also passes to archive_command

Invariants:
    - Lsn values are totally ordered and never negative
    - A segment of size S with sequence number n covers [n*S, (n+1)*S)
    - Segment names round-trip through parse_segment_name()

How to change safely:
    - Segment size must be a power of two between 1 MiB and 1 GiB for Postgres;
      smaller sizes are accepted for tests but names stay Postgres-shaped
    - Never change the text form of Lsn, it is written into recovery config
"""

from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_SEGMENT_SIZE = 16 * 1024 * 1024  # 16MB, Postgres default

SEGMENT_NAME_RE = re.compile(r"^[0-9A-F]{24}$")
HISTORY_FILE_RE = re.compile(
    r"^(?:[0-9A-F]{8}\.history"
    r"|[0-9A-F]{24}\.[0-9A-F]{8}\.backup"
    r"|[0-9A-F]{24}\.partial)$"
)
_LSN_RE = re.compile(r"^([0-9A-Fa-f]{1,8})/([0-9A-Fa-f]{1,8})$")


@dataclass(frozen=True, order=True)
class Lsn:
    """Log sequence number.

    Attributes:
        value: Absolute byte position in the WAL stream

    Example:
        >>> Lsn.parse("0/3000028")
        Lsn(value=50331688)
        >>> str(Lsn(50331688))
        '0/3000028'
    """

    value: int

    def __post_init__(self) -> None:
        if self.value < 0 or self.value >= 1 << 64:
            raise ValueError(f"LSN out of range: {self.value}")

    @classmethod
    def parse(cls, text: str) -> Lsn:
        """Parse Postgres text form 'HI/LO'."""
        match = _LSN_RE.match(text.strip())
        if not match:
            raise ValueError(f"Invalid LSN '{text}'. Expected form like 0/3000028")
        hi, lo = match.groups()
        return cls((int(hi, 16) << 32) | int(lo, 16))

    def segment_seq(self, segment_size: int) -> int:
        """Sequence number of the segment containing this position."""
        return self.value // segment_size

    def __str__(self) -> str:
        return f"{self.value >> 32:X}/{self.value & 0xFFFFFFFF:X}"


def segments_per_xlogid(segment_size: int) -> int:
    """Number of segments per 4GB 'log' id in Postgres file naming."""
    if segment_size <= 0 or (1 << 32) % segment_size:
        raise ValueError(f"Segment size must divide 4GB evenly: {segment_size}")
    return (1 << 32) // segment_size


def segment_name(timeline: int, seq: int, segment_size: int) -> str:
    """Build the 24-character Postgres WAL file name for a segment."""
    per_id = segments_per_xlogid(segment_size)
    return f"{timeline:08X}{seq // per_id:08X}{seq % per_id:08X}"


def parse_segment_name(name: str, segment_size: int) -> tuple[int, int]:
    """Parse a WAL file name into (timeline, seq).

    Raises:
        ValueError: If the name is not a plain segment file name
    """
    if not SEGMENT_NAME_RE.match(name):
        raise ValueError(f"Not a WAL segment file name: {name}")
    per_id = segments_per_xlogid(segment_size)
    timeline = int(name[0:8], 16)
    log_id = int(name[8:16], 16)
    seg_id = int(name[16:24], 16)
    if seg_id >= per_id:
        raise ValueError(f"Segment number {seg_id:X} too large for segment size {segment_size}")
    return timeline, log_id * per_id + seg_id


def is_segment_name(name: str) -> bool:
    """Whether a file name looks like a completed WAL segment (no suffix)."""
    return bool(SEGMENT_NAME_RE.match(name))


def is_history_file_name(name: str) -> bool:
    """Whether a file name is a non-segment file Postgres archives.

    That is a timeline history file (00000002.history), a backup history
    file (000000010000000000000002.00000028.backup) or a .partial segment
    left behind by a promotion.
    """
    return bool(HISTORY_FILE_RE.match(name))
