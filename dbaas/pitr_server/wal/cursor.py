"""
Persisted "last archived segment" cursor.

The cursor records the highest segment sequence number that has been
committed to the archive, so the reader resumes exactly where it stopped.

Cursor file format (JSON):
    {"timeline": 1, "last_archived_seq": 42, "segment_id": "...", "updated_at_ms": ...}

Invariants:
    - The file is replaced atomically (temp file + fsync + rename)
    - The cursor only moves forward
    - advance() is called after the archive acknowledged the segment

How to change safely:
    - Add fields with defaults, load() must accept old files
    - Never write the cursor before the archive commit
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CursorState:
    """Cursor contents.

    Attributes:
        timeline: Timeline the cursor tracks
        last_archived_seq: Highest committed segment sequence number
        segment_id: File name of that segment
        updated_at_ms: When the cursor last moved (Unix ms)
    """

    timeline: int
    last_archived_seq: int
    segment_id: str
    updated_at_ms: int


class SegmentCursor:
    """File-backed archive cursor.

    Example:
        >>> cursor = SegmentCursor("/opt/pg_pitr_data/cursor.json")
        >>> cursor.load()
        >>> cursor.advance(1, 7, "000000010000000000000007")
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._state: CursorState | None = None
        self._loaded = False

    @property
    def state(self) -> CursorState | None:
        return self._state

    @property
    def last_archived_seq(self) -> int | None:
        return self._state.last_archived_seq if self._state else None

    def load(self) -> CursorState | None:
        """Read the cursor from disk.

        Raises:
            ValueError: If the file exists but cannot be parsed
        """
        self._loaded = True
        if not self.path.exists():
            self._state = None
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._state = CursorState(
                timeline=int(data["timeline"]),
                last_archived_seq=int(data["last_archived_seq"]),
                segment_id=str(data.get("segment_id", "")),
                updated_at_ms=int(data.get("updated_at_ms", 0)),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Unreadable cursor file {self.path}: {e}") from e

        logger.info(
            "Loaded archive cursor",
            extra={"timeline": self._state.timeline, "last_archived_seq": self._state.last_archived_seq},
        )
        return self._state

    def advance(self, timeline: int, seq: int, segment_id: str) -> CursorState:
        """Move the cursor to seq and persist it atomically.

        Raises:
            ValueError: If seq would move the cursor backwards
        """
        if not self._loaded:
            self.load()
        current = self._state
        if current is not None and current.timeline == timeline and seq <= current.last_archived_seq:
            raise ValueError(
                f"Cursor cannot move backwards: {seq} <= {current.last_archived_seq}"
            )

        state = CursorState(
            timeline=timeline,
            last_archived_seq=seq,
            segment_id=segment_id,
            updated_at_ms=int(time.time() * 1000),
        )
        self._write(state)
        self._state = state
        return state

    def _write(self, state: CursorState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {
                "timeline": state.timeline,
                "last_archived_seq": state.last_archived_seq,
                "segment_id": state.segment_id,
                "updated_at_ms": state.updated_at_ms,
            },
            indent=2,
        )
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        dir_fd = os.open(self.path.parent, os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
