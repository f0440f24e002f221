"""
WAL segment reader.

The SegmentReader watches a WAL directory for completed segments and hands
each one to the ArchiveStore exactly once, in sequence order. It supports
two ways of learning about segments:
- Polling: a background loop scans the directory every poll interval
- Notification: push(path) archives one segment, for use from Postgres'
  archive_command (`pitr archive push %p`)

Postgres also hands archive_command timeline history (`00000002.history`),
backup history (`<segment>.<offset>.backup`) and `.partial` files. push()
stores those as history files without touching the cursor.

Completion rules:
    - The file name is a plain 24-hex segment name on the reader's timeline
    - The file is exactly segment_size bytes
    - With require_ready_marker, archive_status/<name>.ready exists
    - The file does not change while it is being read

Invariants:
    - Segments are archived in strictly increasing sequence order
    - A missing predecessor blocks archiving (never skipped)
    - The cursor advances only after the archive acknowledged the segment
    - Incomplete segments are retried on the next poll

How to change safely:
    - Keep the cursor write after the archive put, never before
    - Test restarts between put and cursor advance (put is idempotent)
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from ..archive.base import ArchiveAck, Segment
from ..archive.store import ArchiveStore
from ..errors import ArchiveConflict, ArchiveIOError, IncompleteSegment, PitrError
from .base import DEFAULT_SEGMENT_SIZE, is_history_file_name, is_segment_name, parse_segment_name
from .cursor import SegmentCursor

logger = logging.getLogger(__name__)


class SegmentReader:
    """Archives completed WAL segments in order.

    Attributes:
        store: Archive store to put segments into
        cursor: Persisted last-archived cursor
        wal_dir: Directory Postgres (or archive_command) writes segments to
        segment_size: WAL segment size in bytes
        timeline: Timeline to archive

    Example:
        >>> reader = SegmentReader(store, SegmentCursor(path), "/var/lib/postgresql/wal")
        >>> await reader.start()  # Runs until stopped
    """

    def __init__(
        self,
        store: ArchiveStore,
        cursor: SegmentCursor,
        wal_dir: str | Path,
        segment_size: int = DEFAULT_SEGMENT_SIZE,
        timeline: int = 1,
        poll_interval_seconds: float = 5.0,
        require_ready_marker: bool = False,
        mark_done: bool = True,
    ) -> None:
        """Initialize the reader.

        Args:
            store: ArchiveStore instance
            cursor: SegmentCursor instance
            wal_dir: WAL directory to watch
            segment_size: WAL segment size in bytes
            timeline: Timeline to archive
            poll_interval_seconds: Interval between directory scans
            require_ready_marker: Require archive_status/<name>.ready (pg_wal mode)
            mark_done: Rename .ready to .done after archiving
        """
        self.store = store
        self.cursor = cursor
        self.wal_dir = Path(wal_dir)
        self.segment_size = segment_size
        self.timeline = timeline
        self.poll_interval_seconds = poll_interval_seconds
        self.require_ready_marker = require_ready_marker
        self.mark_done = mark_done

        self._running = False
        self._initialized = False
        self._resume_seq: int | None = None
        self._stop_event = asyncio.Event()
        self._poll_lock = asyncio.Lock()
        self._archived_count = 0
        self._incomplete_count = 0

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            logger.warning("Segment reader already running")
            return

        self._running = True
        self._stop_event.clear()
        logger.info(
            "Starting segment reader",
            extra={
                "wal_dir": str(self.wal_dir),
                "timeline": self.timeline,
                "segment_size": self.segment_size,
                "poll_interval_seconds": self.poll_interval_seconds,
            },
        )

        try:
            while self._running:
                try:
                    await self.poll_once()
                except ArchiveIOError as e:
                    logger.warning(f"Archive unavailable, will retry: {e}")

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass

        except asyncio.CancelledError:
            logger.info("Segment reader cancelled")
        except ArchiveConflict as e:
            logger.error(f"Segment reader stopped, operator intervention needed: {e}")
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the polling loop."""
        self._running = False
        self._stop_event.set()
        logger.info("Stopping segment reader")

    async def poll_once(self) -> list[ArchiveAck]:
        """Archive every completed segment that is next in sequence.

        Returns:
            Acks of the segments archived by this poll
        """
        async with self._poll_lock:
            await self._ensure_initialized()

            candidates = await asyncio.get_running_loop().run_in_executor(None, self._scan)
            acks: list[ArchiveAck] = []
            next_seq = self._next_seq()

            for seq, path in candidates:
                if next_seq is not None and seq < next_seq:
                    continue
                if next_seq is not None and seq > next_seq:
                    logger.warning(
                        "Waiting for missing segment before archiving further",
                        extra={"expected_seq": next_seq, "found_seq": seq},
                    )
                    break

                try:
                    acks.append(await self._archive(seq, path))
                except IncompleteSegment as e:
                    self._incomplete_count += 1
                    logger.debug(f"Segment not complete yet: {e.message}")
                    break
                next_seq = seq + 1

            return acks

    async def push(self, path: str | Path) -> ArchiveAck:
        """Archive a single segment on notification.

        Re-pushing an already archived segment is idempotent; pushing a
        segment ahead of the cursor is refused so nothing is skipped.
        History files are archived as they are, in any order.

        Raises:
            IncompleteSegment: If the file is not complete
            PitrError: If the segment is out of order
            ValueError: If the name is neither a segment nor a history file
        """
        path = Path(path)
        if is_history_file_name(path.name):
            return await self._push_history(path)

        timeline, seq = parse_segment_name(path.name, self.segment_size)
        if timeline != self.timeline:
            raise ValueError(f"Segment {path.name} is on timeline {timeline}, expected {self.timeline}")

        async with self._poll_lock:
            await self._ensure_initialized()
            next_seq = self._next_seq()

            if next_seq is not None and seq > next_seq:
                raise PitrError(
                    f"Segment {path.name} is ahead of the archive (expected seq {next_seq})",
                    code="OUT_OF_ORDER_SEGMENT",
                    details={"expected_seq": next_seq, "seq": seq},
                )
            if next_seq is not None and seq < next_seq:
                data, completed_at_ms = await self._read(path)
                segment = Segment(seq, self.timeline, self.segment_size, completed_at_ms)
                return await self.store.put(segment, data)

            return await self._archive(seq, path)

    async def _push_history(self, path: Path) -> ArchiveAck:
        data = await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)
        return await self.store.put_history_file(path.name, data)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        state = self.cursor.load()
        if state is None or state.timeline != self.timeline:
            # No cursor for this timeline: resume after what the archive already holds
            existing = await self.store.list_segments(timeline=self.timeline)
            if existing:
                self._resume_seq = existing[-1].seq + 1
                logger.info(
                    "No cursor for timeline, resuming after archived segments",
                    extra={"timeline": self.timeline, "resume_seq": self._resume_seq},
                )
        self._initialized = True

    def _next_seq(self) -> int | None:
        state = self.cursor.state
        if state is not None and state.timeline == self.timeline:
            return state.last_archived_seq + 1
        return self._resume_seq

    async def _archive(self, seq: int, path: Path) -> ArchiveAck:
        data, completed_at_ms = await self._read(path)
        segment = Segment(
            seq=seq,
            timeline=self.timeline,
            size_bytes=self.segment_size,
            created_at_ms=completed_at_ms,
        )

        ack = await self.store.put(segment, data)
        self.cursor.advance(self.timeline, seq, segment.segment_id)
        self._archived_count += 1

        if self.require_ready_marker and self.mark_done:
            self._mark_done(path.name)

        return ack

    async def _read(self, path: Path) -> tuple[bytes, int]:
        return await asyncio.get_running_loop().run_in_executor(None, self._read_completed, path)

    def _scan(self) -> list[tuple[int, Path]]:
        if not self.wal_dir.is_dir():
            return []

        found = []
        for entry in os.scandir(self.wal_dir):
            if not entry.is_file() or not is_segment_name(entry.name):
                continue
            try:
                timeline, seq = parse_segment_name(entry.name, self.segment_size)
            except ValueError:
                continue
            if timeline == self.timeline:
                found.append((seq, Path(entry.path)))
        return sorted(found)

    def _read_completed(self, path: Path) -> tuple[bytes, int]:
        """Read a segment file, refusing anything not yet complete."""
        if self.require_ready_marker and not self._ready_marker(path.name).exists():
            raise IncompleteSegment(f"{path.name} has no .ready marker", str(path))

        before = path.stat()
        if before.st_size != self.segment_size:
            raise IncompleteSegment(
                f"{path.name} is {before.st_size} bytes, expected {self.segment_size}",
                str(path),
                before.st_size,
            )

        data = path.read_bytes()
        after = path.stat()
        if (
            len(data) != self.segment_size
            or after.st_size != before.st_size
            or after.st_mtime_ns != before.st_mtime_ns
        ):
            raise IncompleteSegment(f"{path.name} changed while reading", str(path), len(data))

        return data, after.st_mtime_ns // 1_000_000

    def _ready_marker(self, name: str) -> Path:
        return self.wal_dir / "archive_status" / f"{name}.ready"

    def _mark_done(self, name: str) -> None:
        ready = self._ready_marker(name)
        try:
            ready.rename(ready.with_suffix(".done"))
        except FileNotFoundError:
            pass

    @property
    def stats(self) -> dict[str, Any]:
        """Get reader statistics."""
        return {
            "running": self._running,
            "archived_count": self._archived_count,
            "incomplete_count": self._incomplete_count,
            "last_archived_seq": self.cursor.last_archived_seq,
            "timeline": self.timeline,
        }
