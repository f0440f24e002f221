"""
Retention manager.

The RetentionManager prunes the archive on a schedule or on demand:
    1. Take an ArchiveSnapshot
    2. compute_retention() over the snapshot (pure)
    3. Delete expired backups, then expired segments (ascending)
    4. Garbage collect chunks no longer referenced by any manifest

Invariants:
    - Decisions are made on a snapshot, never on a live listing
    - Backups are deleted before segments, so an interrupted run never
      leaves a listed backup without its segment chain
    - A dry run deletes nothing

How to change safely:
    - Keep deletion order (backups, segments, chunks)
    - Backups committed after the snapshot are newer than every retained
      backup, so the protected horizon still covers them
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..archive.store import ArchiveStore
from ..errors import ArchiveIOError
from .policy import RetentionDecision, RetentionPolicy, compute_retention

logger = logging.getLogger(__name__)


@dataclass
class RetentionReport:
    """Result of one retention run."""

    decision: RetentionDecision
    dry_run: bool = False
    backups_deleted: int = 0
    segments_deleted: int = 0
    chunks_deleted: int = 0
    bytes_freed: int = 0
    started_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "backups_deleted": self.backups_deleted,
            "segments_deleted": self.segments_deleted,
            "chunks_deleted": self.chunks_deleted,
            "bytes_freed": self.bytes_freed,
            "duration_ms": self.duration_ms,
            **self.decision.to_dict(),
        }


class RetentionManager:
    """Applies a RetentionPolicy to the archive.

    Attributes:
        store: Archive store
        policy: Retention policy
        segment_size: WAL segment size in bytes

    Example:
        >>> manager = RetentionManager(store, RetentionPolicy(max_age_seconds=7 * 86400), 16 * 1024 * 1024)
        >>> report = await manager.apply(dry_run=True)
    """

    def __init__(
        self,
        store: ArchiveStore,
        policy: RetentionPolicy,
        segment_size: int,
        interval_seconds: int = 3600,
    ) -> None:
        self.store = store
        self.policy = policy
        self.segment_size = segment_size
        self.interval_seconds = interval_seconds

        self._running = False
        self._stop_event = asyncio.Event()
        self._apply_lock = asyncio.Lock()
        self._run_count = 0

    async def start(self) -> None:
        """Start the scheduled retention loop."""
        if self._running:
            logger.warning("Retention manager already running")
            return

        self._running = True
        self._stop_event.clear()
        logger.info(
            "Starting retention manager",
            extra={
                "interval_seconds": self.interval_seconds,
                "max_age_seconds": self.policy.max_age_seconds,
                "min_backups": self.policy.min_backups,
                "lsn_floor": str(self.policy.lsn_floor) if self.policy.lsn_floor else None,
            },
        )

        try:
            while self._running:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass

                try:
                    await self.apply()
                except ArchiveIOError as e:
                    logger.error(f"Retention run failed, will retry next interval: {e}")

        except asyncio.CancelledError:
            logger.info("Retention manager cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the retention loop."""
        self._running = False
        self._stop_event.set()
        logger.info("Stopping retention manager")

    async def apply(self, dry_run: bool = False, now_ms: int | None = None) -> RetentionReport:
        """Run retention once.

        Args:
            dry_run: Compute the decision without deleting anything
            now_ms: Reference time (defaults to the snapshot time)

        Returns:
            RetentionReport
        """
        async with self._apply_lock:
            started = time.monotonic()
            snapshot = await self.store.snapshot()
            decision = compute_retention(snapshot, self.policy, self.segment_size, now_ms)
            report = RetentionReport(decision=decision, dry_run=dry_run)

            if not dry_run:
                for backup in decision.expired_backups:
                    if await self.store.delete(backup.backup_id):
                        report.backups_deleted += 1
                for segment in decision.expired_segments:
                    if await self.store.delete(segment.segment_id):
                        report.segments_deleted += 1
                        report.bytes_freed += segment.size_bytes
                report.chunks_deleted = await self.store.collect_garbage()

            report.duration_ms = int((time.monotonic() - started) * 1000)
            self._run_count += 1

        logger.info(
            "Retention run completed",
            extra={
                "dry_run": dry_run,
                "retained_backups": len(decision.retained_backups),
                "expired_backups": len(decision.expired_backups),
                "expired_segments": len(decision.expired_segments),
                "chunks_deleted": report.chunks_deleted,
                "duration_ms": report.duration_ms,
            },
        )
        return report

    @property
    def stats(self) -> dict[str, Any]:
        """Get retention statistics."""
        return {
            "running": self._running,
            "run_count": self._run_count,
        }
