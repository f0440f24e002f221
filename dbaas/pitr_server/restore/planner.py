"""
Restore planner.

Given a recovery target, the planner picks the nearest prior base backup
and the ordered, contiguous segment chain that reaches the target. It only
reads archive metadata; planning has no side effects.

Algorithm (LSN target):
    1. Check earliest backup LSN <= target <= latest segment end LSN
    2. Binary search backups ordered by LSN for the greatest LSN <= target
    3. Collect segments from the backup's first segment through the one
       containing the target, failing on the first missing sequence number

Timestamp targets use backup creation times and segment completion times
the same way; the chain ends at the first segment completed at or after
the target time. "latest" replays everything archived after the newest
backup.

Invariants:
    - A plan's segments are contiguous and start at the backup's first segment
    - A plan never mixes timelines
    - Errors (TargetOutOfRange, SegmentGap) are raised before any side effect

How to change safely:
    - Keep build_plan() pure; RestorePlanner only adds the snapshot read
    - Test the boundary cases (target on a segment boundary, at backup LSN)
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..archive.base import ArchiveSnapshot, BaseBackup, Segment
from ..archive.store import ArchiveStore
from ..errors import SegmentGap, TargetOutOfRange
from ..wal.base import Lsn

logger = logging.getLogger(__name__)


class TargetKind(Enum):
    """What a recovery target points at."""

    LATEST = "latest"
    LSN = "lsn"
    TIME = "time"


@dataclass(frozen=True)
class RecoveryTarget:
    """Point to restore to.

    Attributes:
        kind: Target kind
        lsn: Target position (kind LSN)
        time_ms: Target time, Unix ms (kind TIME)

    Example:
        >>> RecoveryTarget.parse("0/7000100")
        >>> RecoveryTarget.parse("2024-05-01T10:00:00Z")
        >>> RecoveryTarget.parse("latest")
    """

    kind: TargetKind
    lsn: Lsn | None = None
    time_ms: int | None = None

    @classmethod
    def latest(cls) -> RecoveryTarget:
        return cls(TargetKind.LATEST)

    @classmethod
    def at_lsn(cls, lsn: Lsn) -> RecoveryTarget:
        return cls(TargetKind.LSN, lsn=lsn)

    @classmethod
    def at_time(cls, time_ms: int) -> RecoveryTarget:
        return cls(TargetKind.TIME, time_ms=time_ms)

    @classmethod
    def parse(cls, text: str) -> RecoveryTarget:
        """Parse 'latest', an LSN ('0/7000100') or an ISO-8601 timestamp.

        Timestamps without a timezone are taken as UTC.

        Raises:
            ValueError: If text is none of these
        """
        text = text.strip()
        if text.lower() == "latest":
            return cls.latest()
        if "/" in text:
            return cls.at_lsn(Lsn.parse(text))

        iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
        try:
            moment = datetime.fromisoformat(iso)
        except ValueError:
            raise ValueError(
                f"Invalid recovery target '{text}'. Use 'latest', an LSN like 0/7000100 "
                "or an ISO-8601 timestamp"
            ) from None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return cls.at_time(int(moment.timestamp() * 1000))

    @property
    def time_iso(self) -> str | None:
        """Target time in a form Postgres accepts for recovery_target_time."""
        if self.time_ms is None:
            return None
        return datetime.fromtimestamp(self.time_ms / 1000, tz=timezone.utc).isoformat(sep=" ")

    def __str__(self) -> str:
        if self.kind == TargetKind.LSN:
            return str(self.lsn)
        if self.kind == TargetKind.TIME:
            return self.time_iso or ""
        return "latest"


@dataclass(frozen=True)
class RestorePlan:
    """Immutable restore plan, consumed once by a RecoveryDriver.

    Attributes:
        backup: Base backup to restore
        segments: Contiguous segments to replay, in order
        target: Recovery target
        timeline: Timeline of the backup and all segments
        segment_size: WAL segment size
    """

    backup: BaseBackup
    segments: tuple[Segment, ...]
    target: RecoveryTarget
    timeline: int
    segment_size: int

    @property
    def first_seq(self) -> int | None:
        return self.segments[0].seq if self.segments else None

    @property
    def last_seq(self) -> int | None:
        return self.segments[-1].seq if self.segments else None

    @property
    def final_segment(self) -> Segment | None:
        return self.segments[-1] if self.segments else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup.backup_id,
            "backup_lsn": str(self.backup.lsn),
            "timeline": self.timeline,
            "target": str(self.target),
            "target_kind": self.target.kind.value,
            "first_seq": self.first_seq,
            "last_seq": self.last_seq,
            "segments": [s.segment_id for s in self.segments],
            "replay_bytes": sum(s.size_bytes for s in self.segments),
        }


def build_plan(
    snapshot: ArchiveSnapshot,
    target: RecoveryTarget,
    segment_size: int,
    timeline: int | None = None,
) -> RestorePlan:
    """Plan a restore against a metadata snapshot.

    Args:
        snapshot: Archive metadata snapshot
        target: Recovery target
        segment_size: WAL segment size
        timeline: Timeline to restore on (defaults to the newest archived one)

    Raises:
        TargetOutOfRange: If the archive cannot reach the target
        SegmentGap: If a segment of the chain is missing
    """
    if timeline is None:
        latest = snapshot.latest_segment or snapshot.latest_backup
        timeline = latest.timeline if latest else 1

    backups = [b for b in snapshot.backups if b.timeline == timeline]
    segments = snapshot.segments_on(timeline)

    if not backups:
        raise TargetOutOfRange(
            f"No base backups on timeline {timeline}", str(target), None, None
        )
    if not segments:
        raise TargetOutOfRange(
            f"No archived segments on timeline {timeline}", str(target), str(backups[0].lsn), None
        )

    if target.kind == TargetKind.LSN:
        backup, last_seq = _locate_lsn(backups, segments, target, segment_size)
        chain = _chain(segments, backup, timeline, backup.start_seq(segment_size), last_seq)
    elif target.kind == TargetKind.TIME:
        backup = _locate_time(backups, segments, target)
        chain = _chain_until_time(segments, backup, timeline, backup.start_seq(segment_size), target.time_ms)
    else:
        backup = max(backups, key=lambda b: (b.lsn, b.created_at_ms))
        chain = _chain(segments, backup, timeline, backup.start_seq(segment_size), max(segments))

    return RestorePlan(
        backup=backup,
        segments=tuple(chain),
        target=target,
        timeline=timeline,
        segment_size=segment_size,
    )


def _locate_lsn(
    backups: list[BaseBackup],
    segments: dict[int, Segment],
    target: RecoveryTarget,
    segment_size: int,
) -> tuple[BaseBackup, int]:
    ordered = sorted(backups, key=lambda b: (b.lsn, b.created_at_ms))
    earliest = ordered[0].lsn
    latest = segments[max(segments)].end_lsn
    lsn = target.lsn

    if lsn < earliest or lsn > latest:
        raise TargetOutOfRange(
            f"Target {lsn} is outside the recoverable range {earliest} .. {latest}",
            str(lsn),
            str(earliest),
            str(latest),
        )

    idx = bisect.bisect_right([b.lsn for b in ordered], lsn) - 1
    backup = ordered[idx]
    first_seq = backup.start_seq(segment_size)
    # A target on a segment boundary is reached at the end of the previous segment
    last_seq = max(first_seq, (lsn.value - 1) // segment_size)
    return backup, last_seq


def _locate_time(
    backups: list[BaseBackup],
    segments: dict[int, Segment],
    target: RecoveryTarget,
) -> BaseBackup:
    ordered = sorted(backups, key=lambda b: (b.created_at_ms, b.lsn))
    earliest = ordered[0].created_at_ms
    latest = max(s.created_at_ms for s in segments.values())
    when = target.time_ms

    if when < earliest or when > latest:
        raise TargetOutOfRange(
            f"Target {target} is outside the recoverable range",
            str(target),
            _iso(earliest),
            _iso(latest),
        )

    idx = bisect.bisect_right([b.created_at_ms for b in ordered], when) - 1
    return ordered[idx]


def _chain(
    segments: dict[int, Segment],
    backup: BaseBackup,
    timeline: int,
    first_seq: int,
    last_seq: int,
) -> list[Segment]:
    chain = []
    for seq in range(first_seq, max(first_seq, last_seq) + 1):
        segment = segments.get(seq)
        if segment is None:
            raise SegmentGap(seq, backup.backup_id, timeline)
        chain.append(segment)
    return chain


def _chain_until_time(
    segments: dict[int, Segment],
    backup: BaseBackup,
    timeline: int,
    first_seq: int,
    time_ms: int,
) -> list[Segment]:
    chain = []
    seq = first_seq
    while True:
        segment = segments.get(seq)
        if segment is None:
            raise SegmentGap(seq, backup.backup_id, timeline)
        chain.append(segment)
        if segment.created_at_ms >= time_ms:
            return chain
        seq += 1


def _iso(time_ms: int) -> str:
    return datetime.fromtimestamp(time_ms / 1000, tz=timezone.utc).isoformat()


class RestorePlanner:
    """Plans restores against the live archive.

    Example:
        >>> planner = RestorePlanner(store, segment_size=16 * 1024 * 1024)
        >>> plan = await planner.plan(RecoveryTarget.parse("0/7000100"))
    """

    def __init__(self, store: ArchiveStore, segment_size: int) -> None:
        self.store = store
        self.segment_size = segment_size

    async def plan(self, target: RecoveryTarget, timeline: int | None = None) -> RestorePlan:
        """Snapshot archive metadata and build a plan.

        Raises:
            TargetOutOfRange: If the archive cannot reach the target
            SegmentGap: If a segment of the chain is missing
        """
        snapshot = await self.store.snapshot()
        plan = build_plan(snapshot, target, self.segment_size, timeline)
        logger.info(
            "Restore planned",
            extra={
                "target": str(target),
                "backup_id": plan.backup.backup_id,
                "first_seq": plan.first_seq,
                "last_seq": plan.last_seq,
                "segments": len(plan.segments),
            },
        )
        return plan
