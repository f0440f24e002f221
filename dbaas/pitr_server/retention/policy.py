"""
Retention policy evaluation.

compute_retention() is a pure function: given an immutable ArchiveSnapshot
and a RetentionPolicy it decides which backups and segments may go. It
never touches the archive, so it can be tested exhaustively and previewed
with a dry run.

Decision rules:
    - Window: an object is inside the policy window when it is younger than
      max_age_seconds OR at/above lsn_floor. With neither set, everything
      is inside the window (nothing expires).
    - Backups: the newest min_backups (at least one) are always retained,
      plus every backup inside the window.
    - Protected segments: every segment on a retained backup's timeline from
      that backup's first segment onwards.
    - Expired segments: not protected and outside the window.
    - No backups at all: nothing is deleted.

Invariants:
    - The most recent base backup is never expired
    - No segment needed by a retained backup is ever expired
    - Expired segments are listed in ascending order, so deleting them in
      order never leaves a hole in what remains

How to change safely:
    - Add property tests for every new rule
    - Never expire segments above the lowest retained backup horizon
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..archive.base import ArchiveSnapshot, BaseBackup, Segment
from ..wal.base import Lsn

if TYPE_CHECKING:
    from ..config import RetentionConfig


@dataclass(frozen=True)
class RetentionPolicy:
    """What the archive must keep.

    Attributes:
        max_age_seconds: Keep objects younger than this
        min_backups: Always keep this many newest base backups
        lsn_floor: Keep objects at or above this LSN
    """

    max_age_seconds: int | None = None
    min_backups: int = 1
    lsn_floor: Lsn | None = None

    def __post_init__(self) -> None:
        if self.min_backups < 1:
            raise ValueError("min_backups must be >= 1, the latest backup is always kept")
        if self.max_age_seconds is not None and self.max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")

    @classmethod
    def from_config(cls, config: RetentionConfig) -> RetentionPolicy:
        return cls(
            max_age_seconds=config.max_age_seconds,
            min_backups=config.min_backups,
            lsn_floor=config.lsn_floor,
        )

    @property
    def has_window(self) -> bool:
        return self.max_age_seconds is not None or self.lsn_floor is not None

    def in_window(self, created_at_ms: int, lsn: Lsn, now_ms: int) -> bool:
        """Whether an object created at created_at_ms, reaching lsn, must be kept."""
        if not self.has_window:
            return True
        if self.max_age_seconds is not None and now_ms - created_at_ms < self.max_age_seconds * 1000:
            return True
        if self.lsn_floor is not None and lsn >= self.lsn_floor:
            return True
        return False


@dataclass(frozen=True)
class RetentionDecision:
    """Outcome of evaluating a policy against a snapshot.

    Attributes:
        retained_backups: Backups that stay, ordered by LSN
        expired_backups: Backups to delete, ordered by LSN
        expired_segments: Segments to delete, ordered by (timeline, seq)
        horizons: First protected segment seq per timeline
    """

    retained_backups: tuple[BaseBackup, ...] = ()
    expired_backups: tuple[BaseBackup, ...] = ()
    expired_segments: tuple[Segment, ...] = ()
    horizons: tuple[tuple[int, int], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.expired_backups and not self.expired_segments

    def horizon_for(self, timeline: int) -> int | None:
        for tl, seq in self.horizons:
            if tl == timeline:
                return seq
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "retained_backups": [b.backup_id for b in self.retained_backups],
            "expired_backups": [b.backup_id for b in self.expired_backups],
            "expired_segments": [s.segment_id for s in self.expired_segments],
            "horizons": {str(tl): seq for tl, seq in self.horizons},
        }


def compute_retention(
    snapshot: ArchiveSnapshot,
    policy: RetentionPolicy,
    segment_size: int,
    now_ms: int | None = None,
) -> RetentionDecision:
    """Decide what may be deleted from a snapshot.

    Args:
        snapshot: Archive metadata snapshot
        policy: Retention policy
        segment_size: WAL segment size (locates each backup's first segment)
        now_ms: Reference time for max_age (defaults to the snapshot time)

    Returns:
        RetentionDecision
    """
    if not snapshot.backups:
        return RetentionDecision()

    now = snapshot.taken_at_ms if now_ms is None else now_ms
    backups = sorted(snapshot.backups, key=lambda b: (b.lsn, b.created_at_ms))
    newest = {b.backup_id for b in backups[-policy.min_backups :]}

    retained = []
    expired = []
    for backup in backups:
        if backup.backup_id in newest or policy.in_window(backup.created_at_ms, backup.lsn, now):
            retained.append(backup)
        else:
            expired.append(backup)

    horizons: dict[int, int] = {}
    for backup in retained:
        start = backup.start_seq(segment_size)
        horizons[backup.timeline] = min(horizons.get(backup.timeline, start), start)

    expired_segments = []
    for segment in sorted(snapshot.segments, key=lambda s: (s.timeline, s.seq)):
        horizon = horizons.get(segment.timeline)
        if horizon is not None and segment.seq >= horizon:
            continue
        # A segment reaches up to its end; it is inside the floor if any of it is
        last_lsn = Lsn(segment.end_lsn.value - 1)
        if policy.in_window(segment.created_at_ms, last_lsn, now):
            continue
        expired_segments.append(segment)

    return RetentionDecision(
        retained_backups=tuple(retained),
        expired_backups=tuple(expired),
        expired_segments=tuple(expired_segments),
        horizons=tuple(sorted(horizons.items())),
    )
