"""
Unit tests for the restore planner.

Tests cover:
- Backup selection for LSN and timestamp targets
- Contiguous segment chains and gap detection
- Out-of-range targets
- Target parsing
"""

import pytest

from dbaas.pitr_server.archive.base import ArchiveSnapshot
from dbaas.pitr_server.errors import SegmentGap, TargetOutOfRange
from dbaas.pitr_server.restore import RecoveryTarget, RestorePlanner, TargetKind, build_plan
from dbaas.pitr_server.wal.base import Lsn
from tests.helpers import BASE_MS, SEGMENT_SIZE, archive_backup, archive_segments, make_backup, make_segment

S = SEGMENT_SIZE


def snapshot(segment_seqs=range(1, 11), backups=None, timeline=1):
    """Segments completed at BASE_MS + seq s; by default one backup ending segment 0."""
    if backups is None:
        backups = [make_backup("b1", 1 * S, BASE_MS + 500)]
    return ArchiveSnapshot(
        segments=tuple(make_segment(s, timeline) for s in segment_seqs),
        backups=tuple(backups),
        taken_at_ms=BASE_MS + 100_000,
    )


def seqs(plan):
    return [s.seq for s in plan.segments]


class TestLsnTargets:
    """Tests for LSN recovery targets."""

    def test_target_in_segment_seven(self):
        plan = build_plan(snapshot(), RecoveryTarget.at_lsn(Lsn(7 * S + 100)), S)
        assert plan.backup.backup_id == "b1"
        assert seqs(plan) == [1, 2, 3, 4, 5, 6, 7]
        assert plan.first_seq == 1
        assert plan.last_seq == 7
        assert plan.final_segment.contains(Lsn(7 * S + 100))
        assert plan.timeline == 1

    def test_missing_segment_is_a_gap(self):
        snap = snapshot(segment_seqs=[1, 2, 3, 4, 5, 6, 7, 9, 10])
        with pytest.raises(SegmentGap) as exc_info:
            build_plan(snap, RecoveryTarget.at_lsn(Lsn(9 * S + 10)), S)
        assert exc_info.value.missing_seq == 8
        assert exc_info.value.backup_id == "b1"
        assert exc_info.value.code == "SEGMENT_GAP"

    def test_gap_after_target_does_not_matter(self):
        snap = snapshot(segment_seqs=[1, 2, 3, 4, 5, 6, 7, 9, 10])
        plan = build_plan(snap, RecoveryTarget.at_lsn(Lsn(6 * S)), S)
        assert seqs(plan) == [1, 2, 3, 4, 5]

    def test_target_on_segment_boundary(self):
        plan = build_plan(snapshot(), RecoveryTarget.at_lsn(Lsn(7 * S)), S)
        assert plan.last_seq == 6

    def test_target_at_backup_lsn(self):
        plan = build_plan(snapshot(), RecoveryTarget.at_lsn(Lsn(1 * S)), S)
        assert seqs(plan) == [1]

    def test_nearest_prior_backup_chosen(self):
        backups = [
            make_backup("b1", 1 * S, BASE_MS + 500),
            make_backup("b2", 5 * S + 40, BASE_MS + 5500),
        ]
        plan = build_plan(snapshot(backups=backups), RecoveryTarget.at_lsn(Lsn(7 * S + 1)), S)
        assert plan.backup.backup_id == "b2"
        assert seqs(plan) == [5, 6, 7]

        plan = build_plan(snapshot(backups=backups), RecoveryTarget.at_lsn(Lsn(5 * S + 40)), S)
        assert plan.backup.backup_id == "b2"
        assert seqs(plan) == [5]

        plan = build_plan(snapshot(backups=backups), RecoveryTarget.at_lsn(Lsn(5 * S + 39)), S)
        assert plan.backup.backup_id == "b1"
        assert seqs(plan) == [1, 2, 3, 4, 5]

    def test_target_before_earliest_backup(self):
        with pytest.raises(TargetOutOfRange) as exc_info:
            build_plan(snapshot(), RecoveryTarget.at_lsn(Lsn(100)), S)
        assert exc_info.value.earliest == str(Lsn(S))

    def test_target_beyond_archive(self):
        with pytest.raises(TargetOutOfRange) as exc_info:
            build_plan(snapshot(), RecoveryTarget.at_lsn(Lsn(11 * S + 1)), S)
        assert exc_info.value.latest == str(Lsn(11 * S))

    def test_target_at_end_of_archive(self):
        plan = build_plan(snapshot(), RecoveryTarget.at_lsn(Lsn(11 * S)), S)
        assert plan.last_seq == 10

    def test_no_backups(self):
        with pytest.raises(TargetOutOfRange):
            build_plan(snapshot(backups=[]), RecoveryTarget.at_lsn(Lsn(3 * S)), S)

    def test_no_segments(self):
        with pytest.raises(TargetOutOfRange):
            build_plan(snapshot(segment_seqs=[]), RecoveryTarget.at_lsn(Lsn(3 * S)), S)


class TestTimeTargets:
    """Tests for timestamp recovery targets."""

    def test_chain_ends_at_first_segment_completed_after_target(self):
        plan = build_plan(snapshot(), RecoveryTarget.at_time(BASE_MS + 6500), S)
        assert seqs(plan) == [1, 2, 3, 4, 5, 6, 7]

    def test_target_equal_to_completion_time(self):
        plan = build_plan(snapshot(), RecoveryTarget.at_time(BASE_MS + 6000), S)
        assert plan.last_seq == 6

    def test_latest_backup_before_time(self):
        backups = [
            make_backup("b1", 1 * S, BASE_MS + 500),
            make_backup("b2", 5 * S, BASE_MS + 5200),
        ]
        plan = build_plan(snapshot(backups=backups), RecoveryTarget.at_time(BASE_MS + 8100), S)
        assert plan.backup.backup_id == "b2"
        assert seqs(plan) == [5, 6, 7, 8, 9]

        plan = build_plan(snapshot(backups=backups), RecoveryTarget.at_time(BASE_MS + 5100), S)
        assert plan.backup.backup_id == "b1"

    def test_time_before_first_backup(self):
        with pytest.raises(TargetOutOfRange):
            build_plan(snapshot(), RecoveryTarget.at_time(BASE_MS), S)

    def test_time_after_last_segment(self):
        with pytest.raises(TargetOutOfRange):
            build_plan(snapshot(), RecoveryTarget.at_time(BASE_MS + 10_001), S)

    def test_gap_before_time_reached(self):
        snap = snapshot(segment_seqs=[1, 2, 3, 5, 6])
        with pytest.raises(SegmentGap) as exc_info:
            build_plan(snap, RecoveryTarget.at_time(BASE_MS + 5500), S)
        assert exc_info.value.missing_seq == 4


class TestLatestTarget:
    """Tests for the 'latest' target."""

    def test_replays_everything_after_newest_backup(self):
        backups = [
            make_backup("b1", 1 * S, BASE_MS + 500),
            make_backup("b2", 4 * S, BASE_MS + 4500),
        ]
        plan = build_plan(snapshot(backups=backups), RecoveryTarget.latest(), S)
        assert plan.backup.backup_id == "b2"
        assert seqs(plan) == [4, 5, 6, 7, 8, 9, 10]

    def test_latest_with_gap(self):
        with pytest.raises(SegmentGap):
            build_plan(snapshot(segment_seqs=[1, 2, 4]), RecoveryTarget.latest(), S)


class TestTimelines:
    """Tests for timeline handling."""

    def test_defaults_to_newest_timeline(self):
        snap = ArchiveSnapshot(
            segments=tuple(make_segment(s, 1) for s in range(1, 5)) + tuple(make_segment(s, 2) for s in range(3, 6)),
            backups=(
                make_backup("tl1", 1 * S, BASE_MS + 500, timeline=1),
                make_backup("tl2", 3 * S, BASE_MS + 2500, timeline=2),
            ),
        )
        plan = build_plan(snap, RecoveryTarget.latest(), S)
        assert plan.timeline == 2
        assert all(s.timeline == 2 for s in plan.segments)
        assert seqs(plan) == [3, 4, 5]

        plan = build_plan(snap, RecoveryTarget.latest(), S, timeline=1)
        assert plan.backup.backup_id == "tl1"
        assert seqs(plan) == [1, 2, 3, 4]

    def test_unknown_timeline(self):
        with pytest.raises(TargetOutOfRange):
            build_plan(snapshot(), RecoveryTarget.latest(), S, timeline=3)


class TestRecoveryTarget:
    """Tests for RecoveryTarget parsing."""

    def test_parse_latest(self):
        assert RecoveryTarget.parse("latest").kind == TargetKind.LATEST
        assert RecoveryTarget.parse(" LATEST ").kind == TargetKind.LATEST

    def test_parse_lsn(self):
        target = RecoveryTarget.parse("0/7000100")
        assert target.kind == TargetKind.LSN
        assert target.lsn == Lsn(0x7000100)
        assert str(target) == "0/7000100"

    def test_parse_utc_timestamp(self):
        target = RecoveryTarget.parse("2024-05-01T10:00:00Z")
        assert target.kind == TargetKind.TIME
        assert target.time_ms == 1714557600000
        assert target.time_iso == "2024-05-01 10:00:00+00:00"

    def test_naive_timestamp_is_utc(self):
        assert RecoveryTarget.parse("2024-05-01T10:00:00").time_ms == 1714557600000

    def test_offset_timestamp(self):
        assert RecoveryTarget.parse("2024-05-01T12:00:00+02:00").time_ms == 1714557600000

    @pytest.mark.parametrize("text", ["yesterday", "0/xyz", ""])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            RecoveryTarget.parse(text)


class TestRestorePlanner:
    """Tests for RestorePlanner against a store."""

    @pytest.mark.asyncio
    async def test_plan_from_store(self, store):
        await archive_segments(store, range(1, 11))
        await archive_backup(store, "b1", 1 * S, BASE_MS + 500)

        planner = RestorePlanner(store, S)
        plan = await planner.plan(RecoveryTarget.parse(str(Lsn(7 * S + 100))))
        assert seqs(plan) == [1, 2, 3, 4, 5, 6, 7]
        assert plan.to_dict()["segments"][-1] == "000000010000000000000007"
        assert plan.to_dict()["replay_bytes"] == 7 * S

    @pytest.mark.asyncio
    async def test_planning_has_no_side_effects(self, store, backend):
        await archive_segments(store, [1, 2, 3, 5])
        await archive_backup(store, "b1", 1 * S, BASE_MS + 500)
        keys = backend.keys()

        with pytest.raises(SegmentGap):
            await RestorePlanner(store, S).plan(RecoveryTarget.latest())
        assert backend.keys() == keys
