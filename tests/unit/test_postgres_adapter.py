"""
Unit tests for the Postgres adapter.

Tests cover:
- Recovery settings per target kind
- Data directory preparation (recovery.signal, postgresql.auto.conf)
- Segment staging
- Promotion via pg_ctl and its failures
"""

import pytest

from dbaas.pitr_server.archive.base import ArchiveSnapshot
from dbaas.pitr_server.errors import AdapterError
from dbaas.pitr_server.recovery import DatabaseAdapter, PostgresAdapter
from dbaas.pitr_server.recovery.adapter import STAGING_DIR
from dbaas.pitr_server.restore import RecoveryTarget, build_plan
from dbaas.pitr_server.wal.base import Lsn
from tests.helpers import BASE_MS, SEGMENT_SIZE, FakeAdapter, make_backup, make_segment, segment_bytes

S = SEGMENT_SIZE


def plan_for(target):
    snap = ArchiveSnapshot(
        segments=tuple(make_segment(s) for s in range(1, 11)),
        backups=(make_backup("b1", 1 * S, BASE_MS + 500),),
    )
    return build_plan(snap, target, S)


class TestPostgresAdapter:
    """Tests for PostgresAdapter."""

    def test_satisfies_protocol(self):
        assert isinstance(PostgresAdapter(), DatabaseAdapter)
        assert isinstance(FakeAdapter(), DatabaseAdapter)

    def test_lsn_settings(self, tmp_dir):
        settings = PostgresAdapter().recovery_settings(tmp_dir, plan_for(RecoveryTarget.at_lsn(Lsn(7 * S + 100))))
        assert settings["recovery_target_lsn"] == "0/1C64"
        assert settings["recovery_target_action"] == "promote"
        assert settings["recovery_target_timeline"] == "1"
        assert settings["restore_command"] == f'cp "{tmp_dir / STAGING_DIR}/%f" "%p"'

    def test_time_settings(self, tmp_dir):
        target = RecoveryTarget.at_time(BASE_MS + 6500)
        settings = PostgresAdapter().recovery_settings(tmp_dir, plan_for(target))
        assert settings["recovery_target_time"] == target.time_iso
        assert "recovery_target_lsn" not in settings

    def test_latest_settings(self, tmp_dir):
        settings = PostgresAdapter().recovery_settings(tmp_dir, plan_for(RecoveryTarget.latest()))
        assert "recovery_target_action" not in settings
        assert "recovery_target_lsn" not in settings

    @pytest.mark.asyncio
    async def test_prepare_recovery(self, tmp_dir):
        (tmp_dir / "postgresql.auto.conf").write_text("# existing\nwork_mem = '4MB'\n")
        plan = plan_for(RecoveryTarget.at_lsn(Lsn(7 * S + 100)))

        await PostgresAdapter().prepare_recovery(tmp_dir, plan)

        assert (tmp_dir / "recovery.signal").exists()
        assert (tmp_dir / "pg_wal" / "archive_status").is_dir()
        assert (tmp_dir / STAGING_DIR).is_dir()
        conf = (tmp_dir / "postgresql.auto.conf").read_text()
        assert conf.startswith("# existing\nwork_mem = '4MB'\n")
        assert "recovery_target_lsn = '0/1C64'" in conf
        assert "recovery_target_action = 'promote'" in conf
        assert f"restore_command = 'cp \"{tmp_dir / STAGING_DIR}/%f\" \"%p\"'" in conf

    @pytest.mark.asyncio
    async def test_prepare_recovery_unwritable(self, tmp_dir):
        not_a_dir = tmp_dir / "pgdata"
        not_a_dir.write_text("")
        plan = plan_for(RecoveryTarget.latest())
        with pytest.raises(AdapterError) as exc_info:
            await PostgresAdapter().prepare_recovery(not_a_dir, plan)
        assert exc_info.value.operation == "prepare_recovery"

    @pytest.mark.asyncio
    async def test_apply_segment_stages_file(self, tmp_dir):
        (tmp_dir / STAGING_DIR).mkdir()
        segment = make_segment(3)
        await PostgresAdapter().apply_segment(tmp_dir, segment, segment_bytes(3))

        assert (tmp_dir / STAGING_DIR / segment.segment_id).read_bytes() == segment_bytes(3)
        assert [p.name for p in (tmp_dir / STAGING_DIR).iterdir()] == [segment.segment_id]

    @pytest.mark.asyncio
    async def test_apply_segment_without_staging_dir(self, tmp_dir):
        with pytest.raises(AdapterError):
            await PostgresAdapter().apply_segment(tmp_dir, make_segment(3), segment_bytes(3))

    @pytest.mark.asyncio
    async def test_promote_without_starting_server(self, tmp_dir):
        await PostgresAdapter(start_server=False).promote(tmp_dir, plan_for(RecoveryTarget.latest()))

    @pytest.mark.asyncio
    async def test_promote_missing_pg_ctl(self, tmp_dir):
        adapter = PostgresAdapter(pg_ctl=str(tmp_dir / "no-such-pg_ctl"))
        with pytest.raises(AdapterError) as exc_info:
            await adapter.promote(tmp_dir, plan_for(RecoveryTarget.latest()))
        assert exc_info.value.operation == "promote"

    @pytest.mark.asyncio
    async def test_promote_pg_ctl_failure(self, tmp_dir):
        script = tmp_dir / "pg_ctl"
        script.write_text("#!/bin/sh\necho 'could not start server' >&2\nexit 1\n")
        script.chmod(0o755)

        with pytest.raises(AdapterError) as exc_info:
            await PostgresAdapter(pg_ctl=str(script)).promote(tmp_dir, plan_for(RecoveryTarget.latest()))
        assert "could not start server" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_promote_runs_pg_ctl_start(self, tmp_dir):
        log = tmp_dir / "args.txt"
        script = tmp_dir / "pg_ctl"
        script.write_text(f'#!/bin/sh\necho "$@" > "{log}"\n')
        script.chmod(0o755)

        await PostgresAdapter(pg_ctl=str(script), timeout_seconds=30).promote(
            tmp_dir, plan_for(RecoveryTarget.latest())
        )
        assert log.read_text().split() == ["-D", str(tmp_dir), "-w", "-t", "30", "start"]
