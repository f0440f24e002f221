"""
Unit tests for the operator CLI.

Tests cover:
- Argument parsing
- PitrCLI commands over an in-memory archive
- main(): JSON output and exit codes over a local archive
"""

import asyncio
import json
import logging

import pytest

from dbaas.pitr_server.archive import ArchiveStore, InMemoryArchiveBackend, LocalArchiveBackend
from dbaas.pitr_server.config import ArchiveBackendKind, ArchiveConfig, RetentionConfig, ServerConfig, WalConfig
from dbaas.pitr_server.recovery import ABORTED_MARKER
from dbaas.pitr_server.recovery.adapter import STAGING_DIR
from dbaas.pitr_server.tools.cli import PitrCLI, build_parser, dispatch, main
from dbaas.pitr_server.wal.base import Lsn, segment_name
from tests.helpers import BASE_MS, SEGMENT_SIZE, archive_backup, archive_segments, segment_bytes

S = SEGMENT_SIZE


class TestParser:
    """Tests for build_parser()."""

    def test_restore_args(self):
        args = build_parser().parse_args(["restore", "--to", "latest", "--dry-run", "--timeline", "2"])
        assert args.command == "restore"
        assert args.to == "latest"
        assert args.dry_run is True
        assert args.timeline == 2
        assert args.data_dir is None

    def test_backup_create_args(self):
        args = build_parser().parse_args(["backup", "create", "--label", "nightly", "--from-dir", "/d"])
        assert (args.command, args.action, args.label, args.from_dir) == ("backup", "create", "nightly", "/d")

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["archive"])

    def test_restore_requires_target(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["restore"])


class TestPitrCLI:
    """Tests for PitrCLI over an in-memory archive."""

    @pytest.fixture
    def cli(self, tmp_dir):
        config = ServerConfig(
            wal=WalConfig(segment_size=S, cursor_path=str(tmp_dir / "cursor.json")),
            archive=ArchiveConfig(backend=ArchiveBackendKind.MEMORY, chunk_size=64),
            retention=RetentionConfig(max_age_seconds=1, min_backups=1),
        )
        store = ArchiveStore(InMemoryArchiveBackend(), chunk_size=64)
        return PitrCLI(config, store)

    async def seed(self, cli):
        await cli.store.open()
        await archive_segments(cli.store, range(1, 11))
        await archive_backup(cli.store, "b1", 1 * S, BASE_MS + 500)
        await archive_backup(cli.store, "b2", 5 * S, BASE_MS + 5000)

    @pytest.mark.asyncio
    async def test_status(self, cli):
        await self.seed(cli)
        status = await cli.status()
        assert status["segments"] == 10
        assert [b["backup_id"] for b in status["backups"]] == ["b1", "b2"]

    @pytest.mark.asyncio
    async def test_backup_list(self, cli):
        await self.seed(cli)
        backups = await cli.backup_list()
        assert backups[0]["lsn"] == str(Lsn(S))
        assert backups[1]["files"] == 3

    @pytest.mark.asyncio
    async def test_restore_dry_run(self, cli):
        await self.seed(cli)
        result = await cli.restore(str(Lsn(7 * S + 100)), dry_run=True)
        assert result["dry_run"] is True
        assert result["plan"]["backup_id"] == "b2"
        assert result["plan"]["first_seq"] == 5
        assert result["plan"]["last_seq"] == 7

    @pytest.mark.asyncio
    async def test_retention_dry_run(self, cli):
        await self.seed(cli)
        result = await cli.retention_apply(dry_run=True)
        assert result["dry_run"] is True
        assert result["expired_backups"] == ["b1"]
        assert result["backups_deleted"] == 0

    @pytest.mark.asyncio
    async def test_push(self, cli, tmp_dir):
        wal = tmp_dir / "wal"
        wal.mkdir()
        path = wal / segment_name(1, 0, S)
        path.write_bytes(segment_bytes(0))

        result = await cli.push(str(path))
        assert result["object_id"] == segment_name(1, 0, S)
        assert (await cli.status())["segments"] == 1

    @pytest.mark.asyncio
    async def test_backup_create_from_dir(self, cli, tmp_dir):
        pgdata = tmp_dir / "pgdata"
        pgdata.mkdir()
        (pgdata / "PG_VERSION").write_text("16\n")

        result = await cli.backup_create("cold", from_dir=str(pgdata), lsn="0/400", timeline=1)
        assert result["backup_id"] == "cold"
        assert (await cli.backup_list())[0]["lsn"] == "0/400"

    @pytest.mark.asyncio
    async def test_dispatch(self, cli):
        await self.seed(cli)
        args = build_parser().parse_args(["backup", "list"])
        result = await dispatch(cli, args)
        assert [b["backup_id"] for b in result] == ["b1", "b2"]


class TestMain:
    """Tests for main() over a local archive."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    @pytest.fixture
    def env(self, monkeypatch, tmp_dir):
        monkeypatch.setenv("ARCHIVE_BACKEND", "local")
        monkeypatch.setenv("ARCHIVE_ROOT", str(tmp_dir / "archive"))
        monkeypatch.setenv("WAL_SEGMENT_SIZE", str(S))
        monkeypatch.setenv("WAL_DIR", str(tmp_dir))
        monkeypatch.setenv("WAL_CURSOR_PATH", str(tmp_dir / "cursor.json"))
        monkeypatch.setenv("RECOVERY_START_SERVER", "false")
        monkeypatch.setenv("LOG_FORMAT", "text")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        return monkeypatch

    def seed(self, tmp_dir):
        async def run():
            store = ArchiveStore(LocalArchiveBackend(tmp_dir / "archive"))
            await store.open()
            await archive_segments(store, range(1, 11))
            await archive_backup(store, "b1", 1 * S, BASE_MS + 500)
            await store.close()

        asyncio.run(run())

    def test_status_json(self, env, tmp_dir, capsys):
        self.seed(tmp_dir)
        main(["archive", "status"])
        status = json.loads(capsys.readouterr().out)
        assert status["segments"] == 10
        assert status["latest_segment"] == segment_name(1, 10, S)

    def test_restore_dry_run(self, env, tmp_dir, capsys):
        self.seed(tmp_dir)
        main(["restore", "--to", str(Lsn(7 * S + 100)), "--dry-run"])
        result = json.loads(capsys.readouterr().out)
        assert result["plan"]["segments"][-1] == segment_name(1, 7, S)

    def test_restore_stages_recovery(self, env, tmp_dir, capsys):
        self.seed(tmp_dir)
        data_dir = tmp_dir / "restored"
        main(["restore", "--to", str(Lsn(7 * S + 100)), "--data-dir", str(data_dir)])

        result = json.loads(capsys.readouterr().out)
        assert result["state"] == "TargetReached"
        assert (data_dir / "recovery.signal").exists()
        assert (data_dir / "PG_VERSION").read_bytes() == b"16\n"
        assert sorted(p.name for p in (data_dir / STAGING_DIR).iterdir()) == [
            segment_name(1, s, S) for s in range(1, 8)
        ]
        assert not (data_dir / ABORTED_MARKER).exists()

    def test_unreachable_target_exits_1(self, env, tmp_dir, capsys):
        self.seed(tmp_dir)
        with pytest.raises(SystemExit) as exc_info:
            main(["restore", "--to", "0/10", "--dry-run"])
        assert exc_info.value.code == 1
        error = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert error["error"] == "TARGET_OUT_OF_RANGE"

    def test_bad_target_exits_2(self, env, tmp_dir):
        self.seed(tmp_dir)
        with pytest.raises(SystemExit) as exc_info:
            main(["restore", "--to", "yesterday", "--dry-run"])
        assert exc_info.value.code == 2

    def test_bad_config_exits_2(self, env, capsys):
        env.setenv("ARCHIVE_BACKEND", "ftp")
        with pytest.raises(SystemExit) as exc_info:
            main(["archive", "status"])
        assert exc_info.value.code == 2
        assert "ARCHIVE_BACKEND" in capsys.readouterr().err

    def test_push_history_files(self, env, tmp_dir, capsys):
        self.seed(tmp_dir)
        wal = tmp_dir / "pg_wal"
        wal.mkdir()
        backup_history = wal / f"{segment_name(1, 2, S)}.00000028.backup"
        backup_history.write_text("START WAL LOCATION: 0/2000028\n")
        timeline_history = wal / "00000002.history"
        timeline_history.write_text("1\t0/5000000\tno recovery target specified\n")

        results = []
        for path in (backup_history, timeline_history):
            main(["archive", "push", str(path)])
            results.append(json.loads(capsys.readouterr().out))
        main(["archive", "status"])
        results.append(json.loads(capsys.readouterr().out))

        assert results[0]["object_id"] == backup_history.name
        assert results[1]["object_id"] == "00000002.history"
        assert results[2]["history_files"] == 2
        assert results[2]["segments"] == 10
