"""
Unit tests for configuration.

Tests cover:
- Defaults
- Loading from environment variables
- Validation errors
"""

import pytest

from dbaas.pitr_server.archive import (
    InMemoryArchiveBackend,
    LocalArchiveBackend,
    S3ArchiveBackend,
    create_archive_backend,
)
from dbaas.pitr_server.config import (
    ArchiveBackendKind,
    ArchiveConfig,
    RetentionConfig,
    S3Config,
    ServerConfig,
    WalConfig,
)
from dbaas.pitr_server.wal.base import DEFAULT_SEGMENT_SIZE, Lsn

ENV_VARS = [
    "WAL_DIR", "WAL_SEGMENT_SIZE", "WAL_TIMELINE", "WAL_POLL_SECONDS", "WAL_REQUIRE_READY",
    "WAL_CURSOR_PATH", "ARCHIVE_BACKEND", "ARCHIVE_ROOT", "ARCHIVE_COMPRESSION",
    "ARCHIVE_CHUNK_SIZE", "ARCHIVE_BACKUP_LEASE_SECONDS", "ARCHIVE_GC_LEASE_SECONDS",
    "S3_BUCKET", "S3_REGION", "S3_ENDPOINT", "S3_PREFIX",
    "RETENTION_ENABLED", "RETENTION_INTERVAL_SECONDS", "RETENTION_MAX_AGE_SECONDS",
    "RETENTION_MIN_BACKUPS", "RETENTION_LSN_FLOOR", "PGDATA", "PGUSER", "PGHOST", "PGPORT",
    "RECOVERY_SEGMENT_RETRY_MS", "RECOVERY_START_SERVER", "LOG_LEVEL", "LOG_FORMAT",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestServerConfig:
    """Tests for ServerConfig loading and validation."""

    def test_defaults(self, clean_env):
        config = ServerConfig.from_env()
        assert config.wal.segment_size == DEFAULT_SEGMENT_SIZE
        assert config.wal.require_ready_marker is False
        assert config.archive.backend == ArchiveBackendKind.LOCAL
        assert config.archive.compression == "gzip"
        assert config.archive.backup_lease_seconds == 6 * 3600
        assert config.archive.gc_lease_seconds == 15 * 60
        assert config.retention.enabled is False
        assert config.retention.min_backups == 2
        assert config.retention.lsn_floor is None
        assert config.recovery.segment_retry_delay_ms == 500
        assert config.observability.log_format == "json"

    def test_from_env(self, clean_env, tmp_dir):
        clean_env.setenv("WAL_DIR", str(tmp_dir))
        clean_env.setenv("WAL_SEGMENT_SIZE", "1048576")
        clean_env.setenv("WAL_REQUIRE_READY", "true")
        clean_env.setenv("ARCHIVE_BACKEND", "S3")
        clean_env.setenv("S3_BUCKET", "backups")
        clean_env.setenv("RETENTION_ENABLED", "true")
        clean_env.setenv("RETENTION_MAX_AGE_SECONDS", "604800")
        clean_env.setenv("RETENTION_LSN_FLOOR", "0/3000000")
        clean_env.setenv("PGDATA", str(tmp_dir / "pgdata"))
        clean_env.setenv("RECOVERY_START_SERVER", "false")

        config = ServerConfig.from_env()
        assert config.wal.segment_size == 1024 * 1024
        assert config.wal.require_ready_marker is True
        assert config.archive.backend == ArchiveBackendKind.S3
        assert config.s3.bucket == "backups"
        assert config.retention.enabled is True
        assert config.retention.max_age_seconds == 604800
        assert config.retention.lsn_floor == Lsn(0x3000000)
        assert config.postgres.data_dir == str(tmp_dir / "pgdata")
        assert config.recovery.start_server is False

    def test_invalid_backend(self, clean_env):
        clean_env.setenv("ARCHIVE_BACKEND", "ftp")
        with pytest.raises(ValueError, match="ARCHIVE_BACKEND"):
            ServerConfig.from_env()

    def test_invalid_segment_size(self, clean_env):
        clean_env.setenv("WAL_SEGMENT_SIZE", "1000000")
        with pytest.raises(ValueError, match="WAL_SEGMENT_SIZE"):
            ServerConfig.from_env()

    def test_invalid_compression(self, clean_env):
        clean_env.setenv("ARCHIVE_COMPRESSION", "lz4")
        with pytest.raises(ValueError, match="ARCHIVE_COMPRESSION"):
            ServerConfig.from_env()

    def test_invalid_lease_lifetime(self, clean_env):
        clean_env.setenv("ARCHIVE_GC_LEASE_SECONDS", "0")
        with pytest.raises(ValueError, match="ARCHIVE_GC_LEASE_SECONDS"):
            ServerConfig.from_env()

    def test_invalid_min_backups(self, clean_env):
        clean_env.setenv("RETENTION_MIN_BACKUPS", "0")
        with pytest.raises(ValueError, match="RETENTION_MIN_BACKUPS"):
            ServerConfig.from_env()

    def test_invalid_lsn_floor(self, clean_env):
        clean_env.setenv("RETENTION_LSN_FLOOR", "not-an-lsn")
        with pytest.raises(ValueError):
            ServerConfig.from_env()

    def test_validate_direct(self):
        config = ServerConfig(wal=WalConfig(timeline=0))
        with pytest.raises(ValueError, match="WAL_TIMELINE"):
            config.validate()

        config = ServerConfig(retention=RetentionConfig(max_age_seconds=-5))
        with pytest.raises(ValueError, match="RETENTION_MAX_AGE_SECONDS"):
            config.validate()

    def test_log_config_does_not_leak_secrets(self, caplog):
        config = ServerConfig(
            archive=ArchiveConfig(backend=ArchiveBackendKind.S3),
            s3=S3Config(access_key_id="AKIAEXAMPLE", secret_access_key="topsecret"),
        )
        with caplog.at_level("INFO"):
            config.log_config()
        record = caplog.records[-1]
        assert record.s3_credentials == "set"
        assert "topsecret" not in str(record.__dict__)


class TestCreateArchiveBackend:
    """Tests for create_archive_backend()."""

    def test_local(self, tmp_dir):
        config = ServerConfig(archive=ArchiveConfig(backend=ArchiveBackendKind.LOCAL, root=str(tmp_dir)))
        backend = create_archive_backend(config)
        assert isinstance(backend, LocalArchiveBackend)
        assert backend.root == tmp_dir

    def test_memory(self):
        config = ServerConfig(archive=ArchiveConfig(backend=ArchiveBackendKind.MEMORY))
        assert isinstance(create_archive_backend(config), InMemoryArchiveBackend)

    def test_s3(self):
        config = ServerConfig(
            archive=ArchiveConfig(backend=ArchiveBackendKind.S3),
            s3=S3Config(bucket="b", prefix="pitr"),
        )
        assert isinstance(create_archive_backend(config), S3ArchiveBackend)
