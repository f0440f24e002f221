"""
Configuration management for pg-pitr.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep the segment size in sync with the cluster's wal_segment_size
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .wal.base import DEFAULT_SEGMENT_SIZE, Lsn, segments_per_xlogid

logger = logging.getLogger(__name__)


class ArchiveBackendKind(Enum):
    """Supported archive storage backends."""

    LOCAL = "local"
    S3 = "s3"
    MEMORY = "memory"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    return int(value) if value else None


@dataclass(frozen=True)
class WalConfig:
    """WAL segment pickup configuration.

    Attributes:
        wal_dir: Directory completed segments appear in
        segment_size: WAL segment size in bytes (cluster wal_segment_size)
        timeline: Timeline to archive
        poll_interval_seconds: Interval between directory scans
        require_ready_marker: Require archive_status/*.ready markers (pg_wal mode)
        cursor_path: Where the last-archived cursor is persisted
    """

    wal_dir: str = "/opt/pg_pitr_data/wal_incoming"
    segment_size: int = DEFAULT_SEGMENT_SIZE
    timeline: int = 1
    poll_interval_seconds: float = 5.0
    require_ready_marker: bool = False
    cursor_path: str = "/opt/pg_pitr_data/cursor.json"

    @classmethod
    def from_env(cls) -> WalConfig:
        """Load configuration from environment variables."""
        return cls(
            wal_dir=os.getenv("WAL_DIR", "/opt/pg_pitr_data/wal_incoming"),
            segment_size=int(os.getenv("WAL_SEGMENT_SIZE", str(DEFAULT_SEGMENT_SIZE))),
            timeline=int(os.getenv("WAL_TIMELINE", "1")),
            poll_interval_seconds=float(os.getenv("WAL_POLL_SECONDS", "5")),
            require_ready_marker=_env_bool("WAL_REQUIRE_READY", "false"),
            cursor_path=os.getenv("WAL_CURSOR_PATH", "/opt/pg_pitr_data/cursor.json"),
        )


@dataclass(frozen=True)
class ArchiveConfig:
    """Archive store configuration.

    Attributes:
        backend: Which storage backend holds the archive
        root: Root directory (local backend)
        compression: Payload compression (gzip, none)
        chunk_size: Base backup chunk size in bytes
        backup_lease_seconds: Backup upload lease lifetime (renewed while uploading)
        gc_lease_seconds: Chunk collection lease lifetime (renewed while collecting)
    """

    backend: ArchiveBackendKind = ArchiveBackendKind.LOCAL
    root: str = "/opt/pg_pitr_data/archive"
    compression: str = "gzip"
    chunk_size: int = 4 * 1024 * 1024  # 4MB
    backup_lease_seconds: float = 6 * 3600
    gc_lease_seconds: float = 15 * 60

    @classmethod
    def from_env(cls) -> ArchiveConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If ARCHIVE_BACKEND is not a known backend
        """
        backend_str = os.getenv("ARCHIVE_BACKEND", "local").lower()
        try:
            backend = ArchiveBackendKind(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid ARCHIVE_BACKEND '{backend_str}'. Must be one of: local, s3, memory"
            )

        return cls(
            backend=backend,
            root=os.getenv("ARCHIVE_ROOT", "/opt/pg_pitr_data/archive"),
            compression=os.getenv("ARCHIVE_COMPRESSION", "gzip"),
            chunk_size=int(os.getenv("ARCHIVE_CHUNK_SIZE", str(4 * 1024 * 1024))),
            backup_lease_seconds=float(os.getenv("ARCHIVE_BACKUP_LEASE_SECONDS", str(6 * 3600))),
            gc_lease_seconds=float(os.getenv("ARCHIVE_GC_LEASE_SECONDS", str(15 * 60))),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the archive.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        prefix: Key prefix for all archive objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "pg-pitr"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "archive"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "pg-pitr"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_PREFIX", "archive"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class RetentionConfig:
    """Retention manager configuration.

    Attributes:
        enabled: Whether the scheduled retention loop runs
        interval_seconds: Interval between retention runs
        max_age_seconds: Keep objects younger than this (None = no age window)
        min_backups: Always keep at least this many newest base backups
        lsn_floor: Keep objects at or above this LSN (None = no LSN window)
    """

    enabled: bool = False
    interval_seconds: int = 3600  # 1 hour
    max_age_seconds: int | None = None
    min_backups: int = 2
    lsn_floor: Lsn | None = None

    @classmethod
    def from_env(cls) -> RetentionConfig:
        """Load configuration from environment variables."""
        floor = os.getenv("RETENTION_LSN_FLOOR")
        return cls(
            enabled=_env_bool("RETENTION_ENABLED", "false"),
            interval_seconds=int(os.getenv("RETENTION_INTERVAL_SECONDS", "3600")),
            max_age_seconds=_env_optional_int("RETENTION_MAX_AGE_SECONDS"),
            min_backups=int(os.getenv("RETENTION_MIN_BACKUPS", "2")),
            lsn_floor=Lsn.parse(floor) if floor else None,
        )


@dataclass(frozen=True)
class PostgresConfig:
    """Postgres process configuration.

    Attributes:
        data_dir: Data directory restores are written to (PGDATA)
        user: Replication user for pg_basebackup
        host: Server host for pg_basebackup
        port: Server port for pg_basebackup
        pg_basebackup: pg_basebackup executable
        pg_ctl: pg_ctl executable
    """

    data_dir: str = "/var/lib/postgresql/data"
    user: str = "postgres"
    host: str | None = None
    port: int = 5432
    pg_basebackup: str = "pg_basebackup"
    pg_ctl: str = "pg_ctl"

    @classmethod
    def from_env(cls) -> PostgresConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("PGDATA", "/var/lib/postgresql/data"),
            user=os.getenv("PGUSER", "postgres"),
            host=os.getenv("PGHOST"),
            port=int(os.getenv("PGPORT", "5432")),
            pg_basebackup=os.getenv("PG_BASEBACKUP", "pg_basebackup"),
            pg_ctl=os.getenv("PG_CTL", "pg_ctl"),
        )


@dataclass(frozen=True)
class RecoveryConfig:
    """Recovery driver configuration.

    Attributes:
        segment_retry_delay_ms: Delay before the single retry of a failed segment apply
        start_server: Start Postgres after staging (False = leave it to the operator)
    """

    segment_retry_delay_ms: int = 500
    start_server: bool = True

    @classmethod
    def from_env(cls) -> RecoveryConfig:
        """Load configuration from environment variables."""
        return cls(
            segment_retry_delay_ms=int(os.getenv("RECOVERY_SEGMENT_RETRY_MS", "500")),
            start_server=_env_bool("RECOVERY_START_SERVER", "true"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete pg-pitr configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        wal: WAL pickup configuration
        archive: Archive store configuration
        s3: S3 configuration (if archive backend is S3)
        retention: Retention configuration
        postgres: Postgres process configuration
        recovery: Recovery driver configuration
        observability: Observability configuration
    """

    wal: WalConfig = field(default_factory=WalConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    s3: S3Config = field(default_factory=S3Config)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            wal=WalConfig.from_env(),
            archive=ArchiveConfig.from_env(),
            s3=S3Config.from_env(),
            retention=RetentionConfig.from_env(),
            postgres=PostgresConfig.from_env(),
            recovery=RecoveryConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        try:
            segments_per_xlogid(self.wal.segment_size)
        except ValueError:
            raise ValueError(f"WAL_SEGMENT_SIZE must divide 4GB evenly, got {self.wal.segment_size}")
        if self.wal.timeline < 1:
            raise ValueError("WAL_TIMELINE must be >= 1")
        if self.wal.poll_interval_seconds <= 0:
            raise ValueError("WAL_POLL_SECONDS must be positive")

        if self.archive.compression not in ("gzip", "none"):
            raise ValueError(
                f"Invalid ARCHIVE_COMPRESSION '{self.archive.compression}'. Must be one of: gzip, none"
            )
        if self.archive.chunk_size <= 0:
            raise ValueError("ARCHIVE_CHUNK_SIZE must be positive")
        if self.archive.backup_lease_seconds <= 0:
            raise ValueError("ARCHIVE_BACKUP_LEASE_SECONDS must be positive")
        if self.archive.gc_lease_seconds <= 0:
            raise ValueError("ARCHIVE_GC_LEASE_SECONDS must be positive")

        if self.archive.backend == ArchiveBackendKind.S3:
            if not self.s3.bucket:
                raise ValueError("S3_BUCKET is required when ARCHIVE_BACKEND=s3")
        elif self.archive.backend == ArchiveBackendKind.LOCAL:
            if not self.archive.root:
                raise ValueError("ARCHIVE_ROOT is required when ARCHIVE_BACKEND=local")
        elif self.archive.backend == ArchiveBackendKind.MEMORY:
            logger.warning("ARCHIVE_BACKEND=memory keeps the archive in process memory only")

        if self.retention.min_backups < 1:
            raise ValueError("RETENTION_MIN_BACKUPS must be >= 1")
        if self.retention.max_age_seconds is not None and self.retention.max_age_seconds <= 0:
            raise ValueError("RETENTION_MAX_AGE_SECONDS must be positive")
        if self.retention.interval_seconds <= 0:
            raise ValueError("RETENTION_INTERVAL_SECONDS must be positive")

        if self.recovery.segment_retry_delay_ms < 0:
            raise ValueError("RECOVERY_SEGMENT_RETRY_MS must be >= 0")

        if not os.path.exists(self.wal.wal_dir):
            logger.warning(
                f"WAL directory does not exist: {self.wal.wal_dir}. "
                "The reader will wait for it to appear."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "wal_dir": self.wal.wal_dir,
                "segment_size": self.wal.segment_size,
                "timeline": self.wal.timeline,
                "archive_backend": self.archive.backend.value,
                "archive_root": self.archive.root
                if self.archive.backend == ArchiveBackendKind.LOCAL
                else None,
                "s3_bucket": self.s3.bucket if self.archive.backend == ArchiveBackendKind.S3 else None,
                "s3_credentials": "set" if self.s3.access_key_id else "default chain",
                "compression": self.archive.compression,
                "retention_enabled": self.retention.enabled,
                "pgdata": self.postgres.data_dir,
                "log_level": self.observability.log_level,
            },
        )
