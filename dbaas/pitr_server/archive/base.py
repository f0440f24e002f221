"""
Base protocol and types for the WAL archive.

This module defines the ArchiveBackend protocol that all storage backends
implement, along with the metadata types the rest of the engine works with:
segments, base backups, acknowledgments and metadata snapshots.

Invariants:
    - Segment and BaseBackup metadata are immutable once committed
    - Checksums are "sha256:<hex>" over the raw (uncompressed) bytes
    - A BaseBackup checksum covers its canonical manifest, files included

How to change safely:
    - Protocol changes require updating all backends (local, s3, memory)
    - Add metadata fields with defaults; from_dict() must accept old records
    - Bump METADATA_VERSION when the on-disk layout changes
"""

from __future__ import annotations

import hashlib
import json
from abc import abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..wal.base import Lsn, segment_name

if TYPE_CHECKING:
    from ..config import ServerConfig

METADATA_VERSION = 1


class ObjectKind(Enum):
    """Kinds of objects kept in the archive."""

    SEGMENT = "segment"
    BACKUP = "backup"
    HISTORY = "history"


def compute_checksum(data: bytes) -> str:
    """Compute SHA-256 checksum of data."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


@dataclass(frozen=True)
class Segment:
    """Metadata of one archived WAL segment.

    Attributes:
        seq: Monotonic segment sequence number
        timeline: Postgres timeline id
        size_bytes: Segment size (equals the cluster's WAL segment size)
        created_at_ms: When the segment was completed (Unix ms)
        checksum: SHA-256 of the raw bytes, set by the archive on put
    """

    seq: int
    timeline: int
    size_bytes: int
    created_at_ms: int
    checksum: str | None = None

    @property
    def segment_id(self) -> str:
        return segment_name(self.timeline, self.seq, self.size_bytes)

    @property
    def start_lsn(self) -> Lsn:
        return Lsn(self.seq * self.size_bytes)

    @property
    def end_lsn(self) -> Lsn:
        return Lsn((self.seq + 1) * self.size_bytes)

    def contains(self, lsn: Lsn) -> bool:
        return self.start_lsn <= lsn < self.end_lsn

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "timeline": self.timeline,
            "size_bytes": self.size_bytes,
            "created_at_ms": self.created_at_ms,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Segment:
        return cls(
            seq=data["seq"],
            timeline=data["timeline"],
            size_bytes=data["size_bytes"],
            created_at_ms=data["created_at_ms"],
            checksum=data.get("checksum"),
        )


@dataclass(frozen=True)
class BackupFile:
    """One file of a base backup.

    Attributes:
        path: Path relative to the data directory (posix separators)
        size_bytes: File size
        checksum: SHA-256 of the whole file
        chunks: Content addresses of the chunks, in order
    """

    path: str
    size_bytes: int
    checksum: str
    chunks: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupFile:
        return cls(
            path=data["path"],
            size_bytes=data["size_bytes"],
            checksum=data["checksum"],
            chunks=tuple(data.get("chunks", ())),
        )


@dataclass(frozen=True)
class BaseBackup:
    """Metadata of a base backup.

    Attributes:
        backup_id: Archive id (the backup label)
        lsn: Backup start location; replay starts in the segment containing it
        timeline: Timeline the backup was taken on
        created_at_ms: When the backup was taken (Unix ms)
        label: Free-form label handed to pg_basebackup
        files: Checksum manifest of constituent files
        checksum: SHA-256 of the canonical manifest, set by the archive on put
    """

    backup_id: str
    lsn: Lsn
    timeline: int
    created_at_ms: int
    label: str = ""
    files: tuple[BackupFile, ...] = ()
    checksum: str | None = None

    @property
    def size_bytes(self) -> int:
        return sum(f.size_bytes for f in self.files)

    def start_seq(self, segment_size: int) -> int:
        """First segment needed to make this backup consistent."""
        return self.lsn.segment_seq(segment_size)

    def manifest_dict(self) -> dict[str, Any]:
        """Canonical manifest without the checksum field."""
        return {
            "version": METADATA_VERSION,
            "backup_id": self.backup_id,
            "lsn": str(self.lsn),
            "timeline": self.timeline,
            "created_at_ms": self.created_at_ms,
            "label": self.label,
            "files": [asdict(f) | {"chunks": list(f.chunks)} for f in self.files],
        }

    def compute_checksum(self) -> str:
        canonical = json.dumps(self.manifest_dict(), sort_keys=True, separators=(",", ":"))
        return compute_checksum(canonical.encode("utf-8"))

    def to_dict(self) -> dict[str, Any]:
        data = self.manifest_dict()
        data["checksum"] = self.checksum
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BaseBackup:
        return cls(
            backup_id=data["backup_id"],
            lsn=Lsn.parse(data["lsn"]),
            timeline=data["timeline"],
            created_at_ms=data["created_at_ms"],
            label=data.get("label", ""),
            files=tuple(BackupFile.from_dict(f) for f in data.get("files", [])),
            checksum=data.get("checksum"),
        )


@dataclass(frozen=True)
class ArchiveAck:
    """Acknowledgment of a committed archive object.

    A duplicate put of identical content returns an ack equal to the first.

    Attributes:
        object_id: Segment file name or backup id
        kind: Object kind
        checksum: Stored checksum
        size_bytes: Raw payload size
        key: Backend key of the commit record
        committed_at_ms: When the object was first committed (Unix ms)
    """

    object_id: str
    kind: ObjectKind
    checksum: str
    size_bytes: int
    key: str
    committed_at_ms: int


@dataclass(frozen=True)
class ArchiveSnapshot:
    """Read-consistent view of archive metadata.

    Attributes:
        segments: All segments, ordered by (timeline, seq)
        backups: All base backups, ordered by LSN
        taken_at_ms: When the snapshot was taken (Unix ms)
    """

    segments: tuple[Segment, ...] = ()
    backups: tuple[BaseBackup, ...] = ()
    taken_at_ms: int = 0

    @property
    def latest_segment(self) -> Segment | None:
        return self.segments[-1] if self.segments else None

    @property
    def latest_backup(self) -> BaseBackup | None:
        return self.backups[-1] if self.backups else None

    def segments_on(self, timeline: int) -> dict[int, Segment]:
        """Segments of one timeline keyed by sequence number."""
        return {s.seq: s for s in self.segments if s.timeline == timeline}


@runtime_checkable
class ArchiveBackend(Protocol):
    """Protocol for archive storage backends.

    Backends are dumb key/value stores; integrity, idempotency and layout
    are the ArchiveStore's job. Keys use '/' separators.

    Durability contract:
        - put_object() returns only after the bytes are durably stored
        - put_object(if_absent=True) never replaces an existing key
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open connections / create root directories."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...

    @abstractmethod
    async def put_object(self, key: str, data: bytes, if_absent: bool = False) -> bool:
        """Store bytes under key.

        Returns:
            True if written, False if if_absent was set and the key existed

        Raises:
            OSError: On storage failures
        """
        ...

    @abstractmethod
    async def get_object(self, key: str) -> bytes:
        """Read bytes stored under key.

        Raises:
            KeyError: If the key does not exist
            OSError: On storage failures
        """
        ...

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        """List keys starting with prefix, sorted."""
        ...

    @abstractmethod
    async def delete_object(self, key: str) -> None:
        """Delete key. Deleting a missing key is not an error."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Whether key exists."""
        ...


def create_archive_backend(config: ServerConfig) -> ArchiveBackend:
    """Factory function to create an archive backend from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate ArchiveBackend implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import ArchiveBackendKind
    from .local import LocalArchiveBackend
    from .memory import InMemoryArchiveBackend
    from .s3 import S3ArchiveBackend

    if config.archive.backend == ArchiveBackendKind.LOCAL:
        return LocalArchiveBackend(config.archive.root)
    elif config.archive.backend == ArchiveBackendKind.S3:
        return S3ArchiveBackend(config.s3)
    elif config.archive.backend == ArchiveBackendKind.MEMORY:
        return InMemoryArchiveBackend()
    else:
        raise ValueError(f"Unsupported archive backend: {config.archive.backend}")
