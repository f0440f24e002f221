"""
Append-only archive store for WAL segments and base backups.

The ArchiveStore sits on top of a dumb ArchiveBackend and owns:
- Checksums (computed on put, verified on every read)
- Append-only semantics (ids are never overwritten)
- Idempotency (identical re-puts return the original ack)
- Content addressing of base backup chunks (deduplicated across backups)

Archive layout:
    wal/<segment_id>.wal[.gz]              segment payload
    wal/<segment_id>.json                  segment metadata (commit point)
    chunks/<hh>/<sha256>[.gz]              base backup chunk
    backups/<backup_id>/manifest.json      base backup manifest (commit point)
    history/<name>[.gz]                    history, backup history or .partial file
    history/<name>.json                    history file metadata (commit point)
    leases/backup/<backup_id>.json         backup upload in progress
    leases/gc/<token>.json                 chunk collection in progress

Leases:
    A backup upload writes its lease, then waits while a live gc lease
    exists. Chunk collection writes its lease, then skips the run while a
    live backup lease exists. Whichever side writes second sees the other,
    so collection never deletes a chunk a pending backup relies on. Leases
    are renewed while the work runs and expire if their process dies.

Invariants:
    - An object is visible only once its commit record exists
    - Commit records are written with if_absent, payloads before commit records
    - Writes for the same id are serialized
    - Chunk garbage collection never runs concurrently with a backup put,
      in this process or any other sharing the archive (leases)

How to change safely:
    - Never modify an existing commit record
    - Test restore from old layouts before changing key formats
    - Keep reads verifying checksums; callers rely on CorruptArchive
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import json
import logging
import os
import re
import socket
import time
import uuid
import zlib
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from typing import Any, Awaitable, TypeVar

from ..errors import (
    ArchiveConflict,
    ArchiveIOError,
    CorruptArchive,
    ObjectNotFound,
)
from ..wal.base import Lsn, is_history_file_name, is_segment_name
from .base import (
    METADATA_VERSION,
    ArchiveAck,
    ArchiveBackend,
    ArchiveSnapshot,
    BackupFile,
    BaseBackup,
    ObjectKind,
    Segment,
    compute_checksum,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKUP_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024  # 4MB
DEFAULT_BACKUP_LEASE_SECONDS = 6 * 3600
DEFAULT_GC_LEASE_SECONDS = 15 * 60

BackupPayload = Iterable[tuple[str, bytes]] | AsyncIterable[tuple[str, bytes]]


@dataclass
class _IdLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class _Lease:
    key: str
    kind: str
    owner: str
    ttl_ms: int
    expires_at_ms: int = 0


def validate_backup_id(backup_id: str) -> None:
    """Raise ValueError unless backup_id is usable as an archive id."""
    if not BACKUP_ID_RE.match(backup_id) or backup_id in (".", ".."):
        raise ValueError(f"Invalid backup id '{backup_id}'. Use letters, digits, '.', '_', '-'")
    if is_segment_name(backup_id):
        raise ValueError(f"Backup id '{backup_id}' collides with WAL segment naming")


class ArchiveStore:
    """Checksummed, append-only archive of segments and base backups.

    Attributes:
        backend: Storage backend
        compression: Payload compression ("gzip" or "none")
        chunk_size: Base backup chunk size in bytes
        backup_lease_seconds: Lifetime of a backup upload lease between renewals
        gc_lease_seconds: Lifetime of a chunk collection lease between renewals

    Example:
        >>> store = ArchiveStore(InMemoryArchiveBackend())
        >>> await store.open()
        >>> ack = await store.put(segment, data)
        >>> assert await store.get(ack.object_id) == data
    """

    def __init__(
        self,
        backend: ArchiveBackend,
        compression: str = "gzip",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_concurrent_reads: int = 16,
        backup_lease_seconds: float = DEFAULT_BACKUP_LEASE_SECONDS,
        gc_lease_seconds: float = DEFAULT_GC_LEASE_SECONDS,
        lease_poll_seconds: float = 1.0,
    ) -> None:
        if compression not in ("gzip", "none"):
            raise ValueError(f"Unsupported compression: {compression}")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if backup_lease_seconds <= 0 or gc_lease_seconds <= 0:
            raise ValueError("lease lifetimes must be positive")

        self.backend = backend
        self.compression = compression
        self.chunk_size = chunk_size
        self.backup_lease_seconds = backup_lease_seconds
        self.gc_lease_seconds = gc_lease_seconds
        self.lease_poll_seconds = lease_poll_seconds

        self._id_locks: dict[str, _IdLock] = {}
        self._backup_lock = asyncio.Lock()
        self._read_semaphore = asyncio.Semaphore(max_concurrent_reads)

    async def open(self) -> None:
        """Connect the backend."""
        await self.backend.connect()

    async def close(self) -> None:
        """Close the backend."""
        await self.backend.close()

    # ------------------------------------------------------------------
    # put
    # ------------------------------------------------------------------

    async def put(self, item: Segment | BaseBackup, payload: Any) -> ArchiveAck:
        """Archive a segment or a base backup.

        Args:
            item: Segment or BaseBackup metadata (checksum is computed here)
            payload: Segment bytes, or (path, bytes) pairs for a backup

        Returns:
            ArchiveAck; equal to the first ack for an identical re-put

        Raises:
            ArchiveConflict: If the id already holds different content
            ArchiveIOError: On backend failures
        """
        if isinstance(item, Segment):
            return await self.put_segment(item, payload)
        if isinstance(item, BaseBackup):
            return await self.put_backup(item, payload)
        raise TypeError(f"Cannot archive {type(item).__name__}")

    async def put_segment(self, segment: Segment, data: bytes) -> ArchiveAck:
        """Archive one WAL segment."""
        if len(data) != segment.size_bytes:
            raise ValueError(
                f"Segment {segment.segment_id} payload is {len(data)} bytes, "
                f"expected {segment.size_bytes}"
            )

        segment_id = segment.segment_id
        segment = replace(segment, checksum=compute_checksum(data))
        meta_key = self._segment_meta_key(segment_id)

        async with self._locked(segment_id):
            existing = await self._read_segment_record(segment_id)
            if existing is not None:
                return self._resolve_duplicate(segment_id, existing, segment.checksum)

            data_key = self._segment_data_key(segment_id)
            stored = await self._compress(data)
            await self._io("put", segment_id, self.backend.put_object(data_key, stored))

            record = {
                "version": METADATA_VERSION,
                "kind": ObjectKind.SEGMENT.value,
                "segment": segment.to_dict(),
                "data_key": data_key,
                "compression": self.compression,
                "committed_at_ms": _now_ms(),
            }
            written = await self._io(
                "commit",
                segment_id,
                self.backend.put_object(meta_key, _encode(record), if_absent=True),
            )
            if not written:
                # Another writer committed first
                existing = await self._read_segment_record(segment_id)
                return self._resolve_duplicate(segment_id, existing, segment.checksum)

        logger.info(
            "Archived segment",
            extra={
                "segment_id": segment_id,
                "seq": segment.seq,
                "timeline": segment.timeline,
                "stored_bytes": len(stored),
            },
        )
        return self._segment_ack(segment_id, record)

    async def put_backup(self, backup: BaseBackup, files: BackupPayload) -> ArchiveAck:
        """Archive a base backup from (relative path, bytes) pairs.

        Files are split into content-addressed chunks; chunks already present
        (from earlier backups) are not rewritten.
        """
        validate_backup_id(backup.backup_id)
        backup_id = backup.backup_id

        async with self._backup_lock, self._locked(backup_id):
            lease = await self._take_lease("backup", backup_id, self.backup_lease_seconds)
            try:
                await self._wait_for_collection(backup_id)
                return await self._put_backup_leased(backup, files, lease)
            finally:
                await self._drop_lease(lease)

    async def _put_backup_leased(self, backup: BaseBackup, files: BackupPayload, lease: _Lease) -> ArchiveAck:
        backup_id = backup.backup_id
        entries: list[BackupFile] = []
        seen: set[str] = set()
        async for path, data in _aiter_files(files):
            path = _normalize_backup_path(path)
            if path in seen:
                raise ValueError(f"Duplicate file in backup {backup_id}: {path}")
            seen.add(path)
            entries.append(await self._put_file_chunks(backup_id, path, data))
            await self._renew_lease(lease)

        entries.sort(key=lambda f: f.path)
        backup = replace(backup, files=tuple(entries), checksum=None)
        backup = replace(backup, checksum=backup.compute_checksum())

        manifest_key = self._backup_manifest_key(backup_id)
        existing = await self._read_backup_record(backup_id)
        if existing is not None:
            return self._resolve_duplicate(backup_id, existing, backup.checksum)

        record = backup.to_dict()
        record["kind"] = ObjectKind.BACKUP.value
        record["compression"] = self.compression
        record["committed_at_ms"] = _now_ms()
        written = await self._io(
            "commit",
            backup_id,
            self.backend.put_object(manifest_key, _encode(record), if_absent=True),
        )
        if not written:
            existing = await self._read_backup_record(backup_id)
            return self._resolve_duplicate(backup_id, existing, backup.checksum)

        logger.info(
            "Archived base backup",
            extra={
                "backup_id": backup_id,
                "lsn": str(backup.lsn),
                "files": len(backup.files),
                "size_bytes": backup.size_bytes,
            },
        )
        return self._backup_ack(backup_id, record)

    async def _put_file_chunks(self, backup_id: str, path: str, data: bytes) -> BackupFile:
        chunks = []
        for offset in range(0, len(data), self.chunk_size):
            chunk = data[offset : offset + self.chunk_size]
            digest = hashlib.sha256(chunk).hexdigest()
            key = self._chunk_key(digest, self.compression)
            if not await self._io("exists", f"{backup_id}:{path}", self.backend.exists(key)):
                stored = await self._compress(chunk)
                await self._io(
                    "put", f"{backup_id}:{path}", self.backend.put_object(key, stored, if_absent=True)
                )
            chunks.append(digest)
        return BackupFile(
            path=path,
            size_bytes=len(data),
            checksum=compute_checksum(data),
            chunks=tuple(chunks),
        )

    async def put_history_file(self, name: str, data: bytes) -> ArchiveAck:
        """Archive a timeline history, backup history or .partial file.

        These sit outside the segment sequence; they are append-only like
        everything else, and never touch the reader cursor.
        """
        if not is_history_file_name(name):
            raise ValueError(f"Not a history file name: {name}")

        checksum = compute_checksum(data)
        async with self._locked(name):
            existing = await self._read_history_record(name)
            if existing is not None:
                return self._resolve_duplicate(name, existing, checksum)

            data_key = self._history_data_key(name)
            stored = await self._compress(data)
            await self._io("put", name, self.backend.put_object(data_key, stored))

            record = {
                "version": METADATA_VERSION,
                "kind": ObjectKind.HISTORY.value,
                "name": name,
                "checksum": checksum,
                "size_bytes": len(data),
                "data_key": data_key,
                "compression": self.compression,
                "committed_at_ms": _now_ms(),
            }
            written = await self._io(
                "commit",
                name,
                self.backend.put_object(self._history_meta_key(name), _encode(record), if_absent=True),
            )
            if not written:
                existing = await self._read_history_record(name)
                return self._resolve_duplicate(name, existing, checksum)

        logger.info("Archived history file", extra={"file_name": name, "size_bytes": len(data)})
        return self._history_ack(name, record)

    async def list_history_files(self) -> list[str]:
        """Names of archived history files, sorted."""
        keys = await self._io("list", "history/", self.backend.list_keys("history/"))
        return sorted(k[len("history/") : -len(".json")] for k in keys if k.endswith(".json"))

    def _resolve_duplicate(
        self, object_id: str, record: dict[str, Any] | None, incoming: str
    ) -> ArchiveAck:
        if record is None:
            raise ArchiveIOError("commit record vanished during put", object_id, "put")
        if record["kind"] == ObjectKind.SEGMENT.value:
            existing = record["segment"]["checksum"]
            ack = self._segment_ack(object_id, record)
        elif record["kind"] == ObjectKind.HISTORY.value:
            existing = record["checksum"]
            ack = self._history_ack(object_id, record)
        else:
            existing = record["checksum"]
            ack = self._backup_ack(object_id, record)

        if existing != incoming:
            logger.error(
                "Archive conflict",
                extra={"object_id": object_id, "existing": existing, "incoming": incoming},
            )
            raise ArchiveConflict(object_id, existing, incoming)

        logger.debug("Duplicate put ignored", extra={"object_id": object_id})
        return ack

    # ------------------------------------------------------------------
    # get
    # ------------------------------------------------------------------

    async def get(self, object_id: str) -> bytes:
        """Read an object, verifying its checksum.

        Returns segment bytes for segment ids, file bytes for history file
        names and the manifest bytes for backup ids.

        Raises:
            ObjectNotFound: If the id is not archived
            CorruptArchive: If the stored bytes fail verification
        """
        if is_segment_name(object_id):
            return await self._get_segment_bytes(object_id)
        if is_history_file_name(object_id):
            return await self._get_history_bytes(object_id)

        record = await self._read_backup_record(object_id)
        if record is None:
            raise ObjectNotFound(object_id)
        backup = BaseBackup.from_dict(record)
        actual = backup.compute_checksum()
        if actual != backup.checksum:
            raise CorruptArchive(object_id, backup.checksum or "", actual)
        return _encode(record)

    async def _get_segment_bytes(self, segment_id: str) -> bytes:
        record = await self._read_segment_record(segment_id)
        if record is None:
            raise ObjectNotFound(segment_id)

        expected = record["segment"]["checksum"]
        try:
            stored = await self._io("get", segment_id, self.backend.get_object(record["data_key"]))
        except KeyError:
            raise CorruptArchive(segment_id, expected, "missing") from None

        data = await self._decompress(segment_id, stored, record.get("compression", "none"), expected)
        actual = compute_checksum(data)
        if actual != expected:
            logger.error(
                "Segment checksum mismatch",
                extra={"segment_id": segment_id, "expected": expected, "actual": actual},
            )
            raise CorruptArchive(segment_id, expected, actual)
        return data

    async def _get_history_bytes(self, name: str) -> bytes:
        record = await self._read_history_record(name)
        if record is None:
            raise ObjectNotFound(name)

        expected = record["checksum"]
        try:
            stored = await self._io("get", name, self.backend.get_object(record["data_key"]))
        except KeyError:
            raise CorruptArchive(name, expected, "missing") from None

        data = await self._decompress(name, stored, record.get("compression", "none"), expected)
        actual = compute_checksum(data)
        if actual != expected:
            raise CorruptArchive(name, expected, actual)
        return data

    async def get_segment(self, segment_id: str) -> Segment:
        """Get segment metadata."""
        record = await self._read_segment_record(segment_id)
        if record is None:
            raise ObjectNotFound(segment_id)
        return Segment.from_dict(record["segment"])

    async def get_backup(self, backup_id: str) -> BaseBackup:
        """Get base backup metadata (manifest included)."""
        record = await self._read_backup_record(backup_id)
        if record is None:
            raise ObjectNotFound(backup_id)
        return BaseBackup.from_dict(record)

    async def read_backup_file(self, backup: BaseBackup, entry: BackupFile) -> bytes:
        """Reassemble one backup file from its chunks, verifying everything."""
        object_id = f"{backup.backup_id}:{entry.path}"
        compression = await self._backup_compression(backup.backup_id)
        parts = []
        for digest in entry.chunks:
            key = self._chunk_key(digest, compression)
            expected = f"sha256:{digest}"
            try:
                stored = await self._io("get", object_id, self.backend.get_object(key))
            except KeyError:
                raise CorruptArchive(object_id, expected, "missing chunk") from None
            chunk = await self._decompress(object_id, stored, compression, expected)
            actual = compute_checksum(chunk)
            if actual != expected:
                raise CorruptArchive(object_id, expected, actual)
            parts.append(chunk)

        data = b"".join(parts)
        actual = compute_checksum(data)
        if actual != entry.checksum or len(data) != entry.size_bytes:
            raise CorruptArchive(object_id, entry.checksum, actual)
        return data

    async def iter_backup_files(self, backup: BaseBackup) -> AsyncIterator[tuple[BackupFile, bytes]]:
        """Yield (entry, bytes) for every file of a backup, in manifest order."""
        for entry in backup.files:
            yield entry, await self.read_backup_file(backup, entry)

    # ------------------------------------------------------------------
    # list / snapshot
    # ------------------------------------------------------------------

    async def list(
        self,
        kind: ObjectKind,
        start: int | Lsn | None = None,
        end: int | Lsn | None = None,
    ) -> list[Segment] | list[BaseBackup]:
        """List metadata of one kind within an inclusive range.

        Segments are ranged by sequence number, backups by LSN.
        """
        if kind == ObjectKind.SEGMENT:
            return await self.list_segments(start, end)
        return await self.list_backups(start, end)

    async def list_segments(
        self,
        start_seq: int | None = None,
        end_seq: int | None = None,
        timeline: int | None = None,
    ) -> list[Segment]:
        """List segment metadata ordered by (timeline, seq)."""
        keys = await self._io("list", "wal/", self.backend.list_keys("wal/"))
        ids = [k[len("wal/") : -len(".json")] for k in keys if k.endswith(".json")]
        records = await self._gather(self._read_segment_record(i) for i in ids)

        segments = []
        for record in records:
            if record is None:
                continue
            segment = Segment.from_dict(record["segment"])
            if timeline is not None and segment.timeline != timeline:
                continue
            if start_seq is not None and segment.seq < start_seq:
                continue
            if end_seq is not None and segment.seq > end_seq:
                continue
            segments.append(segment)
        return sorted(segments, key=lambda s: (s.timeline, s.seq))

    async def list_backups(self, start_lsn: Lsn | None = None, end_lsn: Lsn | None = None) -> list[BaseBackup]:
        """List base backups ordered by LSN."""
        keys = await self._io("list", "backups/", self.backend.list_keys("backups/"))
        ids = [k.split("/")[1] for k in keys if k.endswith("/manifest.json")]
        records = await self._gather(self._read_backup_record(i) for i in ids)

        backups = []
        for record in records:
            if record is None:
                continue
            backup = BaseBackup.from_dict(record)
            if start_lsn is not None and backup.lsn < start_lsn:
                continue
            if end_lsn is not None and backup.lsn > end_lsn:
                continue
            backups.append(backup)
        return sorted(backups, key=lambda b: (b.lsn, b.created_at_ms))

    async def snapshot(self) -> ArchiveSnapshot:
        """Take a read-consistent snapshot of committed metadata.

        Objects are immutable and only become visible at commit, so a
        listing is always a consistent set of committed objects. Objects
        committed after the listing started may be missing; they are newer
        than everything in the snapshot.
        """
        taken_at_ms = _now_ms()
        backups = await self.list_backups()
        segments = await self.list_segments()
        return ArchiveSnapshot(
            segments=tuple(segments),
            backups=tuple(backups),
            taken_at_ms=taken_at_ms,
        )

    # ------------------------------------------------------------------
    # delete / garbage collection
    # ------------------------------------------------------------------

    async def delete(self, object_id: str) -> bool:
        """Delete a segment or backup.

        The commit record is removed first so a half-finished delete never
        leaves a visible object without its payload.

        Returns:
            True if something was deleted, False if the id was not archived
        """
        async with self._locked(object_id):
            if is_segment_name(object_id):
                record = await self._read_segment_record(object_id)
                if record is None:
                    return False
                await self._io(
                    "delete", object_id, self.backend.delete_object(self._segment_meta_key(object_id))
                )
                await self._io("delete", object_id, self.backend.delete_object(record["data_key"]))
            else:
                key = self._backup_manifest_key(object_id)
                if not await self._io("exists", object_id, self.backend.exists(key)):
                    return False
                await self._io("delete", object_id, self.backend.delete_object(key))

        logger.info("Deleted archive object", extra={"object_id": object_id})
        return True

    async def collect_garbage(self) -> int:
        """Delete chunks no longer referenced by any backup manifest.

        The run is skipped (returns 0) while any process holds a live backup
        upload lease on the archive, since its chunks have no manifest yet.

        Returns:
            Number of chunks deleted
        """
        async with self._backup_lock:
            lease = await self._take_lease("gc", uuid.uuid4().hex, self.gc_lease_seconds)
            try:
                deleted = await self._collect_leased(lease)
            finally:
                await self._drop_lease(lease)

        if deleted:
            logger.info("Collected orphan chunks", extra={"chunks": deleted})
        return deleted

    async def _collect_leased(self, lease: _Lease) -> int:
        pending = await self._live_leases("backup")
        if pending:
            logger.info(
                "Backup upload in progress, skipping chunk collection",
                extra={"backups": sorted(str(r.get("owner")) for r in pending)},
            )
            return 0

        referenced = set()
        for backup in await self.list_backups():
            compression = await self._backup_compression(backup.backup_id)
            for entry in backup.files:
                referenced.update(self._chunk_key(d, compression) for d in entry.chunks)

        keys = await self._io("list", "chunks/", self.backend.list_keys("chunks/"))
        orphans = [k for k in keys if k not in referenced]
        for key in orphans:
            await self._renew_lease(lease)
            await self._io("delete", key, self.backend.delete_object(key))
        return len(orphans)

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    async def status(self) -> dict[str, Any]:
        """Summary of archive contents for operators."""
        snap = await self.snapshot()
        history = await self.list_history_files()
        latest = snap.latest_segment
        return {
            "segments": len(snap.segments),
            "segment_bytes": sum(s.size_bytes for s in snap.segments),
            "latest_segment": latest.segment_id if latest else None,
            "latest_lsn": str(latest.end_lsn) if latest else None,
            "history_files": len(history),
            "backups": [
                {
                    "backup_id": b.backup_id,
                    "lsn": str(b.lsn),
                    "timeline": b.timeline,
                    "created_at_ms": b.created_at_ms,
                    "files": len(b.files),
                    "size_bytes": b.size_bytes,
                }
                for b in snap.backups
            ],
        }

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, object_id: str) -> AsyncIterator[None]:
        """Serialize writers of one id. Entries are dropped once unused."""
        entry = self._id_locks.get(object_id)
        if entry is None:
            entry = self._id_locks[object_id] = _IdLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._id_locks[object_id]

    async def _take_lease(self, kind: str, owner: str, ttl_seconds: float) -> _Lease:
        lease = _Lease(
            key=f"leases/{kind}/{owner}.json",
            kind=kind,
            owner=owner,
            ttl_ms=int(ttl_seconds * 1000),
        )
        await self._write_lease(lease)
        return lease

    async def _write_lease(self, lease: _Lease) -> None:
        now_ms = _now_ms()
        lease.expires_at_ms = now_ms + lease.ttl_ms
        record = {
            "kind": lease.kind,
            "owner": lease.owner,
            "host": socket.gethostname(),
            "pid": os.getpid(),
            "renewed_at_ms": now_ms,
            "expires_at_ms": lease.expires_at_ms,
        }
        await self._io("lease", lease.key, self.backend.put_object(lease.key, _encode(record)))

    async def _renew_lease(self, lease: _Lease) -> None:
        """Extend a lease once half of its lifetime is used up."""
        if lease.expires_at_ms - _now_ms() < lease.ttl_ms // 2:
            await self._write_lease(lease)

    async def _drop_lease(self, lease: _Lease) -> None:
        try:
            await self._io("lease", lease.key, self.backend.delete_object(lease.key))
        except ArchiveIOError as e:
            # Left to expire; it only delays the other side until then
            logger.warning(
                f"Could not release lease: {e}",
                extra={"key": lease.key, "expires_at_ms": lease.expires_at_ms},
            )

    async def _live_leases(self, kind: str) -> list[dict[str, Any]]:
        prefix = f"leases/{kind}/"
        keys = await self._io("list", prefix, self.backend.list_keys(prefix))
        now_ms = _now_ms()
        live = []
        for key in keys:
            try:
                raw = await self._io("get", key, self.backend.get_object(key))
            except KeyError:
                continue  # released since the listing
            try:
                record = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("Ignoring unreadable lease", extra={"key": key})
                continue
            if record.get("expires_at_ms", 0) > now_ms:
                live.append(record)
        return live

    async def _wait_for_collection(self, backup_id: str) -> None:
        waited = False
        while running := await self._live_leases("gc"):
            if not waited:
                logger.info(
                    "Chunk collection in progress, waiting before upload",
                    extra={"backup_id": backup_id, "collectors": len(running)},
                )
                waited = True
            await asyncio.sleep(self.lease_poll_seconds)

    async def _io(self, operation: str, object_id: str, awaitable: Awaitable[T]) -> T:
        """Await a backend call, wrapping I/O errors with context."""
        try:
            return await awaitable
        except OSError as e:
            raise ArchiveIOError(str(e), object_id, operation) from e

    async def _gather(self, coros: Iterable[Awaitable[T]]) -> list[T]:
        async def bounded(coro: Awaitable[T]) -> T:
            async with self._read_semaphore:
                return await coro

        return list(await asyncio.gather(*(bounded(c) for c in coros)))

    async def _read_record(self, object_id: str, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._io("get", object_id, self.backend.get_object(key))
        except KeyError:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptArchive(object_id, "valid commit record", f"unreadable: {e}") from e

    async def _read_segment_record(self, segment_id: str) -> dict[str, Any] | None:
        return await self._read_record(segment_id, self._segment_meta_key(segment_id))

    async def _read_backup_record(self, backup_id: str) -> dict[str, Any] | None:
        return await self._read_record(backup_id, self._backup_manifest_key(backup_id))

    async def _read_history_record(self, name: str) -> dict[str, Any] | None:
        return await self._read_record(name, self._history_meta_key(name))

    async def _backup_compression(self, backup_id: str) -> str:
        record = await self._read_backup_record(backup_id)
        if record is None:
            raise ObjectNotFound(backup_id)
        return record.get("compression", "none")

    def _segment_ack(self, segment_id: str, record: dict[str, Any]) -> ArchiveAck:
        return ArchiveAck(
            object_id=segment_id,
            kind=ObjectKind.SEGMENT,
            checksum=record["segment"]["checksum"],
            size_bytes=record["segment"]["size_bytes"],
            key=self._segment_meta_key(segment_id),
            committed_at_ms=record["committed_at_ms"],
        )

    def _backup_ack(self, backup_id: str, record: dict[str, Any]) -> ArchiveAck:
        return ArchiveAck(
            object_id=backup_id,
            kind=ObjectKind.BACKUP,
            checksum=record["checksum"],
            size_bytes=sum(f["size_bytes"] for f in record.get("files", [])),
            key=self._backup_manifest_key(backup_id),
            committed_at_ms=record["committed_at_ms"],
        )

    def _history_ack(self, name: str, record: dict[str, Any]) -> ArchiveAck:
        return ArchiveAck(
            object_id=name,
            kind=ObjectKind.HISTORY,
            checksum=record["checksum"],
            size_bytes=record["size_bytes"],
            key=self._history_meta_key(name),
            committed_at_ms=record["committed_at_ms"],
        )

    async def _compress(self, data: bytes) -> bytes:
        if self.compression == "gzip":
            return await asyncio.get_running_loop().run_in_executor(None, gzip.compress, data)
        return data

    async def _decompress(self, object_id: str, stored: bytes, compression: str, expected: str) -> bytes:
        if compression != "gzip":
            return stored
        try:
            return await asyncio.get_running_loop().run_in_executor(None, gzip.decompress, stored)
        except (OSError, EOFError, zlib.error) as e:
            raise CorruptArchive(object_id, expected, f"undecodable: {e}") from e

    def _segment_meta_key(self, segment_id: str) -> str:
        return f"wal/{segment_id}.json"

    def _segment_data_key(self, segment_id: str) -> str:
        suffix = ".wal.gz" if self.compression == "gzip" else ".wal"
        return f"wal/{segment_id}{suffix}"

    def _backup_manifest_key(self, backup_id: str) -> str:
        return f"backups/{backup_id}/manifest.json"

    def _history_meta_key(self, name: str) -> str:
        return f"history/{name}.json"

    def _history_data_key(self, name: str) -> str:
        suffix = ".gz" if self.compression == "gzip" else ""
        return f"history/{name}{suffix}"

    def _chunk_key(self, digest: str, compression: str) -> str:
        suffix = ".gz" if compression == "gzip" else ""
        return f"chunks/{digest[:2]}/{digest}{suffix}"


def _encode(record: dict[str, Any]) -> bytes:
    return json.dumps(record, indent=2, sort_keys=True).encode("utf-8")


def _normalize_backup_path(path: str) -> str:
    parts = PurePosixPath(path.replace("\\", "/")).parts
    parts = tuple(p for p in parts if p not in ("", "."))
    if not parts or parts[0] == "/" or ".." in parts:
        raise ValueError(f"Unsafe backup file path: {path}")
    return "/".join(parts)


async def _aiter_files(files: BackupPayload) -> AsyncIterator[tuple[str, bytes]]:
    if isinstance(files, AsyncIterable):
        async for item in files:
            yield item
    else:
        for item in files:
            yield item


def _now_ms() -> int:
    return int(time.time() * 1000)
