"""
Error types for pg-pitr.

This module defines every exception raised by the engine:
- PitrError: Base exception
- IncompleteSegment: Segment file is still being written (transient)
- ArchiveError and subclasses: Archive store failures
- PlanningError and subclasses: Restore planning failures
- RecoveryError and subclasses: Recovery driver failures and invalid transitions

Invariants:
    - All errors inherit from PitrError
    - Errors carry the object id / operation they relate to in details
    - Planner errors are raised before any side effect happens

How to change safely:
    - Add new error types as subclasses of an existing family
    - Never change an existing error code, operators script against them
"""

from __future__ import annotations

from typing import Any


class PitrError(Exception):
    """Base exception for all pg-pitr errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PITR_ERROR"
        self.details = details or {}


class IncompleteSegment(PitrError):
    """WAL segment file is truncated or still being written.

    Transient: the reader retries on its next poll.
    """

    def __init__(self, message: str, path: str, size_bytes: int | None = None) -> None:
        super().__init__(
            message,
            code="INCOMPLETE_SEGMENT",
            details={"path": path, "size_bytes": size_bytes},
        )
        self.path = path
        self.size_bytes = size_bytes


class ArchiveError(PitrError):
    """Base exception for archive store failures."""

    def __init__(
        self,
        message: str,
        object_id: str | None = None,
        code: str = "ARCHIVE_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = {"object_id": object_id}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.object_id = object_id


class ArchiveIOError(ArchiveError):
    """Low-level backend I/O failure, wrapped with the object and operation."""

    def __init__(self, message: str, object_id: str | None, operation: str) -> None:
        super().__init__(
            f"{operation} failed for {object_id}: {message}",
            object_id=object_id,
            code="ARCHIVE_IO_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class ObjectNotFound(ArchiveError):
    """Requested object id is not in the archive."""

    def __init__(self, object_id: str) -> None:
        super().__init__(
            f"Archive object not found: {object_id}",
            object_id=object_id,
            code="OBJECT_NOT_FOUND",
        )


class CorruptArchive(ArchiveError):
    """Stored bytes do not match the recorded checksum.

    Fatal for the object concerned only.
    """

    def __init__(self, object_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Checksum mismatch for {object_id}: expected {expected}, got {actual}",
            object_id=object_id,
            code="CORRUPT_ARCHIVE",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class ArchiveConflict(ArchiveError):
    """An id already holds different content. Needs operator intervention."""

    def __init__(self, object_id: str, existing: str, incoming: str) -> None:
        super().__init__(
            f"Archive already holds different content for {object_id}",
            object_id=object_id,
            code="ARCHIVE_CONFLICT",
            details={"existing_checksum": existing, "incoming_checksum": incoming},
        )
        self.existing_checksum = existing
        self.incoming_checksum = incoming


class PlanningError(PitrError):
    """Base exception for restore planning failures."""


class TargetOutOfRange(PlanningError):
    """Recovery target is outside what the archive can reach."""

    def __init__(self, message: str, target: str, earliest: str | None, latest: str | None) -> None:
        super().__init__(
            message,
            code="TARGET_OUT_OF_RANGE",
            details={"target": target, "earliest": earliest, "latest": latest},
        )
        self.target = target
        self.earliest = earliest
        self.latest = latest


class SegmentGap(PlanningError):
    """A segment needed to reach the target is missing from the archive."""

    def __init__(self, missing_seq: int, backup_id: str, timeline: int) -> None:
        super().__init__(
            f"Segment {missing_seq} on timeline {timeline} is missing from the chain "
            f"after backup {backup_id}",
            code="SEGMENT_GAP",
            details={"missing_seq": missing_seq, "backup_id": backup_id, "timeline": timeline},
        )
        self.missing_seq = missing_seq
        self.backup_id = backup_id
        self.timeline = timeline


class RecoveryError(PitrError):
    """Base exception for recovery driver failures."""


class DirectoryLocked(RecoveryError):
    """Another recovery already holds the data directory."""

    def __init__(self, data_dir: str, lock_path: str) -> None:
        super().__init__(
            f"Data directory {data_dir} is locked by another recovery ({lock_path})",
            code="DIRECTORY_LOCKED",
            details={"data_dir": data_dir, "lock_path": lock_path},
        )
        self.data_dir = data_dir
        self.lock_path = lock_path


class AdapterError(RecoveryError):
    """The database adapter failed to stage, configure or promote."""

    def __init__(self, message: str, operation: str) -> None:
        super().__init__(message, code="ADAPTER_ERROR", details={"operation": operation})
        self.operation = operation


class RecoveryAborted(RecoveryError):
    """Terminal recovery failure. The data directory is marked unusable.

    Attributes:
        last_state: Last successfully reached recovery state (for diagnostics)
        reason: Short reason the driver gave up
    """

    def __init__(self, reason: str, last_state: Any, cause: BaseException | None = None) -> None:
        super().__init__(
            f"Recovery aborted: {reason}",
            code="RECOVERY_ABORTED",
            details={"last_state": str(last_state), "cause": repr(cause) if cause else None},
        )
        self.reason = reason
        self.last_state = last_state
        self.cause = cause


class InvalidTransition(RecoveryError):
    """A recovery state transition not allowed by the state machine."""

    def __init__(self, current: Any, requested: Any) -> None:
        super().__init__(
            f"Invalid recovery transition {current} -> {requested}",
            code="INVALID_TRANSITION",
            details={"current": str(current), "requested": str(requested)},
        )
        self.current = current
        self.requested = requested
