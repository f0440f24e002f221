"""
In-memory archive backend for testing.

This module provides a simple in-memory archive backend for:
- Unit tests
- Integration tests
- Local development without a filesystem or object store

Invariants:
    - All data is lost on process exit
    - Honors the same if_absent semantics as production backends
    - Safe for concurrent access from multiple coroutines

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with ArchiveBackend protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class InMemoryArchiveBackend:
    """In-memory implementation of ArchiveBackend for testing.

    Example:
        >>> backend = InMemoryArchiveBackend()
        >>> await backend.connect()
        >>> await backend.put_object("wal/000000010000000000000001.json", b"{}")
        True
    """

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = asyncio.Lock()
        self._connected = False
        self._fail_next: dict[str, Exception] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryArchiveBackend connected")

    async def close(self) -> None:
        """Close (data is kept so a store can be reopened in tests)."""
        self._connected = False
        logger.debug("InMemoryArchiveBackend closed")

    async def put_object(self, key: str, data: bytes, if_absent: bool = False) -> bool:
        self._maybe_fail("put", key)
        async with self._lock:
            if if_absent and key in self._objects:
                return False
            self._objects[key] = bytes(data)
            return True

    async def get_object(self, key: str) -> bytes:
        self._maybe_fail("get", key)
        async with self._lock:
            try:
                return self._objects[key]
            except KeyError:
                raise KeyError(key) from None

    async def list_keys(self, prefix: str) -> list[str]:
        async with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

    async def delete_object(self, key: str) -> None:
        self._maybe_fail("delete", key)
        async with self._lock:
            self._objects.pop(key, None)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return key in self._objects

    def _maybe_fail(self, operation: str, key: str) -> None:
        exc = self._fail_next.pop(f"{operation}:{key}", None)
        if exc is not None:
            raise exc

    # Testing helpers

    def fail_next(self, operation: str, key: str, exc: Exception) -> None:
        """Make the next `operation` ("put", "get", "delete") on key raise exc."""
        self._fail_next[f"{operation}:{key}"] = exc

    def corrupt(self, key: str, data: bytes) -> None:
        """Overwrite stored bytes behind the store's back (testing helper)."""
        self._objects[key] = data

    def keys(self) -> list[str]:
        """All stored keys (testing helper)."""
        return sorted(self._objects)
