"""
Local filesystem archive backend.

Stores archive objects as files under a root directory, e.g. the
/opt/pg_pitr_data volume mounted into the Postgres container.

Invariants:
    - Writes are atomic: temp file + fsync + rename, then directory fsync
    - if_absent writes never replace an existing file (hard link, not rename)
    - Keys cannot escape the root directory

How to change safely:
    - Keep blocking I/O inside run_in_executor, never on the event loop
    - Test on the filesystem used in production (link() support)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class LocalArchiveBackend:
    """Filesystem implementation of ArchiveBackend.

    Attributes:
        root: Root directory of the archive

    Example:
        >>> backend = LocalArchiveBackend("/opt/pg_pitr_data/archive")
        >>> await backend.connect()
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create the root directory if needed."""
        self.root.mkdir(parents=True, exist_ok=True)
        self._connected = True
        logger.info("Local archive ready", extra={"root": str(self.root)})

    async def close(self) -> None:
        self._connected = False

    async def put_object(self, key: str, data: bytes, if_absent: bool = False) -> bool:
        return await asyncio.get_running_loop().run_in_executor(
            None, self._write, self._path_for(key), data, if_absent
        )

    async def get_object(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)
        except FileNotFoundError:
            raise KeyError(key) from None

    async def list_keys(self, prefix: str) -> list[str]:
        return await asyncio.get_running_loop().run_in_executor(None, self._list, prefix)

    async def delete_object(self, key: str) -> None:
        path = self._path_for(key)
        await asyncio.get_running_loop().run_in_executor(None, self._unlink, path)

    async def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        root = self.root.resolve()
        if root != path and root not in path.parents:
            raise ValueError(f"Archive key escapes root: {key}")
        return path

    def _write(self, path: Path, data: bytes, if_absent: bool) -> bool:
        path.parent.mkdir(parents=True, exist_ok=True)
        if if_absent and path.exists():
            return False

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            if if_absent:
                # link() fails if the target exists, rename() would replace it
                try:
                    os.link(tmp_name, path)
                except FileExistsError:
                    return False
            else:
                os.replace(tmp_name, path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)

        self._fsync_dir(path.parent)
        return True

    def _fsync_dir(self, directory: Path) -> None:
        dir_fd = os.open(directory, os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def _list(self, prefix: str) -> list[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _unlink(self, path: Path) -> None:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
