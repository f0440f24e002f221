"""
Exclusive data directory lock.

One recovery driver per data directory: the lock is an flock() on a file
beside the data directory (not inside it, the directory must start empty).
The lock file is left in place after release; its contents name the last
holder, which helps debugging stale runs.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from pathlib import Path
from typing import IO

from ..errors import DirectoryLocked

logger = logging.getLogger(__name__)


def lock_path_for(data_dir: Path) -> Path:
    return data_dir.parent / f".{data_dir.name}.pitr.lock"


class DirectoryLock:
    """flock-based exclusive lock for a data directory.

    Example:
        >>> with DirectoryLock(Path("/var/lib/postgresql/data")):
        ...     restore()
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self.path = lock_path_for(self.data_dir)
        self._fp: IO[str] | None = None

    @property
    def is_held(self) -> bool:
        return self._fp is not None

    def acquire(self) -> None:
        """Take the lock without blocking.

        Raises:
            DirectoryLocked: If another process (or driver) holds it
        """
        if self._fp is not None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fp = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fp.close()
            raise DirectoryLocked(str(self.data_dir), str(self.path)) from None

        fp.seek(0)
        fp.truncate(0)
        fp.write(json.dumps({"pid": os.getpid(), "acquired_at_ms": int(time.time() * 1000)}))
        fp.flush()
        self._fp = fp
        logger.debug("Acquired data directory lock", extra={"lock_path": str(self.path)})

    def release(self) -> None:
        if self._fp is None:
            return
        try:
            fcntl.flock(self._fp.fileno(), fcntl.LOCK_UN)
        finally:
            self._fp.close()
            self._fp = None
        logger.debug("Released data directory lock", extra={"lock_path": str(self.path)})

    def __enter__(self) -> DirectoryLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
