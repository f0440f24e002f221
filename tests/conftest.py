"""
Shared fixtures for pg-pitr tests.
"""

import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from dbaas.pitr_server.archive.memory import InMemoryArchiveBackend
from dbaas.pitr_server.archive.store import ArchiveStore


@pytest.fixture
def backend():
    """Fresh in-memory archive backend."""
    return InMemoryArchiveBackend()


@pytest_asyncio.fixture
async def store(backend):
    """Opened archive store over the in-memory backend, small chunks."""
    s = ArchiveStore(backend, compression="gzip", chunk_size=64)
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def tmp_dir():
    """Temporary directory as a Path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
