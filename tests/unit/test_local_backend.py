"""
Unit tests for the local filesystem archive backend.

Tests cover:
- put/get/list/delete round trips
- if_absent never replacing an existing object
- Keys escaping the root
- ArchiveStore over the local backend
"""

import pytest

from dbaas.pitr_server.archive.local import LocalArchiveBackend
from dbaas.pitr_server.archive.store import ArchiveStore
from tests.helpers import archive_backup, archive_segments, segment_bytes


class TestLocalArchiveBackend:
    """Tests for LocalArchiveBackend."""

    @pytest.fixture
    def backend(self, tmp_dir):
        return LocalArchiveBackend(tmp_dir / "archive")

    @pytest.mark.asyncio
    async def test_connect_creates_root(self, backend):
        await backend.connect()
        assert backend.root.is_dir()
        assert backend.is_connected

    @pytest.mark.asyncio
    async def test_put_get(self, backend):
        await backend.connect()
        assert await backend.put_object("wal/a.json", b"{}") is True
        assert await backend.get_object("wal/a.json") == b"{}"
        assert await backend.exists("wal/a.json")

    @pytest.mark.asyncio
    async def test_get_missing_raises_key_error(self, backend):
        await backend.connect()
        with pytest.raises(KeyError):
            await backend.get_object("wal/missing.json")

    @pytest.mark.asyncio
    async def test_if_absent_keeps_existing(self, backend):
        await backend.connect()
        assert await backend.put_object("k", b"first", if_absent=True) is True
        assert await backend.put_object("k", b"second", if_absent=True) is False
        assert await backend.get_object("k") == b"first"

        assert await backend.put_object("k", b"third") is True
        assert await backend.get_object("k") == b"third"

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, backend):
        await backend.connect()
        await backend.put_object("dir/k", b"x")
        await backend.put_object("dir/k", b"y", if_absent=True)
        assert sorted(p.name for p in (backend.root / "dir").iterdir()) == ["k"]

    @pytest.mark.asyncio
    async def test_list_by_prefix(self, backend):
        await backend.connect()
        for key in ("wal/b.json", "wal/a.json", "chunks/ab/abc", "backups/x/manifest.json"):
            await backend.put_object(key, b"1")

        assert await backend.list_keys("wal/") == ["wal/a.json", "wal/b.json"]
        assert await backend.list_keys("chunks/") == ["chunks/ab/abc"]

    @pytest.mark.asyncio
    async def test_delete(self, backend):
        await backend.connect()
        await backend.put_object("k", b"1")
        await backend.delete_object("k")
        await backend.delete_object("k")
        assert not await backend.exists("k")

    @pytest.mark.asyncio
    async def test_key_cannot_escape_root(self, backend):
        await backend.connect()
        with pytest.raises(ValueError):
            await backend.put_object("../outside", b"x")

    @pytest.mark.asyncio
    async def test_store_survives_reopen(self, tmp_dir):
        root = tmp_dir / "archive"
        store = ArchiveStore(LocalArchiveBackend(root), chunk_size=128)
        await store.open()
        await archive_segments(store, [1, 2])
        await archive_backup(store, "b1", 1024, 1000)
        await store.close()

        reopened = ArchiveStore(LocalArchiveBackend(root), chunk_size=128)
        await reopened.open()
        assert [s.seq for s in await reopened.list_segments()] == [1, 2]
        assert await reopened.get("000000010000000000000002") == segment_bytes(2)
        backup = await reopened.get_backup("b1")
        files = {e.path: d async for e, d in reopened.iter_backup_files(backup)}
        assert files["PG_VERSION"] == b"16\n"
