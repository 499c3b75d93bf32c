"""
Exhaustive tests for WAL async operations.
"""

import asyncio
import os

import pytest

from mvkv.models.value import Value
from mvkv.models.wal import WAL
from mvkv.models.wal_entry import WALEntry


def commit(version: int, *pairs: tuple[bytes, bytes | None]) -> WALEntry:
    """A commit record; a None value is a delete."""
    return WALEntry(
        version=version,
        mutations=[
            (key, Value.tombstone(version) if value is None else Value.regular(value, version))
            for key, value in pairs
        ],
    )


class TestWALAsyncAppend:
    """Tests for WAL async append operation."""

    async def test_append_single(self, wal_path):
        wal = WAL(id="1", file_path=wal_path)
        wal.open()

        await wal.append(commit(1, (b"key1", b"value1")))
        wal.close()

        entries = list(WAL(id="1", file_path=wal_path))

        assert len(entries) == 1
        assert entries[0].version == 1
        assert entries[0].mutations[0][0] == b"key1"
        assert entries[0].mutations[0][1].data == b"value1"

    async def test_append_multiple(self, wal_path):
        wal = WAL(id="1", file_path=wal_path)
        wal.open()

        for i in range(1, 101):
            await wal.append(commit(i, (f"key{i}".encode(), f"value{i}".encode())))
        wal.close()

        entries = list(WAL(id="1", file_path=wal_path))

        assert [entry.version for entry in entries] == list(range(1, 101))

    async def test_append_concurrent(self, wal_path):
        """Concurrent appends never interleave records."""
        wal = WAL(id="1", file_path=wal_path)
        wal.open()

        async def append_entry(i: int) -> None:
            await wal.append(commit(i, (f"key{i}".encode(), b"x" * 100)))

        await asyncio.gather(*(append_entry(i) for i in range(1, 51)))
        wal.close()

        entries = list(WAL(id="1", file_path=wal_path))

        assert sorted(entry.version for entry in entries) == list(range(1, 51))

    async def test_batch_is_one_record(self, wal_path):
        wal = WAL(id="1", file_path=wal_path)
        wal.open()

        await wal.append(commit(1, (b"a", b"1"), (b"b", b"2"), (b"c", None)))
        wal.close()

        (entry,) = list(WAL(id="1", file_path=wal_path))

        assert [key for key, _ in entry.mutations] == [b"a", b"b", b"c"]
        assert entry.mutations[2][1].is_tombstone()

    async def test_append_closed_error(self, wal_path):
        wal = WAL(id="1", file_path=wal_path)

        with pytest.raises(RuntimeError):
            await wal.append(commit(1, (b"k", b"v")))


class TestWALRecovery:
    """Tests for reading a WAL back after restart."""

    async def test_missing_file(self, temp_dir):
        wal = WAL(id="1", file_path=os.path.join(temp_dir, "absent.wal"))
        assert list(wal) == []

    async def test_recovery_empty_wal(self, wal_path):
        wal = WAL(id="1", file_path=wal_path)
        wal.open()
        wal.close()

        assert list(WAL(id="1", file_path=wal_path)) == []

    async def test_recovery_with_tombstones(self, wal_path):
        with WAL(id="1", file_path=wal_path) as wal:
            await wal.append(commit(1, (b"key1", b"value1")))
            await wal.append(commit(2, (b"key1", None)))

        entries = list(WAL(id="1", file_path=wal_path))

        assert not entries[0].mutations[0][1].is_tombstone()
        assert entries[1].mutations[0][1].is_tombstone()
        assert entries[1].mutations[0][1].version == 2


class TestWALVersions:
    """Commit versions tracked by the log."""

    async def test_last_version_advances(self, wal_path):
        wal = WAL(id="1", file_path=wal_path)
        wal.open()
        assert wal.last_version == 0

        await wal.append(commit(3, (b"a", b"1")))
        await wal.append(commit(7, (b"b", b"2")))

        assert wal.last_version == 7
        wal.close()

    async def test_last_version_recovered_on_open(self, wal_path):
        with WAL(id="1", file_path=wal_path) as wal:
            for version in (1, 2, 5):
                await wal.append(commit(version, (b"k", b"v")))

        reopened = WAL(id="1", file_path=wal_path)
        reopened.open(read_only=True)

        assert reopened.last_version == 5
        reopened.close()


class TestWALEdgeCases:
    """Edge case tests for WAL."""

    async def test_binary_keys_and_values(self, wal_path):
        key = bytes(range(256))
        value = os.urandom(512)

        with WAL(id="1", file_path=wal_path) as wal:
            await wal.append(commit(1, (key, value)))

        (entry,) = list(WAL(id="1", file_path=wal_path))
        assert entry.mutations[0] == (key, Value.regular(value, 1))

    async def test_large_values(self, wal_path):
        value = b"x" * (1024 * 1024)

        with WAL(id="1", file_path=wal_path) as wal:
            await wal.append(commit(1, (b"big", value)))

        (entry,) = list(WAL(id="1", file_path=wal_path))
        assert entry.mutations[0][1].data == value

    async def test_empty_value(self, wal_path):
        with WAL(id="1", file_path=wal_path) as wal:
            await wal.append(commit(1, (b"key", b"")))

        (entry,) = list(WAL(id="1", file_path=wal_path))
        assert entry.mutations[0][1].data == b""
        assert not entry.mutations[0][1].is_tombstone()


class TestWALLifecycle:
    """Read-only transitions, context manager and destroy."""

    async def test_context_manager(self, wal_path):
        with WAL(id="1", file_path=wal_path) as wal:
            await wal.append(commit(1, (b"k", b"v")))
            assert wal._file is not None

        assert wal._file is None
        assert len(list(WAL(id="1", file_path=wal_path))) == 1

    async def test_mark_read_only(self, wal_path):
        wal = WAL(id="1", file_path=wal_path)
        wal.open()
        await wal.append(commit(1, (b"k", b"v")))

        wal.mark_read_only()

        assert wal.is_read_only()
        with pytest.raises(RuntimeError):
            await wal.append(commit(2, (b"k", b"v2")))
        wal.close()

    async def test_destroy(self, wal_path):
        wal = WAL(id="1", file_path=wal_path)
        wal.open()
        await wal.append(commit(1, (b"k", b"v")))

        wal.destroy()

        assert not os.path.exists(wal_path)
