"""
Tests for WAL commit records: checksums, torn tails and corruption detection.
"""

import os
import zlib

import pytest

from mvkv.engine.engine import Engine
from mvkv.engine.recoverer import MemTableRecoverer
from mvkv.models.containers import SortedDictContainer
from mvkv.models.exceptions import WALCorruptionError
from mvkv.models.value import Value
from mvkv.models.wal import WAL
from mvkv.models.wal_entry import WALEntry


def commit(version: int, *pairs: tuple[bytes, bytes | None]) -> WALEntry:
    mutations = [
        (key, Value.tombstone(version) if data is None else Value.regular(data, version))
        for key, data in pairs
    ]
    return WALEntry(version=version, mutations=mutations)


async def write_wal(path: str, entries: list[WALEntry]) -> None:
    wal = WAL(id="test", file_path=path)
    wal.open()
    for entry in entries:
        await wal.append(entry)
    wal.close()


class TestWALChecksumBasics:
    """Test basic checksum functionality."""

    async def test_write_and_read_with_checksum(self, wal_path):
        """Test that commit records can be written and read back."""
        await write_wal(
            wal_path,
            [commit(1, (b"key1", b"value1")), commit(2, (b"key2", b"value2"), (b"key3", None))],
        )

        entries = list(WAL(id="test", file_path=wal_path))

        assert [entry.version for entry in entries] == [1, 2]
        assert [key for key, _ in entries[1].mutations] == [b"key2", b"key3"]
        assert entries[1].mutations[1][1].is_tombstone()

    async def test_last_version_tracked(self, wal_path):
        """Reopening a WAL recovers the highest commit version."""
        await write_wal(wal_path, [commit(4, (b"a", b"1")), commit(5, (b"b", b"2"))])

        wal = WAL(id="test", file_path=wal_path)
        wal.open(read_only=True)
        assert wal.last_version == 5
        wal.close()

    async def test_checksum_computed_correctly(self, wal_path):
        """Verify checksum matches expected CRC32 value."""
        await write_wal(wal_path, [commit(1, (b"testkey", b"testvalue"))])

        with open(wal_path, "rb") as f:
            length = int.from_bytes(f.read(4), "big")
            entry_bytes = f.read(length)
            stored_checksum = int.from_bytes(f.read(4), "big")

        assert stored_checksum == zlib.crc32(entry_bytes) & 0xFFFFFFFF
        assert WALEntry.from_bytes(entry_bytes).version == 1

    async def test_append_read_only_error(self, wal_path):
        await write_wal(wal_path, [commit(1, (b"a", b"1"))])

        wal = WAL(id="test", file_path=wal_path)
        wal.open(read_only=True)
        with pytest.raises(RuntimeError):
            await wal.append(commit(2, (b"b", b"2")))
        wal.close()


class TestWALCorruptionDetection:
    """Test corruption detection via checksums."""

    async def test_corrupted_entry_data_detected(self, wal_path):
        """Test that corrupted entry data is detected."""
        await write_wal(wal_path, [commit(1, (b"key1", b"value1"))])

        with open(wal_path, "r+b") as f:
            f.seek(10)
            original_byte = f.read(1)
            f.seek(10)
            f.write(bytes([original_byte[0] ^ 0xFF]))

        with pytest.raises(WALCorruptionError) as exc_info:
            list(WAL(id="test", file_path=wal_path))

        assert exc_info.value.entry_offset == 0

    async def test_corrupted_checksum_detected(self, wal_path):
        """Test that corrupted checksum is detected."""
        await write_wal(wal_path, [commit(1, (b"testkey", b"testvalue"))])

        file_size = os.path.getsize(wal_path)
        with open(wal_path, "r+b") as f:
            f.seek(file_size - 4)
            f.write(b"\xFF\xFF\xFF\xFF")

        with pytest.raises(WALCorruptionError):
            list(WAL(id="test", file_path=wal_path))

    async def test_open_fails_fast_on_corruption(self, wal_path):
        await write_wal(wal_path, [commit(1, (b"key1", b"value1"))])

        with open(wal_path, "r+b") as f:
            f.seek(14)
            f.write(b"\x00\x00")

        wal = WAL(id="test", file_path=wal_path)
        with pytest.raises(WALCorruptionError):
            wal.open(read_only=True)
        wal.close()

    async def test_corruption_offset_reported(self, wal_path):
        """Test that corruption error includes correct file offset."""
        await write_wal(wal_path, [commit(i + 1, (f"key{i}".encode(), b"v")) for i in range(3)])

        with open(wal_path, "rb") as f:
            length1 = int.from_bytes(f.read(4), "big")
            f.read(length1)
            f.read(4)
            second_entry_offset = f.tell()

        with open(wal_path, "r+b") as f:
            f.seek(second_entry_offset + 10)
            f.write(b"\xFF")

        entries_read = []
        with pytest.raises(WALCorruptionError) as exc_info:
            for entry in WAL(id="test", file_path=wal_path):
                entries_read.append(entry)

        assert exc_info.value.entry_offset == second_entry_offset
        assert len(entries_read) == 1


class TestWALTornTail:
    """A crash mid-append leaves a partial record that recovery ignores."""

    async def test_missing_checksum_ends_iteration(self, wal_path):
        await write_wal(wal_path, [commit(1, (b"key1", b"value1"))])

        file_size = os.path.getsize(wal_path)
        with open(wal_path, "r+b") as f:
            f.truncate(file_size - 4)

        assert list(WAL(id="test", file_path=wal_path)) == []

    async def test_partial_last_record_keeps_earlier_commits(self, wal_path):
        """The torn batch is dropped as a whole, never half-applied."""
        await write_wal(
            wal_path,
            [commit(1, (b"a", b"1")), commit(2, (b"b", b"2"), (b"c", b"3"))],
        )

        file_size = os.path.getsize(wal_path)
        with open(wal_path, "r+b") as f:
            f.truncate(file_size - 7)

        wal = WAL(id="test", file_path=wal_path)
        wal.open(read_only=True)
        memtable = MemTableRecoverer().recover(wal, SortedDictContainer())
        wal.close()

        assert memtable.get(b"a", 10).data == b"1"
        assert not memtable.has(b"b")
        assert not memtable.has(b"c")
        assert memtable.max_version == 1


class TestRecoveryIntegration:
    """Engine startup over damaged logs."""

    async def test_engine_recovers_up_to_torn_tail(self, temp_dir):
        async with Engine(storage_dir=temp_dir, compaction_enabled=False) as engine:
            await engine.put(b"key1", b"value1")

        wal_dir = os.path.join(temp_dir, "wal")
        os.makedirs(wal_dir, exist_ok=True)
        torn_path = os.path.join(wal_dir, "wal_99.wal")
        await write_wal(torn_path, [commit(2, (b"key2", b"value2")), commit(3, (b"key3", b"value3"))])
        with open(torn_path, "r+b") as f:
            f.truncate(os.path.getsize(torn_path) - 3)

        async with Engine(storage_dir=temp_dir, compaction_enabled=False) as engine:
            assert await engine.get(b"key1") == b"value1"
            assert await engine.get(b"key2") == b"value2"
            assert await engine.get(b"key3") is None
            assert engine.last_version == 2

    async def test_engine_refuses_corrupted_wal(self, temp_dir):
        wal_dir = os.path.join(temp_dir, "wal")
        os.makedirs(wal_dir)
        path = os.path.join(wal_dir, "wal_0.wal")
        await write_wal(path, [commit(1, (b"key1", b"value1"))])

        with open(path, "r+b") as f:
            f.seek(12)
            f.write(b"\xAA")

        with pytest.raises(WALCorruptionError):
            Engine(storage_dir=temp_dir)
