"""
Tests for data models: Value, VersionChain, WALEntry, WriteBatch, MemTable.
"""

import pytest

from mvkv.models.containers import SortedDictContainer
from mvkv.models.memtable import MemTable
from mvkv.models.value import Value, ValueType, VersionChain
from mvkv.models.wal_entry import WALEntry
from mvkv.models.write_batch import WriteBatch


class TestValue:
    """Tests for Value class."""

    def test_regular_value(self):
        """Test creating a regular value."""
        v = Value.regular(b"test", 7)
        assert v.data == b"test"
        assert v.version == 7
        assert v.type == ValueType.REGULAR
        assert not v.is_tombstone()

    def test_tombstone_value(self):
        """Test creating a tombstone value."""
        v = Value.tombstone(3)
        assert v.data is None
        assert v.version == 3
        assert v.is_tombstone()

    def test_value_serialization(self):
        """Test value serialization and deserialization."""
        original = Value.regular(b"hello world", 42)
        restored = Value.from_bytes(bytes(original))

        assert restored.data == original.data
        assert restored.version == 42
        assert restored.type == original.type

    def test_tombstone_serialization(self):
        """Test tombstone serialization and deserialization."""
        restored = Value.from_bytes(bytes(Value.tombstone(9)))

        assert restored.is_tombstone()
        assert restored.data is None
        assert restored.version == 9

    def test_header_layout(self):
        """Serialized form is [type:1][version:8][data_len:4][data]."""
        raw = bytes(Value.regular(b"ab", 1))
        assert len(raw) == Value.HEADER_SIZE + 2
        assert raw[0] == ValueType.REGULAR
        assert int.from_bytes(raw[1:9], "big") == 1
        assert int.from_bytes(raw[9:13], "big") == 2


class TestVersionChain:
    """Tests for per-key version history."""

    def test_versions_kept_ascending(self):
        chain = VersionChain([Value.regular(b"c", 5), Value.regular(b"a", 1), Value.regular(b"b", 3)])
        assert [v.version for v in chain] == [1, 3, 5]
        assert chain.latest().data == b"c"

    def test_visible_returns_greatest_version_at_or_below(self):
        """A snapshot sees the newest version committed at or before it."""
        chain = VersionChain([Value.regular(b"1", 1), Value.regular(b"2", 2)])

        assert chain.visible(0) is None
        assert chain.visible(1).data == b"1"
        assert chain.visible(2).data == b"2"
        assert chain.visible(100).data == b"2"

    def test_visible_includes_tombstones(self):
        chain = VersionChain([Value.regular(b"1", 1), Value.tombstone(3)])

        assert chain.visible(2).data == b"1"
        assert chain.visible(3).is_tombstone()

    def test_add_same_version_replaces(self):
        chain = VersionChain([Value.regular(b"old", 4)])
        chain.add(Value.regular(b"new", 4))

        assert len(chain) == 1
        assert chain.visible(4).data == b"new"

    def test_since(self):
        chain = VersionChain([Value.regular(b"1", 1), Value.regular(b"2", 2), Value.tombstone(5)])
        assert [v.version for v in chain.since(1)] == [2, 5]
        assert chain.since(5) == []

    def test_merge_prefers_newer_source_on_equal_version(self):
        newer = VersionChain([Value.regular(b"new", 2), Value.regular(b"x", 4)])
        older = VersionChain([Value.regular(b"a", 1), Value.regular(b"old", 2)])

        merged = newer.merge(older)

        assert [v.version for v in merged] == [1, 2, 4]
        assert merged.visible(2).data == b"new"
        # Inputs are untouched
        assert len(newer) == 2
        assert len(older) == 2

    def test_prune_keeps_newest_at_or_below_watermark(self):
        chain = VersionChain([Value.regular(b"1", 1), Value.regular(b"2", 2), Value.regular(b"5", 5)])

        pruned = chain.prune(watermark=3)

        assert [v.version for v in pruned] == [2, 5]
        assert pruned.visible(3).data == b"2"

    def test_prune_drops_reclaimable_tombstone(self):
        chain = VersionChain([Value.regular(b"1", 1), Value.tombstone(2)])

        assert len(chain.prune(watermark=2)) == 0
        assert [v.version for v in chain.prune(watermark=2, drop_tombstone=False)] == [2]

    def test_prune_keeps_tombstone_above_watermark(self):
        chain = VersionChain([Value.regular(b"1", 1), Value.tombstone(4)])

        pruned = chain.prune(watermark=2)

        assert [v.version for v in pruned] == [1, 4]

    def test_serialization(self):
        chain = VersionChain([Value.regular(b"1", 1), Value.tombstone(2), Value.regular(b"3", 3)])
        restored = VersionChain.from_bytes(bytes(chain))

        assert [v.version for v in restored] == [1, 2, 3]
        assert restored.visible(2).is_tombstone()
        assert restored.latest().data == b"3"


class TestWALEntry:
    """Tests for WALEntry commit records."""

    def test_entry_creation(self):
        entry = WALEntry(version=3, mutations=[(b"key1", Value.regular(b"value1", 3))])
        assert entry.version == 3
        assert entry.mutations[0][0] == b"key1"

    def test_entry_serialization(self):
        """A whole batch round-trips as one record."""
        original = WALEntry(
            version=8,
            mutations=[
                (b"a", Value.regular(b"1", 8)),
                (b"b", Value.tombstone(8)),
            ],
        )
        restored = WALEntry.from_bytes(bytes(original))

        assert restored.version == 8
        assert [key for key, _ in restored.mutations] == [b"a", b"b"]
        assert restored.mutations[0][1].data == b"1"
        assert restored.mutations[1][1].is_tombstone()
        assert restored.size_bytes() == len(bytes(original))


class TestWriteBatch:
    """Tests for staged write operations."""

    def test_last_operation_wins(self):
        batch = WriteBatch()
        batch.put(b"k", b"1")
        batch.put(b"other", b"x")
        batch.delete(b"k")

        mutations = batch.mutations(5)

        assert len(batch) == 2
        assert [key for key, _ in mutations] == [b"k", b"other"]
        assert mutations[0][1].is_tombstone()
        assert all(value.version == 5 for _, value in mutations)

    def test_lookup(self):
        batch = WriteBatch()
        batch.put(b"a", b"1")
        batch.delete(b"b")

        assert batch.lookup(b"a") == (True, b"1")
        assert batch.lookup(b"b") == (True, None)
        assert batch.lookup(b"c") == (False, None)

    def test_rejects_non_bytes(self):
        batch = WriteBatch()
        with pytest.raises(TypeError):
            batch.put("key", b"value")
        with pytest.raises(TypeError):
            batch.put(b"key", "value")

    def test_rejects_empty_key(self):
        with pytest.raises(ValueError):
            WriteBatch().put(b"", b"value")

    def test_clear(self):
        batch = WriteBatch()
        batch.put(b"a", b"1")
        batch.clear()
        assert len(batch) == 0
        assert batch.mutations(1) == []


class TestSortedDictContainer:
    """Tests for the SortedDict-backed container."""

    def test_put_get_has_delete(self):
        container = SortedDictContainer()
        container.put(b"b", 2)
        container.put(b"a", 1)

        assert container.get(b"a") == 1
        assert container.has(b"b")
        assert container.delete(b"a")
        assert not container.delete(b"a")
        assert container.size() == 1

    def test_range_iteration(self):
        """Range is [start, end)."""
        container = SortedDictContainer()
        for key in (b"d", b"a", b"c", b"b"):
            container.put(key, key)

        assert [k for k, _ in container.iterator()] == [b"a", b"b", b"c", b"d"]
        assert [k for k, _ in container.iterator(b"b", b"d")] == [b"b", b"c"]

    async def test_async_iteration(self):
        container = SortedDictContainer()
        container.put(b"x", 1)
        container.put(b"y", 2)

        assert [k async for k, _ in container.async_iterator(b"y", None)] == [b"y"]


class TestMemTable:
    """Tests for MemTable class."""

    def test_apply_and_versioned_get(self, memtable):
        memtable.apply([(b"key1", Value.regular(b"v1", 1))])
        memtable.apply([(b"key1", Value.regular(b"v2", 2))])

        assert memtable.get(b"key1", 1).data == b"v1"
        assert memtable.get(b"key1", 2).data == b"v2"
        assert memtable.get(b"key1", 0) is None
        assert memtable.get(b"missing", 2) is None
        assert memtable.max_version == 2
        assert memtable.size() == 1

    def test_immutability(self, memtable):
        memtable.put(b"key1", Value.regular(b"value1", 1))
        memtable.mark_immutable()

        assert memtable.is_immutable
        assert memtable.put(b"key2", Value.regular(b"value2", 2)) is False
        assert not memtable.has(b"key2")

    def test_delete_is_tombstone_version(self, memtable):
        memtable.put(b"key1", Value.regular(b"value1", 1))
        memtable.put(b"key1", Value.tombstone(2))

        assert memtable.get(b"key1", 1).data == b"value1"
        assert memtable.get(b"key1", 2).is_tombstone()
        assert len(memtable.chain(b"key1")) == 2

    def test_range_copy(self, memtable):
        for i in range(10):
            memtable.put(f"key{i}".encode(), Value.regular(b"v", i + 1))

        result = memtable.get_range(b"key3", b"key6")
        memtable.put(b"key4a", Value.regular(b"v", 11))

        assert [k for k, _ in result] == [b"key3", b"key4", b"key5"]

    def test_size_bytes_grows(self, memtable):
        before = memtable.size_bytes()
        memtable.put(b"k", Value.regular(b"value", 1))
        assert memtable.size_bytes() > before
