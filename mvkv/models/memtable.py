"""
MemTable - In-memory sorted table of version chains.
"""

from collections.abc import AsyncIterator, Iterator

from mvkv.interfaces.range_iterable import RangeIterable
from mvkv.interfaces.sorted_container import SortedContainer
from mvkv.models.value import Value, VersionChain
from mvkv.models.wal_entry import Mutation

# Rough per-version bookkeeping cost on top of key and value bytes
_ENTRY_OVERHEAD = 64


class MemTable(RangeIterable):
    """
    In-memory sorted table mapping each key to its VersionChain.

    Supports:
    - O(log N) apply and versioned lookups
    - Range queries via iterator
    - Immutability marking for flush to SSTable
    """

    def __init__(self, sorted_container: SortedContainer) -> None:
        """
        Initialize MemTable.

        Args:
            sorted_container: The backing sorted data structure.
        """
        self._container = sorted_container
        self._immutable = False
        self._size_bytes = 0
        self._max_version = 0

    @property
    def is_immutable(self) -> bool:
        return self._immutable

    @property
    def max_version(self) -> int:
        return self._max_version

    def mark_immutable(self) -> None:
        self._immutable = True

    def has(self, key: bytes) -> bool:
        return self._container.has(key)

    def put(self, key: bytes, value: Value) -> bool:
        """
        Add a version of a key.

        Returns:
            True if successful, False if MemTable is immutable.
        """
        if self._immutable:
            return False

        chain = self._container.get(key)
        if chain is None:
            chain = VersionChain()
            self._container.put(key, chain)
            self._size_bytes += len(key)

        chain.add(value)
        self._size_bytes += value.size_bytes() + _ENTRY_OVERHEAD
        self._max_version = max(self._max_version, value.version)
        return True

    def apply(self, mutations: list[Mutation]) -> bool:
        """Apply every mutation of one committed batch."""
        if self._immutable:
            return False
        for key, value in mutations:
            self.put(key, value)
        return True

    def chain(self, key: bytes) -> VersionChain | None:
        return self._container.get(key)

    def get(self, key: bytes, version: int) -> Value | None:
        """
        Value of `key` visible at `version`, tombstones included.

        Returns:
            None if this MemTable holds no version of the key at or below
            `version`.
        """
        chain = self._container.get(key)
        if chain is None:
            return None
        return chain.visible(version)

    def get_range(
        self, start: bytes | None, end: bytes | None
    ) -> list[tuple[bytes, VersionChain]]:
        """
        Copy the (key, chain) pairs in [start, end).

        The copy makes the result safe to consume while new keys are inserted.
        """
        return list(self._container.iterator(start, end))

    def size(self) -> int:
        return self._container.size()

    def size_bytes(self) -> int:
        return self._size_bytes

    def iterator(
        self, start: bytes | None = None, end: bytes | None = None
    ) -> Iterator[tuple[bytes, VersionChain]]:
        return self._container.iterator(start, end)

    def async_iterator(
        self, start: bytes | None = None, end: bytes | None = None
    ) -> AsyncIterator[tuple[bytes, VersionChain]]:
        return self._container.async_iterator(start, end)
