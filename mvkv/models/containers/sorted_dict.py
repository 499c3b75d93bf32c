"""
SortedDict-backed implementation of SortedContainer.
"""

from collections.abc import AsyncIterator, Iterator
from typing import Any

from sortedcontainers import SortedDict

from mvkv.interfaces.sorted_container import SortedContainer


class SortedDictContainer(SortedContainer):
    """
    SortedContainer backed by sortedcontainers.SortedDict.

    Iterators walk a live view of the dict, so callers that interleave
    iteration with writes must copy the range first (see MemTable.get_range).
    """

    def __init__(self) -> None:
        self._data: SortedDict = SortedDict()

    def put(self, key: bytes, value: Any) -> None:
        self._data[key] = value

    def get(self, key: bytes) -> Any | None:
        return self._data.get(key)

    def delete(self, key: bytes) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        return True

    def has(self, key: bytes) -> bool:
        return key in self._data

    def size(self) -> int:
        return len(self._data)

    def iterator(
        self, start: bytes | None = None, end: bytes | None = None
    ) -> Iterator[tuple[bytes, Any]]:
        for key in self._data.irange(start, end, inclusive=(True, False)):
            yield key, self._data[key]

    def async_iterator(
        self, start: bytes | None = None, end: bytes | None = None
    ) -> AsyncIterator[tuple[bytes, Any]]:
        return _AsyncRangeIterator(self.iterator(start, end))


class _AsyncRangeIterator(AsyncIterator[tuple[bytes, Any]]):
    """Async adapter over an in-memory range iterator (no I/O)."""

    def __init__(self, source: Iterator[tuple[bytes, Any]]) -> None:
        self._source = source

    def __aiter__(self) -> "_AsyncRangeIterator":
        return self

    async def __anext__(self) -> tuple[bytes, Any]:
        try:
            return next(self._source)
        except StopIteration:
            raise StopAsyncIteration from None
