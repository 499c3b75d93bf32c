"""
K-Way merge iterators over sorted (key, VersionChain) sources.
"""

import heapq
from collections.abc import AsyncIterator, Iterator

from mvkv.models.value import VersionChain


def prefix_bounds(prefix: bytes) -> tuple[bytes | None, bytes | None]:
    """
    Translate a key prefix into a [start, end) range.

    The end bound is the prefix with its last non-0xff byte incremented;
    None when no such byte exists (empty or all-0xff prefix).
    """
    if not prefix:
        return None, None

    stripped = prefix.rstrip(b"\xff")
    if not stripped:
        return prefix, None
    return prefix, stripped[:-1] + bytes([stripped[-1] + 1])


class KWayMergeIterator:
    """
    Merges K sorted iterators using a min-heap.

    Time Complexity: O(M log K) where M = total results, K = number of sources
    Space Complexity: O(K) for the heap

    Sources are ordered newest first. When several sources hold the same key
    their chains are merged, the newer source winning on equal versions.
    """

    def __init__(self, sources: list[Iterator[tuple[bytes, VersionChain]]]) -> None:
        """
        Initialize k-way merge iterator.

        Args:
            sources: List of sorted iterators, ordered by priority (newest first).
        """
        self._heap: list[tuple[bytes, int, VersionChain]] = []
        self._source_iters: list[Iterator[tuple[bytes, VersionChain]] | None] = list(sources)

        for i in range(len(self._source_iters)):
            self._advance_source(i)

    def _advance_source(self, source_idx: int) -> None:
        source_iter = self._source_iters[source_idx]
        if source_iter is None:
            return

        try:
            key, chain = next(source_iter)
            # (key for sorting, source_idx for tie-breaking: lower = newer)
            heapq.heappush(self._heap, (key, source_idx, chain))
        except StopIteration:
            self._source_iters[source_idx] = None

    def __iter__(self) -> "KWayMergeIterator":
        return self

    def __next__(self) -> tuple[bytes, VersionChain]:
        if not self._heap:
            raise StopIteration

        key, source_idx, chain = heapq.heappop(self._heap)
        self._advance_source(source_idx)

        while self._heap and self._heap[0][0] == key:
            _, dup_idx, older = heapq.heappop(self._heap)
            chain = chain.merge(older)
            self._advance_source(dup_idx)

        return key, chain


class AsyncKWayMergeIterator(AsyncIterator[tuple[bytes, VersionChain]]):
    """
    Async counterpart of KWayMergeIterator for read paths.

    Pulls lazily from each source, so a caller that stops iterating never
    causes more reads than it consumed.
    """

    def __init__(self, sources: list[AsyncIterator[tuple[bytes, VersionChain]]]) -> None:
        self._sources: list[AsyncIterator[tuple[bytes, VersionChain]] | None] = list(sources)
        self._heap: list[tuple[bytes, int, VersionChain]] = []
        self._primed = False

    async def _advance_source(self, source_idx: int) -> None:
        source = self._sources[source_idx]
        if source is None:
            return

        try:
            key, chain = await source.__anext__()
            heapq.heappush(self._heap, (key, source_idx, chain))
        except StopAsyncIteration:
            self._sources[source_idx] = None

    def __aiter__(self) -> "AsyncKWayMergeIterator":
        return self

    async def __anext__(self) -> tuple[bytes, VersionChain]:
        if not self._primed:
            self._primed = True
            for i in range(len(self._sources)):
                await self._advance_source(i)

        if not self._heap:
            raise StopAsyncIteration

        key, source_idx, chain = heapq.heappop(self._heap)
        await self._advance_source(source_idx)

        while self._heap and self._heap[0][0] == key:
            _, dup_idx, older = heapq.heappop(self._heap)
            chain = chain.merge(older)
            await self._advance_source(dup_idx)

        return key, chain
