"""
SortedContainer abstract base class for the MemTable's backing index.
"""

from abc import abstractmethod
from typing import Any

from mvkv.interfaces.range_iterable import RangeIterable


class SortedContainer(RangeIterable):
    """
    Byte-ordered map from key to that key's version chain.

    The MemTable only ever adds chains and mutates them in place, so
    `put` is called once per distinct key. Iteration order is plain
    lexicographic byte order, which is also the SSTable and backup order.

    Implementations:
    - SortedDictContainer: backed by sortedcontainers.SortedDict
    """

    @abstractmethod
    def put(self, key: bytes, value: Any) -> None:
        """Insert or replace the entry for `key`. O(log N)."""

    @abstractmethod
    def get(self, key: bytes) -> Any | None:
        """Entry for `key`, or None."""

    @abstractmethod
    def delete(self, key: bytes) -> bool:
        """
        Drop the entry for `key` outright.

        Not a logical delete: the engine deletes by adding a tombstone
        version. Returns whether the key was present.
        """

    @abstractmethod
    def has(self, key: bytes) -> bool:
        pass

    @abstractmethod
    def size(self) -> int:
        """Number of distinct keys."""
