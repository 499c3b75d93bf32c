"""
SSTable - Sorted String Table for on-disk storage of version chains.
"""

import asyncio
import bisect
import logging
import os
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import BinaryIO

from mvkv.interfaces.range_iterable import RangeIterable
from mvkv.models.value import VersionChain

logger = logging.getLogger(__name__)

# [index_offset:8][max_version:8]
FOOTER_SIZE = 16


class SSTable(RangeIterable):
    """
    Sorted String Table - immutable on-disk sorted storage of version chains.

    Structure:
    - Data section: [key_len:4][key][chain_len:4][chain] per key, sorted
    - Index: key -> offset mapping for binary search
    - Footer: index offset and the highest version stored in the table

    Readers pin a table with acquire()/release(). A table replaced by
    compaction is marked obsolete and its file is removed once the last
    reader releases it.
    """

    def __init__(self, id: str, file_path: str) -> None:
        """
        Initialize SSTable.

        Args:
            id: Unique identifier for this SSTable.
            file_path: Path to the SSTable file.
        """
        self.id = id
        self.file_path = file_path
        self._file: BinaryIO | None = None
        self._index: dict[bytes, int] = {}  # key -> offset
        self._sorted_keys: list[bytes] = []
        self._max_version: int = 0
        self._refs: int = 0
        self._obsolete: bool = False

    @property
    def max_version(self) -> int:
        return self._max_version

    def open(self) -> None:
        """Open the SSTable file and load index."""
        if not os.path.exists(self.file_path):
            raise FileNotFoundError(f"SSTable not found: {self.file_path}")

        self._file = open(self.file_path, "rb")
        self._load_index()

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    def acquire(self) -> None:
        self._refs += 1

    def release(self) -> None:
        self._refs -= 1
        if self._refs <= 0 and self._obsolete:
            self._destroy()

    def mark_obsolete(self) -> None:
        """Schedule removal once no reader holds this table."""
        self._obsolete = True
        if self._refs <= 0:
            self._destroy()

    def _destroy(self) -> None:
        self.close()
        try:
            os.remove(self.file_path)
        except FileNotFoundError:
            pass
        logger.debug(f"Removed obsolete SSTable {self.id}")

    def has(self, key: bytes) -> bool:
        return key in self._index

    def size(self) -> int:
        return len(self._sorted_keys)

    async def get(self, key: bytes) -> VersionChain | None:
        """
        Retrieve the version chain of a key - runs file I/O in thread pool.

        Returns:
            The VersionChain if found, None otherwise.
        """
        if key not in self._index:
            return None

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_sync, key)

    def _get_sync(self, key: bytes) -> VersionChain | None:
        """Sync implementation for thread pool execution (thread-safe)."""
        offset = self._index.get(key)
        if offset is None:
            return None
        entry = self._read_entry_at(offset)
        if entry is None:
            return None
        entry_key, chain = entry
        return chain if entry_key == key else None

    async def get_range(
        self, start: bytes | None, end: bytes | None
    ) -> list[tuple[bytes, VersionChain]]:
        """Get all (key, chain) pairs in range [start, end)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: list(self.iterator(start, end)))

    def __enter__(self) -> "SSTable":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def iterator(
        self, start: bytes | None = None, end: bytes | None = None
    ) -> Iterator[tuple[bytes, VersionChain]]:
        """Iterate over entries in range [start, end)."""
        for key in self._keys_in_range(start, end):
            chain = self._get_sync(key)
            if chain is not None:
                yield key, chain

    def async_iterator(
        self, start: bytes | None = None, end: bytes | None = None
    ) -> AsyncIterator[tuple[bytes, VersionChain]]:
        """Async iterate over entries in range [start, end)."""
        return _AsyncSSTableIterator(self, self._keys_in_range(start, end))

    def _keys_in_range(self, start: bytes | None, end: bytes | None) -> list[bytes]:
        # Binary search in pre-sorted keys: O(log K)
        start_idx = 0 if start is None else bisect.bisect_left(self._sorted_keys, start)
        end_idx = (
            len(self._sorted_keys)
            if end is None
            else bisect.bisect_left(self._sorted_keys, end)
        )
        return self._sorted_keys[start_idx:end_idx]

    def _load_index(self) -> None:
        """Load the index and footer from the file."""
        if self._file is None:
            return

        self._file.seek(-FOOTER_SIZE, os.SEEK_END)
        footer = self._file.read(FOOTER_SIZE)
        index_offset = int.from_bytes(footer[0:8], "big")
        self._max_version = int.from_bytes(footer[8:16], "big")

        self._file.seek(index_offset)
        num_entries = int.from_bytes(self._file.read(4), "big")

        self._index = {}
        keys = []
        for _ in range(num_entries):
            key_len = int.from_bytes(self._file.read(4), "big")
            key = self._file.read(key_len)
            offset = int.from_bytes(self._file.read(8), "big")
            self._index[key] = offset
            keys.append(key)

        # Index is written in key order
        self._sorted_keys = keys

    def _read_entry_at(self, offset: int) -> tuple[bytes, VersionChain] | None:
        """
        Read entry at specific offset using pread (thread-safe).

        Uses os.pread which doesn't modify the file position, allowing
        concurrent reads from multiple threads.
        """
        if self._file is None:
            return None

        fd = self._file.fileno()

        key_len_bytes = os.pread(fd, 4, offset)
        if len(key_len_bytes) < 4:
            return None
        key_len = int.from_bytes(key_len_bytes, "big")
        offset += 4

        key = os.pread(fd, key_len, offset)
        if len(key) < key_len:
            return None
        offset += key_len

        chain_len_bytes = os.pread(fd, 4, offset)
        if len(chain_len_bytes) < 4:
            return None
        chain_len = int.from_bytes(chain_len_bytes, "big")
        offset += 4

        chain_bytes = os.pread(fd, chain_len, offset)
        if len(chain_bytes) < chain_len:
            return None

        return key, VersionChain.from_bytes(chain_bytes)

    @staticmethod
    def write(
        file_path: str, entries: Iterator[tuple[bytes, VersionChain]], max_version: int = 0
    ) -> int:
        """
        Write sorted entries to `file_path` atomically.

        Data goes to `<file_path>.tmp`, is fsynced, then renamed into place.
        Empty chains are skipped. The footer records the highest version
        written, or `max_version` when that is higher.

        Returns:
            The number of keys written.
        """
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        temp_path = file_path + ".tmp"

        index: list[tuple[bytes, int]] = []

        with open(temp_path, "wb") as f:
            for key, chain in entries:
                if not len(chain):
                    continue
                index.append((key, f.tell()))

                chain_bytes = bytes(chain)
                f.write(len(key).to_bytes(4, "big"))
                f.write(key)
                f.write(len(chain_bytes).to_bytes(4, "big"))
                f.write(chain_bytes)

                max_version = max(max_version, chain.latest().version)

            index_offset = f.tell()
            f.write(len(index).to_bytes(4, "big"))
            for key, offset in index:
                f.write(len(key).to_bytes(4, "big"))
                f.write(key)
                f.write(offset.to_bytes(8, "big"))

            f.write(index_offset.to_bytes(8, "big"))
            f.write(max_version.to_bytes(8, "big"))

            # Ensure durability before rename
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, file_path)
        return len(index)

    @staticmethod
    def create(
        id: str,
        file_path: str,
        entries: Iterator[tuple[bytes, VersionChain]],
        max_version: int = 0,
    ) -> "SSTable":
        """
        Create a new SSTable from sorted entries and open it.

        Args:
            id: Unique identifier.
            file_path: Path for the new file.
            entries: Iterator of (key, chain) tuples in sorted order.
            max_version: Lower bound for the footer's max version.
        """
        SSTable.write(file_path, entries, max_version)
        sstable = SSTable(id, file_path)
        sstable.open()
        return sstable


class _AsyncSSTableIterator(AsyncIterator[tuple[bytes, VersionChain]]):
    """
    Async iterator for range queries on SSTable.

    File I/O runs in thread pool via run_in_executor.
    Key filtering and iteration control stay in the event loop.
    """

    def __init__(self, sstable: SSTable, keys: list[bytes]) -> None:
        self._sstable = sstable
        self._keys = keys
        self._pos = 0

    def __aiter__(self) -> "_AsyncSSTableIterator":
        return self

    async def __anext__(self) -> tuple[bytes, VersionChain]:
        loop = asyncio.get_running_loop()
        while self._pos < len(self._keys):
            key = self._keys[self._pos]
            self._pos += 1

            chain = await loop.run_in_executor(None, self._sstable._get_sync, key)
            if chain is not None:
                return key, chain

        raise StopAsyncIteration
