import asyncio
import logging
import os
import zlib
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from mvkv.models.exceptions import WALCorruptionError
from mvkv.models.wal_entry import WALEntry

logger = logging.getLogger(__name__)


class WAL:
    """
    Write-Ahead Log for durability.

    Every commit appends one framed record and fsyncs before the commit is
    acknowledged. Supports iteration for recovery after crashes.
    """

    def __init__(self, id: str, file_path: str) -> None:
        """
        Initialize WAL.

        Args:
            id: Unique identifier for this WAL.
            file_path: Path to the WAL file.
        """
        self.id = id
        self.file_path = file_path
        self._file: BinaryIO | None = None
        self._read_only: bool = False
        self._last_version: int = 0
        self._lock = asyncio.Lock()

    @property
    def last_version(self) -> int:
        """Highest commit version appended through this instance or found on open."""
        return self._last_version

    def open(self, read_only: bool = False) -> None:
        """
        Open the WAL file.

        Args:
            read_only: If True, open for reading only.
        """
        self._read_only = read_only
        mode = "rb" if read_only else "ab+"
        Path(self.file_path).parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.file_path, mode)

        if os.path.getsize(self.file_path) > 0:
            self._last_version = self._scan_last_version()

    def mark_read_only(self) -> None:
        if self._file and not self._read_only:
            self._perform_flush()
            self._file.close()
            self._file = open(self.file_path, "rb")
            self._read_only = True

    def is_read_only(self) -> bool:
        return self._read_only

    def _perform_flush(self) -> None:
        """Performs the flushing to disk from Python user space -> OS kernel -> Disk"""
        self._file.flush()
        # Use fdatasync if available (Linux), fallback to fsync (macOS/Windows)
        _sync_data = getattr(os, "fdatasync", os.fsync)
        _sync_data(self._file.fileno())

    def close(self) -> None:
        """Close the WAL file, flushing if writable."""
        if self._file:
            if not self._read_only:
                self._perform_flush()
            self._file.close()
            self._file = None

    @staticmethod
    def frame(entry: WALEntry) -> bytes:
        """Frame an entry as [length:4][entry_data][crc32:4]."""
        entry_bytes = bytes(entry)
        checksum = zlib.crc32(entry_bytes) & 0xFFFFFFFF
        return len(entry_bytes).to_bytes(4, "big") + entry_bytes + checksum.to_bytes(4, "big")

    async def append(self, entry: WALEntry) -> None:
        """
        Append a commit record and make it durable.

        Returns only after the record is fsynced. If the write or the sync
        fails, the file is truncated back to its previous length and the
        OSError propagates, so the log never holds a half-written record
        followed by later ones.

        Raises:
            RuntimeError: If WAL is read-only or not open.
            OSError: If the write or sync fails.
        """
        if self._read_only:
            raise RuntimeError("Cannot append to read-only WAL")
        if self._file is None:
            raise RuntimeError("WAL is not open")

        record = self.frame(entry)
        loop = asyncio.get_running_loop()

        async with self._lock:
            self._file.seek(0, os.SEEK_END)
            start = self._file.tell()
            try:
                self._file.write(record)
                await loop.run_in_executor(None, self._perform_flush)
            except OSError:
                self._rollback(start)
                raise

        self._last_version = max(self._last_version, entry.version)

    def _rollback(self, offset: int) -> None:
        try:
            self._file.truncate(offset)
            self._file.flush()
        except OSError as e:
            logger.error(f"Failed to roll back WAL {self.id} to offset {offset}: {e}")

    def destroy(self) -> None:
        """Delete the WAL file and close this instance."""
        self.close()
        if os.path.exists(self.file_path):
            os.remove(self.file_path)

    def __enter__(self) -> "WAL":
        if self._file is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __iter__(self) -> Iterator[WALEntry]:
        """Iterate over all entries in the WAL."""
        return _WALIterator(self.file_path)

    def _scan_last_version(self) -> int:
        last_version = 0
        for entry in self:
            last_version = max(last_version, entry.version)
        return last_version


class _WALIterator(Iterator[WALEntry]):
    """
    Iterator over WAL entries.

    A short read at the tail is a torn write from a crash and ends the
    iteration; a checksum mismatch on a complete record raises.
    """

    def __init__(self, file_path: str) -> None:
        self._file_path = file_path
        self._file: BinaryIO | None = None
        if os.path.exists(file_path):
            self._file = open(file_path, "rb")

    def __iter__(self) -> Iterator[WALEntry]:
        return self

    def __next__(self) -> WALEntry:
        if self._file is None:
            raise StopIteration

        try:
            entry_offset = self._file.tell()

            length_bytes = self._file.read(4)
            if len(length_bytes) < 4:
                self._torn(entry_offset, length_bytes)

            length = int.from_bytes(length_bytes, "big")
            entry_bytes = self._file.read(length)
            if len(entry_bytes) < length:
                self._torn(entry_offset, entry_bytes)

            checksum_bytes = self._file.read(4)
            if len(checksum_bytes) < 4:
                self._torn(entry_offset, checksum_bytes)

            expected_checksum = int.from_bytes(checksum_bytes, "big")
            actual_checksum = zlib.crc32(entry_bytes) & 0xFFFFFFFF

            # Fail fast on mismatch
            if expected_checksum != actual_checksum:
                self.close()
                raise WALCorruptionError(
                    expected=expected_checksum,
                    actual=actual_checksum,
                    entry_offset=entry_offset,
                )

            return WALEntry.from_bytes(entry_bytes)
        except (StopIteration, WALCorruptionError):
            raise
        except Exception:
            self.close()
            raise

    def _torn(self, offset: int, partial: bytes) -> None:
        if partial:
            logger.warning(f"Ignoring torn WAL record at offset {offset} in {self._file_path}")
        self.close()
        raise StopIteration

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    def __del__(self) -> None:
        self.close()

    def __enter__(self) -> "_WALIterator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
