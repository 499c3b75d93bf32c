"""
Backup and restore of the key space as a self-delimiting binary stream.

Stream layout:

    header: [magic:4 = b"MVKV"][format_version:2][flags:2]
    record: [key_len:4][value_len:4][version:8][tombstone:1][key][value][crc32:4]

The CRC covers every byte of the record before it. The stream ends after
the last record; a clean end of stream between records is the only valid
terminator.
"""

import inspect
import logging
import zlib
from collections.abc import AsyncIterator, Iterator
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mvkv.models.exceptions import (
    BackupFormatError,
    StorageIOError,
    TruncatedStreamError,
    VersionRegressionError,
)
from mvkv.models.value import Value, VersionChain

if TYPE_CHECKING:
    from mvkv.engine.engine import Engine

logger = logging.getLogger(__name__)

MAGIC = b"MVKV"
FORMAT_VERSION = 1
FLAG_HISTORY = 0x1

HEADER_SIZE = 8
RECORD_HEADER_SIZE = 17
CRC_SIZE = 4

# Records per restore sub-batch
DEFAULT_RESTORE_BATCH_SIZE = 10


@dataclass(frozen=True)
class BackupRecord:
    """One version of one key as it appears in a backup stream."""

    key: bytes
    value: bytes
    version: int
    tombstone: bool = False

    @classmethod
    def from_value(cls, key: bytes, value: Value) -> "BackupRecord":
        if value.is_tombstone():
            return cls(key=key, value=b"", version=value.version, tombstone=True)
        return cls(key=key, value=value.data, version=value.version)

    def to_value(self, version: int | None = None) -> Value:
        """Engine value for this record, optionally under a remapped version."""
        if version is None:
            version = self.version
        if self.tombstone:
            return Value.tombstone(version)
        return Value.regular(self.value, version)

    def __bytes__(self) -> bytes:
        body = (
            len(self.key).to_bytes(4, "big")
            + len(self.value).to_bytes(4, "big")
            + self.version.to_bytes(8, "big")
            + (b"\x01" if self.tombstone else b"\x00")
            + self.key
            + self.value
        )
        checksum = zlib.crc32(body) & 0xFFFFFFFF
        return body + checksum.to_bytes(4, "big")


def encode_header(history: bool = False) -> bytes:
    flags = FLAG_HISTORY if history else 0
    return MAGIC + FORMAT_VERSION.to_bytes(2, "big") + flags.to_bytes(2, "big")


class BackupWriter:
    """
    Writes a backup stream to `out`.

    `out` is either a binary file-like object with a synchronous `write`, or
    a stream writer whose `drain()` coroutine applies backpressure (such as
    asyncio.StreamWriter). Returns byte counts so callers can report size.
    """

    def __init__(self, out: Any, history: bool = False) -> None:
        self._out = out
        self._history = history
        self._drain = getattr(out, "drain", None)
        self.bytes_written = 0
        self.records_written = 0

    async def _write(self, data: bytes) -> int:
        try:
            result = self._out.write(data)
            if inspect.isawaitable(result):
                await result
            if self._drain is not None:
                await self._drain()
        except (OSError, ValueError) as e:
            # ValueError: the sink was closed under us.
            raise StorageIOError(f"Failed to write backup stream: {e}") from e

        self.bytes_written += len(data)
        return len(data)

    async def write_header(self) -> int:
        return await self._write(encode_header(self._history))

    async def write_record(self, record: BackupRecord) -> int:
        written = await self._write(bytes(record))
        self.records_written += 1
        return written


class BackupReader(AsyncIterator[BackupRecord]):
    """
    Decodes a backup stream record by record.

    `in_stream.read(n)` may be synchronous (files, io.BytesIO) or a coroutine
    (asyncio.StreamReader). A record is returned only once it has been read
    in full and its checksum verified.

    Raises:
        BackupFormatError: Bad header or corrupt record.
        TruncatedStreamError: The stream ends inside the header or a record.
        StorageIOError: The underlying stream failed.
    """

    def __init__(self, in_stream: Any) -> None:
        self._stream = in_stream
        self._offset = 0
        self.history: bool | None = None

    async def _read(self, n: int) -> bytes:
        try:
            chunk = self._stream.read(n)
            if inspect.isawaitable(chunk):
                chunk = await chunk
        except OSError as e:
            raise StorageIOError(f"Failed to read backup stream: {e}") from e
        return bytes(chunk) if chunk else b""

    async def _read_exact(self, n: int) -> bytes:
        """Read up to `n` bytes, stopping early only at end of stream."""
        buf = bytearray()
        while len(buf) < n:
            chunk = await self._read(n - len(buf))
            if not chunk:
                break
            buf.extend(chunk)
        return bytes(buf)

    async def _read_required(self, n: int, start: int) -> bytes:
        data = await self._read_exact(n)
        self._offset += len(data)
        if len(data) < n:
            raise TruncatedStreamError(start, n, len(data))
        return data

    async def read_header(self) -> bool:
        """
        Read and validate the stream header.

        Returns:
            Whether the stream carries full version history.
        """
        header = await self._read_required(HEADER_SIZE, 0)
        if header[:4] != MAGIC:
            raise BackupFormatError(f"Not a backup stream (magic {header[:4]!r})")

        format_version = int.from_bytes(header[4:6], "big")
        if format_version != FORMAT_VERSION:
            raise BackupFormatError(f"Unsupported backup format version {format_version}")

        flags = int.from_bytes(header[6:8], "big")
        self.history = bool(flags & FLAG_HISTORY)
        return self.history

    def __aiter__(self) -> "BackupReader":
        return self

    async def __anext__(self) -> BackupRecord:
        if self.history is None:
            await self.read_header()

        start = self._offset
        head = await self._read_exact(RECORD_HEADER_SIZE)
        self._offset += len(head)
        if not head:
            raise StopAsyncIteration
        if len(head) < RECORD_HEADER_SIZE:
            raise TruncatedStreamError(start, RECORD_HEADER_SIZE, len(head))

        key_len = int.from_bytes(head[0:4], "big")
        value_len = int.from_bytes(head[4:8], "big")
        version = int.from_bytes(head[8:16], "big")
        tombstone_flag = head[16]

        if key_len == 0:
            raise BackupFormatError(f"Empty key in record at offset {start}")
        if tombstone_flag not in (0, 1):
            raise BackupFormatError(
                f"Invalid tombstone flag {tombstone_flag} in record at offset {start}"
            )
        if tombstone_flag and value_len:
            raise BackupFormatError(f"Tombstone with a value in record at offset {start}")

        payload = await self._read_required(key_len + value_len + CRC_SIZE, start)

        body = head + payload[:-CRC_SIZE]
        expected = int.from_bytes(payload[-CRC_SIZE:], "big")
        actual = zlib.crc32(body) & 0xFFFFFFFF
        if actual != expected:
            raise BackupFormatError(
                f"Checksum mismatch in record at offset {start}: "
                f"expected 0x{expected:08x}, got 0x{actual:08x}"
            )

        return BackupRecord(
            key=payload[:key_len],
            value=payload[key_len : key_len + value_len],
            version=version,
            tombstone=bool(tombstone_flag),
        )


def _entries(
    chain: VersionChain, snapshot: int, since_version: int, history: bool
) -> Iterator[Value]:
    if history:
        for value in chain:
            if since_version < value.version <= snapshot:
                yield value
        return

    value = chain.visible(snapshot)
    if value is not None and value.version > since_version:
        yield value


async def backup(
    engine: "Engine", out: Any, since_version: int = 0, history: bool = False
) -> int:
    """
    Write the store's contents to `out`.

    Runs against a single read snapshot, so concurrent commits never show
    up partially. Records are emitted in key-then-version order and include
    tombstones. By default only each key's latest version at the snapshot
    is written; `history=True` writes every retained version.

    Args:
        engine: Store to back up.
        out: Binary writable, sync or with an async `drain`.
        since_version: Only versions above this are written; 0 is a full backup.
        history: Include every retained version instead of the latest only.

    Returns:
        Number of bytes written.
    """
    if since_version < 0:
        raise ValueError(f"since_version must be >= 0, got {since_version}")

    writer = BackupWriter(out, history=history)

    async with engine.read() as txn:
        await writer.write_header()
        async with aclosing(engine.scan_versions()) as chains:
            async for key, chain in chains:
                for value in _entries(chain, txn.version, since_version, history):
                    await writer.write_record(BackupRecord.from_value(key, value))

    logger.info(
        f"Backup at version {txn.version} (since {since_version}): "
        f"{writer.records_written} records, {writer.bytes_written} bytes"
    )
    return writer.bytes_written


async def restore(
    engine: "Engine",
    in_stream: Any,
    max_pending_batch_size: int = DEFAULT_RESTORE_BATCH_SIZE,
    preserve_versions: bool = False,
) -> int:
    """
    Replay a backup stream into `engine`.

    Records are committed in sub-batches of at most `max_pending_batch_size`.
    A record is staged only after it was read in full and verified, so a
    truncated or corrupt stream leaves exactly the sub-batches committed
    before the bad record.

    By default every sub-batch is committed under a fresh version, which
    makes replaying a latest-only stream idempotent. With
    `preserve_versions=True` records keep their versions, and every one of
    them must be above the store's last committed version. The stream is
    key-ordered, so it is read in full first and then committed in version
    order; a bad stream in this mode applies nothing.

    Returns:
        Number of records applied.

    Raises:
        TruncatedStreamError: The stream ended inside a record.
        BackupFormatError: Bad header or corrupt record.
        VersionRegressionError: A preserved version does not advance the store.
        StorageIOError: Reading the stream or committing failed.
    """
    if max_pending_batch_size <= 0:
        raise ValueError(
            f"max_pending_batch_size must be positive, got {max_pending_batch_size}"
        )

    reader = BackupReader(in_stream)
    await reader.read_header()

    if preserve_versions:
        applied = await _restore_versioned(engine, reader, max_pending_batch_size)
    else:
        applied = await _restore_remapped(engine, reader, max_pending_batch_size)

    logger.info(f"Restored {applied} records, store at version {engine.last_version}")
    return applied


async def _restore_remapped(engine: "Engine", reader: BackupReader, limit: int) -> int:
    pending: list[BackupRecord] = []
    applied = 0

    async for record in reader:
        # A remapped sub-batch has one version, so each key may appear once.
        if pending and (len(pending) >= limit or pending[-1].key == record.key):
            applied += await _commit_remapped(engine, pending)
            pending = []
        pending.append(record)

    if pending:
        applied += await _commit_remapped(engine, pending)
    return applied


async def _commit_remapped(engine: "Engine", records: list[BackupRecord]) -> int:
    async with engine.write() as txn:
        for record in records:
            if record.tombstone:
                txn.delete(record.key)
            else:
                txn.put(record.key, record.value)
    return len(records)


async def _restore_versioned(engine: "Engine", reader: BackupReader, limit: int) -> int:
    records: list[BackupRecord] = []
    async for record in reader:
        if record.version <= engine.last_version:
            raise VersionRegressionError(record.version, engine.last_version)
        records.append(record)

    records.sort(key=lambda record: (record.version, record.key))

    applied = 0
    for group in _version_batches(records, limit):
        await engine.apply_versioned([(record.key, record.to_value()) for record in group])
        applied += len(group)
    return applied


def _version_batches(
    records: list[BackupRecord], limit: int
) -> Iterator[list[BackupRecord]]:
    """
    Split version-sorted records into sub-batches of about `limit` records.

    Records sharing a version always land in the same sub-batch, so each
    sub-batch starts above the highest version of the one before it.
    """
    pending: list[BackupRecord] = []
    for record in records:
        if len(pending) >= limit and pending[-1].version != record.version:
            yield pending
            pending = []
        pending.append(record)

    if pending:
        yield pending
