"""
Transactions over the engine: snapshot-isolated reads, serialized writes.
"""

import threading
from collections.abc import AsyncIterator
from contextlib import aclosing
from enum import Enum
from typing import TYPE_CHECKING

from mvkv.models.exceptions import TransactionClosedError
from mvkv.models.write_batch import WriteBatch

if TYPE_CHECKING:
    from mvkv.engine.engine import Engine


class TxnState(Enum):
    """Lifecycle of a transaction. COMMITTED and ABORTED are terminal."""

    OPEN = "open"
    COMMITTED = "committed"
    ABORTED = "aborted"


class SnapshotRegistry:
    """
    Counts open snapshots per version.

    Opening and closing transactions only touches this registry, which has
    its own lock so it never waits on the commit path. Compaction reads the
    oldest pinned version to decide what it may reclaim.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pins: dict[int, int] = {}

    def pin(self, version: int) -> None:
        with self._lock:
            self._pins[version] = self._pins.get(version, 0) + 1

    def unpin(self, version: int) -> None:
        with self._lock:
            count = self._pins.get(version, 0)
            if count <= 1:
                self._pins.pop(version, None)
            else:
                self._pins[version] = count - 1

    def oldest(self) -> int | None:
        with self._lock:
            return min(self._pins) if self._pins else None

    def __len__(self) -> int:
        with self._lock:
            return sum(self._pins.values())


class _Transaction:
    """Shared state of read and write transactions: a pinned snapshot."""

    def __init__(self, engine: "Engine", version: int) -> None:
        self._engine = engine
        self._version = version
        self._state = TxnState.OPEN
        engine.snapshots.pin(version)

    @property
    def version(self) -> int:
        """Snapshot version every read in this transaction observes."""
        return self._version

    @property
    def state(self) -> TxnState:
        return self._state

    def _check_open(self) -> None:
        if self._state is not TxnState.OPEN:
            raise TransactionClosedError(f"Transaction is {self._state.value}")

    def _finish(self, state: TxnState) -> None:
        self._state = state
        self._engine.snapshots.unpin(self._version)


class ReadTransaction(_Transaction):
    """
    Read-only view of the store at a fixed version.

    Never blocks and is never blocked by writers. Closing it moves it to
    COMMITTED and releases its pin so compaction may reclaim old versions.
    """

    async def get(self, key: bytes) -> bytes | None:
        """Value of `key` at this snapshot, None if absent or deleted."""
        self._check_open()
        return await self._engine.get_at(key, self._version)

    def iterate(self, prefix: bytes = b"") -> AsyncIterator[tuple[bytes, bytes]]:
        """
        Lazily iterate live (key, value) pairs under `prefix` in key order.

        Re-invoking with the same transaction restarts from the same
        snapshot. Close the iterator (or wrap it in contextlib.aclosing) to
        stop early.
        """
        self._check_open()
        return self._engine.iterate_at(prefix, self._version)

    async def keys(self, prefix: bytes = b"") -> list[bytes]:
        async with aclosing(self.iterate(prefix)) as entries:
            return [key async for key, _ in entries]

    def close(self) -> None:
        if self._state is TxnState.OPEN:
            self._finish(TxnState.COMMITTED)

    async def __aenter__(self) -> "ReadTransaction":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class WriteTransaction(_Transaction):
    """
    Stages puts and deletes against a snapshot and commits them atomically.

    Reads see the transaction's own staged writes first. Keys read are
    recorded so the engine can reject the commit when one of them changed
    after the snapshot (optimistic conflict detection).

    Used as an async context manager it commits on a clean exit and aborts
    when the block raises.
    """

    def __init__(self, engine: "Engine", version: int) -> None:
        super().__init__(engine, version)
        self._batch = WriteBatch()
        self._read_set: set[bytes] = set()

    @property
    def batch(self) -> WriteBatch:
        return self._batch

    async def get(self, key: bytes) -> bytes | None:
        self._check_open()
        staged, data = self._batch.lookup(key)
        if staged:
            return data
        self._read_set.add(key)
        return await self._engine.get_at(key, self._version)

    def put(self, key: bytes, value: bytes) -> None:
        self._check_open()
        self._batch.put(key, value)

    def delete(self, key: bytes) -> None:
        self._check_open()
        self._batch.delete(key)

    async def commit(self) -> int:
        """
        Commit the staged operations.

        Returns:
            The commit version (the last committed version if nothing was staged).

        Raises:
            ConflictError: The commit was rejected; retry the whole transaction.
            StorageIOError: The commit record could not be made durable.
        """
        self._check_open()
        try:
            version = await self._engine.commit(
                self._batch, read_version=self._version, read_set=self._read_set
            )
        except BaseException:
            self.abort()
            raise
        self._finish(TxnState.COMMITTED)
        return version

    def abort(self) -> None:
        """Discard staged operations. No-op once the transaction is finished."""
        if self._state is TxnState.OPEN:
            self._batch.clear()
            self._finish(TxnState.ABORTED)

    async def __aenter__(self) -> "WriteTransaction":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._state is not TxnState.OPEN:
            return
        if exc_type is None:
            await self.commit()
        else:
            self.abort()
