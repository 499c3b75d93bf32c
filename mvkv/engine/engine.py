"""
Engine - Main database engine API.
"""

import asyncio
import logging
import os
import threading
from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing, asynccontextmanager
from pathlib import Path

from mvkv.engine.compactor import SSTableCompactor
from mvkv.engine.initializer import EngineInitializer
from mvkv.engine.mem_to_sstable import MemToSSTableConverter
from mvkv.engine.merge_iterator import AsyncKWayMergeIterator, prefix_bounds
from mvkv.engine.transaction import ReadTransaction, SnapshotRegistry, WriteTransaction
from mvkv.models.containers import SortedDictContainer
from mvkv.models.exceptions import (
    ConflictError,
    SnapshotTooOldError,
    StorageIOError,
    VersionRegressionError,
)
from mvkv.models.memtable import MemTable
from mvkv.models.sstable import SSTable
from mvkv.models.value import Value, VersionChain
from mvkv.models.wal import WAL
from mvkv.models.wal_entry import Mutation, WALEntry
from mvkv.models.write_batch import WriteBatch

logger = logging.getLogger(__name__)


class Engine:
    """
    Multi-version LSM key-value engine.

    Provides:
    - read(version) / write(): snapshot-isolated transactions
    - get_at / iterate_at: versioned point and prefix reads
    - commit(batch): serialized, durable, atomic commits
    - get / put / delete / list_keys / count: one transaction per call

    Architecture:
    - Every commit is one WAL record (fsynced) applied to the active MemTable
    - Each key maps to a VersionChain; deletes add tombstone versions
    - When MemTable exceeds threshold, it's flushed to SSTable
    - Reads check MemTable first, then immutable MemTables, then SSTables
      (newest to oldest); the first source holding a version visible to the
      snapshot answers, since newer sources only hold newer versions
    - Compaction merges SSTables and reclaims versions below the watermark
      min(oldest open snapshot, last version - history_retention)
    """

    # Default threshold for MemTable rotation (128MB)
    DEFAULT_MEMTABLE_THRESHOLD = 128 * 1024 * 1024

    # Compact once this many SSTables exist, checked every interval
    DEFAULT_COMPACTION_THRESHOLD = 4
    DEFAULT_COMPACTION_INTERVAL_S = 5.0

    # Versions of history kept readable regardless of open snapshots
    DEFAULT_HISTORY_RETENTION = 1000

    WRITE_POLICIES = ("queue", "reject")

    def __init__(
        self,
        storage_dir: str,
        memtable_threshold: int = DEFAULT_MEMTABLE_THRESHOLD,
        compaction_threshold: int = DEFAULT_COMPACTION_THRESHOLD,
        compaction_interval_s: float = DEFAULT_COMPACTION_INTERVAL_S,
        compaction_enabled: bool = True,
        history_retention: int = DEFAULT_HISTORY_RETENTION,
        write_policy: str = "queue",
        detect_conflicts: bool = True,
    ) -> None:
        """
        Initialize the database engine.

        Args:
            storage_dir: Directory for persistent storage.
            memtable_threshold: Size threshold for MemTable rotation in bytes.
            compaction_threshold: Number of SSTables that triggers compaction.
            compaction_interval_s: Seconds between compaction checks.
            compaction_enabled: Start the background compaction worker.
            history_retention: Versions of history kept readable by explicit
                snapshots even when no transaction pins them.
            write_policy: "queue" waits for the commit path, "reject" raises
                ConflictError when another commit is in flight.
            detect_conflicts: Reject commits whose read keys changed after
                the transaction's snapshot.
        """
        if memtable_threshold <= 0:
            raise ValueError(f"memtable_threshold must be positive, got {memtable_threshold}")
        if memtable_threshold > 1024 * 1024 * 1024:  # 1GB maximum
            raise ValueError(
                f"memtable_threshold too large: {memtable_threshold} bytes. "
                f"Maximum 1GB to avoid OOM."
            )
        if compaction_threshold < 1:
            raise ValueError(f"compaction_threshold must be >= 1, got {compaction_threshold}")
        if compaction_interval_s <= 0:
            raise ValueError(
                f"compaction_interval_s must be positive, got {compaction_interval_s}"
            )
        if history_retention < 0:
            raise ValueError(f"history_retention must be >= 0, got {history_retention}")
        if write_policy not in self.WRITE_POLICIES:
            raise ValueError(
                f"write_policy must be one of {self.WRITE_POLICIES}, got {write_policy!r}"
            )

        if not storage_dir or not storage_dir.strip():
            raise ValueError("storage_dir cannot be empty")

        storage_dir = os.path.abspath(storage_dir)

        if not os.path.exists(storage_dir):
            parent = os.path.dirname(storage_dir)
            if os.path.exists(parent) and not os.access(parent, os.W_OK):
                raise PermissionError(
                    f"Cannot create storage_dir: {storage_dir}. "
                    f"Parent directory not writable: {parent}"
                )
        elif not os.access(storage_dir, os.W_OK):
            raise PermissionError(f"storage_dir not writable: {storage_dir}")

        self._storage_dir = storage_dir
        self._memtable_threshold = memtable_threshold
        self._compaction_threshold = compaction_threshold
        self._compaction_interval_s = compaction_interval_s
        self._compaction_enabled = compaction_enabled
        self._history_retention = history_retention
        self._write_policy = write_policy
        self._detect_conflicts = detect_conflicts

        # Current active MemTable and WAL (always valid after __init__)
        self._memtable: MemTable
        self._wal: WAL

        # Immutable MemTables pending flush (ordered oldest to newest)
        self._immutable_memtables: list[tuple[MemTable, WAL]] = []

        # On-disk SSTables (ordered newest to oldest for reads)
        self._sstables: list[SSTable] = []

        self._ss_id_seq: int = 0
        self._wal_id_seq: int = 0

        # Highest committed (and published) version
        self._last_version: int = 0

        # Snapshots below this version may miss reclaimed history
        self._oldest_readable: int = 0

        self._snapshots = SnapshotRegistry()

        # Background tasks (lazy initialized in async context)
        self._flush_queue: asyncio.Queue[tuple[MemTable, WAL, str]] | None = None
        self._flush_task: asyncio.Task | None = None
        self._compaction_task: asyncio.Task | None = None

        # Serializes commits
        self._commit_lock: asyncio.Lock | None = None

        # Protects the immutable MemTable and SSTable lists
        self._sstables_lock: asyncio.Lock | None = None

        # One compaction at a time
        self._compaction_lock: asyncio.Lock | None = None

        self._async_initialized: bool = False
        self._init_lock = threading.Lock()

        self._initialize()

    @classmethod
    def from_settings(cls, settings) -> "Engine":
        """Build an engine from startup Settings."""
        return cls(
            storage_dir=settings.data_dir,
            memtable_threshold=settings.memtable_threshold,
            compaction_threshold=settings.compaction_threshold,
            compaction_interval_s=settings.compaction_interval_s,
            compaction_enabled=settings.compaction_enabled,
            history_retention=settings.history_retention,
            write_policy=settings.write_policy,
            detect_conflicts=settings.detect_conflicts,
        )

    @classmethod
    async def create(cls, storage_dir: str, **kwargs) -> "Engine":
        """
        Async factory method to create and initialize engine.

        Returns:
            Initialized Engine instance with background workers running.
        """
        engine = cls(storage_dir, **kwargs)
        await engine._ensure_async_initialized()
        await engine._start_workers()
        return engine

    @property
    def storage_dir(self) -> str:
        return self._storage_dir

    @property
    def last_version(self) -> int:
        """Highest committed version; new snapshots observe exactly this."""
        return self._last_version

    @property
    def oldest_readable_version(self) -> int:
        return self._oldest_readable

    @property
    def snapshots(self) -> SnapshotRegistry:
        return self._snapshots

    async def _ensure_async_initialized(self) -> None:
        """
        Ensure asyncio primitives are initialized.

        Thread-safe: Uses double-checked locking with threading.Lock
        to prevent race conditions during concurrent initialization.
        """
        if self._async_initialized:
            return

        with self._init_lock:
            if not self._async_initialized:
                self._flush_queue = asyncio.Queue()
                self._commit_lock = asyncio.Lock()
                self._sstables_lock = asyncio.Lock()
                self._compaction_lock = asyncio.Lock()
                self._async_initialized = True

                # Schedule any recovered immutable memtables for flush
                for memtable, wal in self._immutable_memtables:
                    await self._schedule_flush(memtable, wal)

    def _initialize(self) -> None:
        """Initialize or recover the engine state."""
        Path(self._storage_dir).mkdir(parents=True, exist_ok=True)

        with EngineInitializer(self._storage_dir) as initializer:
            state = initializer.recover()

        self._immutable_memtables = list(state.memtables_and_wals)
        self._sstables = list(reversed(state.sstables))
        self._ss_id_seq = state.next_ss_id
        self._wal_id_seq = state.next_wal_id
        self._last_version = state.last_version

        # Earlier runs may have compacted history away; only the recovered
        # version is guaranteed complete.
        if state.sstables:
            self._oldest_readable = state.last_version

        logger.info(
            f"Opened {self._storage_dir} at version {self._last_version} "
            f"({len(self._sstables)} SSTables, "
            f"{len(self._immutable_memtables)} recovered MemTables)"
        )

        self._create_new_memtable()

    def _create_new_memtable(self) -> None:
        wal_dir = os.path.join(self._storage_dir, "wal")
        Path(wal_dir).mkdir(parents=True, exist_ok=True)

        wal_id = str(self._wal_id_seq)
        self._wal_id_seq += 1
        wal_path = os.path.join(wal_dir, f"wal_{wal_id}.wal")

        self._wal = WAL(id=wal_id, file_path=wal_path)
        self._wal.open()

        self._memtable = MemTable(SortedDictContainer())

    # -- transactions ---------------------------------------------------

    def read(self, version: int | None = None) -> ReadTransaction:
        """
        Open a read transaction.

        Args:
            version: Snapshot version; defaults to the last committed version.

        Raises:
            ValueError: If `version` is negative or not yet committed.
            SnapshotTooOldError: If history below `version` may be reclaimed.
        """
        if version is None:
            return ReadTransaction(self, self._last_version)

        if version < 0 or version > self._last_version:
            raise ValueError(
                f"version must be in [0, {self._last_version}], got {version}"
            )
        if version < self._oldest_readable:
            raise SnapshotTooOldError(version, self._oldest_readable)
        return ReadTransaction(self, version)

    def write(self) -> WriteTransaction:
        """Open a write transaction reading at the last committed version."""
        return WriteTransaction(self, self._last_version)

    def _check_write_policy(self) -> None:
        if self._write_policy == "reject" and self._commit_lock.locked():
            raise ConflictError("Another commit is in progress")

    async def commit(
        self,
        batch: WriteBatch,
        read_version: int | None = None,
        read_set: Iterable[bytes] = (),
    ) -> int:
        """
        Atomically commit a write batch under the next version.

        The commit record is fsynced to the WAL before the batch becomes
        visible. A failed commit leaves the store unchanged.

        Args:
            batch: Staged operations.
            read_version: Snapshot the writer read at, for conflict detection.
            read_set: Keys the writer read.

        Returns:
            The new version, or the last committed version for an empty batch.

        Raises:
            ConflictError: Rejected by write policy or conflict detection.
            StorageIOError: The WAL write failed.
        """
        await self._ensure_async_initialized()
        self._check_write_policy()

        async with self._commit_lock:
            if self._detect_conflicts and read_version is not None:
                await self._check_conflicts(read_set, read_version)

            if not len(batch):
                return self._last_version

            version = self._last_version + 1
            await self._commit_mutations(version, batch.mutations(version))
            return version

    async def apply_versioned(self, mutations: list[Mutation]) -> int:
        """
        Commit mutations that carry their own versions (restore path).

        Every version must exceed the last committed version, so a snapshot
        taken before the call never observes any of them.

        Returns:
            The highest version applied.

        Raises:
            VersionRegressionError: A version does not advance the store.
        """
        await self._ensure_async_initialized()
        self._check_write_policy()

        async with self._commit_lock:
            if not mutations:
                return self._last_version

            for _, value in mutations:
                if value.version <= self._last_version:
                    raise VersionRegressionError(value.version, self._last_version)

            version = max(value.version for _, value in mutations)
            await self._commit_mutations(version, mutations)
            return self._last_version

    async def _check_conflicts(self, read_set: Iterable[bytes], read_version: int) -> None:
        for key in read_set:
            value = await self._lookup(key, self._last_version)
            if value is not None and value.version > read_version:
                raise ConflictError(
                    f"Key {key!r} was committed at version {value.version} "
                    f"after snapshot {read_version}"
                )

    async def _commit_mutations(self, version: int, mutations: list[Mutation]) -> None:
        """Persist, apply and publish one batch. Caller holds the commit lock."""
        entry = WALEntry(version=version, mutations=mutations)
        try:
            await self._wal.append(entry)
        except OSError as e:
            raise StorageIOError(f"Failed to persist commit {version}: {e}") from e

        self._memtable.apply(mutations)
        self._last_version = max(self._last_version, version)

        await self._maybe_rotate_memtable()

    # -- reads ----------------------------------------------------------

    @asynccontextmanager
    async def _pinned_sources(self):
        """Snapshot immutable MemTables (newest first) and SSTables, pinning the tables."""
        await self._ensure_async_initialized()
        async with self._sstables_lock:
            immutables = [memtable for memtable, _ in reversed(self._immutable_memtables)]
            sstables = list(self._sstables)
            for sstable in sstables:
                sstable.acquire()
        try:
            yield immutables, sstables
        finally:
            for sstable in sstables:
                sstable.release()

    async def _lookup(self, key: bytes, version: int) -> Value | None:
        """Version of `key` visible at `version`, tombstones included."""
        # Read the active MemTable before capturing the rest so a concurrent
        # rotation moves it into the captured immutable list.
        value = self._memtable.get(key, version)
        if value is not None:
            return value

        async with self._pinned_sources() as (immutables, sstables):
            for memtable in immutables:
                value = memtable.get(key, version)
                if value is not None:
                    return value

            for sstable in sstables:
                try:
                    chain = await sstable.get(key)
                except OSError as e:
                    raise StorageIOError(f"Failed to read SSTable {sstable.id}: {e}") from e
                if chain is not None:
                    value = chain.visible(version)
                    if value is not None:
                        return value

        return None

    async def get_at(self, key: bytes, version: int) -> bytes | None:
        """
        Value of `key` at snapshot `version`.

        Returns:
            The value, or None if the key is absent or deleted at that version.
        """
        value = await self._lookup(key, version)
        if value is None or value.is_tombstone():
            return None
        return value.data

    async def scan_versions(self, prefix: bytes = b"") -> AsyncIterator[tuple[bytes, VersionChain]]:
        """
        Lazily yield (key, VersionChain) for every key under `prefix`.

        Chains are merged across all sources and include tombstones and
        versions newer than any particular snapshot; callers resolve them.
        """
        start, end = prefix_bounds(prefix)
        active = self._memtable.get_range(start, end)

        async with self._pinned_sources() as (immutables, sstables):
            sources = [_iterate_list(active)]
            sources.extend(memtable.async_iterator(start, end) for memtable in immutables)
            sources.extend(sstable.async_iterator(start, end) for sstable in sstables)

            try:
                async for key, chain in AsyncKWayMergeIterator(sources):
                    yield key, chain
            except OSError as e:
                raise StorageIOError(f"Failed to scan SSTables: {e}") from e

    async def iterate_at(
        self, prefix: bytes, version: int
    ) -> AsyncIterator[tuple[bytes, bytes]]:
        """
        Lazily yield live (key, value) pairs under `prefix` at snapshot `version`.

        Stopping early (closing the iterator) releases pinned SSTables and
        has no other effect.
        """
        async with aclosing(self.scan_versions(prefix)) as chains:
            async for key, chain in chains:
                value = chain.visible(version)
                if value is None or value.is_tombstone():
                    continue
                yield key, value.data

    # -- one transaction per call -----------------------------------------

    async def get(self, key: bytes) -> bytes | None:
        async with self.read() as txn:
            return await txn.get(key)

    async def put(self, key: bytes, value: bytes) -> int:
        """Store `value` under `key`. Returns the commit version."""
        async with self.write() as txn:
            txn.put(key, value)
            return await txn.commit()

    async def delete(self, key: bytes) -> int:
        """Delete `key` by committing a tombstone. Returns the commit version."""
        async with self.write() as txn:
            txn.delete(key)
            return await txn.commit()

    async def batch_put(self, kvs: list[tuple[bytes, bytes]]) -> int:
        """Store several pairs in one atomic commit. Returns the commit version."""
        async with self.write() as txn:
            for key, value in kvs:
                txn.put(key, value)
            return await txn.commit()

    async def list_keys(self, prefix: bytes = b"") -> list[bytes]:
        async with self.read() as txn:
            return await txn.keys(prefix)

    async def count(self, prefix: bytes = b"") -> int:
        """Number of live keys under `prefix`."""
        total = 0
        async with self.read() as txn:
            async with aclosing(txn.iterate(prefix)) as entries:
                async for _ in entries:
                    total += 1
        return total

    # -- flush ----------------------------------------------------------

    async def _maybe_rotate_memtable(self) -> None:
        """Rotate MemTable if size exceeds threshold."""
        if self._memtable.size_bytes() >= self._memtable_threshold:
            await self._rotate_memtable()

    async def _rotate_memtable(self) -> None:
        """Mark current MemTable as immutable and create new one."""
        self._memtable.mark_immutable()
        self._wal.mark_read_only()

        self._immutable_memtables.append((self._memtable, self._wal))
        await self._schedule_flush(self._memtable, self._wal)

        self._create_new_memtable()

    async def _start_workers(self) -> None:
        """Start the background flush and compaction workers if not running."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_worker())
        if self._compaction_enabled and (
            self._compaction_task is None or self._compaction_task.done()
        ):
            self._compaction_task = asyncio.create_task(self._compaction_worker())

    async def _flush_worker(self) -> None:
        """Background worker that processes flush queue in thread pool."""
        if self._flush_queue is None:
            return

        loop = asyncio.get_running_loop()
        while True:
            try:
                memtable, wal, ss_id = await self._flush_queue.get()

                max_retries = 3
                last_error = None

                for attempt in range(max_retries):
                    try:
                        # Returns SSTable without modifying shared state
                        sstable = await loop.run_in_executor(
                            None, self._flush_memtable_sync, memtable, wal, ss_id
                        )

                        async with self._sstables_lock:
                            self._sstables.insert(0, sstable)
                            try:
                                self._immutable_memtables.remove((memtable, wal))
                            except ValueError:
                                logger.warning(f"MemTable already flushed: {sstable.id}")

                        logger.debug(f"Flushed MemTable to SSTable {sstable.id}")
                        break
                    except Exception as e:
                        last_error = e
                        if attempt < max_retries - 1:
                            wait_time = 2 ** attempt
                            logger.warning(
                                f"Flush failed (attempt {attempt + 1}/{max_retries}): {e}. "
                                f"Retrying in {wait_time}s..."
                            )
                            await asyncio.sleep(wait_time)
                        else:
                            logger.critical(
                                f"Flush failed after {max_retries} attempts for SSTable {ss_id}: {e}"
                            )
                            raise RuntimeError(
                                f"Flush worker failed after {max_retries} retries. "
                                f"Data remains in WAL {wal.id}. Shutting down."
                            ) from last_error

                self._flush_queue.task_done()
            except asyncio.CancelledError:
                break

    async def _schedule_flush(self, memtable: MemTable, wal: WAL) -> None:
        """Schedule MemTable flush via background task."""
        if self._flush_queue is not None:
            ss_id = self._next_ss_id()
            await self._flush_queue.put((memtable, wal, ss_id))

    def _next_ss_id(self) -> str:
        # Allocated in the event loop only
        ss_id = str(self._ss_id_seq)
        self._ss_id_seq += 1
        return ss_id

    def _flush_memtable_sync(self, memtable: MemTable, wal: WAL, ss_id: str) -> SSTable:
        """
        Flush a MemTable to SSTable (runs in thread pool).
        Returns the SSTable without modifying shared state.
        """
        converter = MemToSSTableConverter(memtable=memtable, wal=wal, storage_dir=self._storage_dir)
        return converter.initiate(ss_id)

    # -- compaction -----------------------------------------------------

    def _reclaim_watermark(self) -> int:
        watermark = self._last_version - self._history_retention
        oldest = self._snapshots.oldest()
        if oldest is not None:
            watermark = min(watermark, oldest)
        return max(0, watermark)

    async def _compaction_worker(self) -> None:
        """Periodically compact once enough SSTables have accumulated."""
        while True:
            try:
                await asyncio.sleep(self._compaction_interval_s)
                if len(self._sstables) >= self._compaction_threshold:
                    await self.compact()
            except asyncio.CancelledError:
                break
            except Exception:
                # Inputs stay in place on failure; the next round retries.
                logger.exception("Compaction failed")

    async def compact(self) -> bool:
        """
        Merge every SSTable into one, reclaiming unreachable versions.

        Returns:
            True if a compaction ran.
        """
        await self._ensure_async_initialized()

        async with self._compaction_lock:
            async with self._sstables_lock:
                inputs = list(self._sstables)
                if not inputs:
                    return False

                watermark = self._reclaim_watermark()
                self._oldest_readable = max(self._oldest_readable, watermark)
                ss_id = self._next_ss_id()
                for sstable in inputs:
                    sstable.acquire()

            try:
                compactor = SSTableCompactor(inputs, self._storage_dir, watermark)
                loop = asyncio.get_running_loop()
                compacted = await loop.run_in_executor(None, compactor.compact, ss_id)

                async with self._sstables_lock:
                    remaining = [sst for sst in self._sstables if sst not in inputs]
                    self._sstables = remaining + [compacted]

                for sstable in inputs:
                    sstable.mark_obsolete()
            finally:
                for sstable in inputs:
                    sstable.release()

        logger.info(
            f"Compacted {len(inputs)} SSTables into {ss_id} "
            f"({compacted.size()} keys, watermark {watermark})"
        )
        return True

    # -- lifecycle ------------------------------------------------------

    async def close(self) -> None:
        """Async close the engine, flushing any pending data."""
        if self._compaction_task:
            self._compaction_task.cancel()
            try:
                await self._compaction_task
            except asyncio.CancelledError:
                pass

        if self._memtable.size() > 0:
            await self._rotate_memtable()

        if self._flush_queue and self._flush_task and not self._flush_task.done():
            await self._flush_queue.join()

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            except RuntimeError as e:
                # Leftover MemTables are force-flushed below
                logger.error(f"Flush worker had stopped: {e}")

        if self._immutable_memtables:
            logger.critical(
                f"Forcing flush of {len(self._immutable_memtables)} memtables on shutdown"
            )
            loop = asyncio.get_running_loop()
            failed_flushes = []

            for memtable, wal in list(self._immutable_memtables):
                try:
                    sstable = await loop.run_in_executor(
                        None, self._flush_memtable_sync, memtable, wal, self._next_ss_id()
                    )
                    self._sstables.insert(0, sstable)
                    self._immutable_memtables.remove((memtable, wal))
                except Exception as e:
                    failed_flushes.append((wal.id, e))

            if failed_flushes:
                error_details = "; ".join(f"WAL {wal_id}: {err}" for wal_id, err in failed_flushes)
                raise RuntimeError(
                    f"Failed to flush {len(failed_flushes)} memtables on shutdown. "
                    f"Their WALs are kept for recovery. Errors: {error_details}"
                )

        for sstable in self._sstables:
            sstable.close()

        # The active WAL only holds commits made while shutting down
        if self._memtable.size() == 0:
            self._wal.destroy()
        else:
            self._wal.close()

    async def __aenter__(self) -> "Engine":
        await self._ensure_async_initialized()
        await self._start_workers()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def _iterate_list(items: list[tuple[bytes, VersionChain]]) -> AsyncIterator[tuple[bytes, VersionChain]]:
    for item in items:
        yield item
