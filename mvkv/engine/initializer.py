"""
EngineInitializer - Handle startup and crash recovery.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from mvkv.engine.recoverer import MemTableRecoverer
from mvkv.models.containers import SortedDictContainer
from mvkv.models.memtable import MemTable
from mvkv.models.sstable import SSTable
from mvkv.models.wal import WAL

logger = logging.getLogger(__name__)

_WAL_RE = re.compile(r"wal_(\d+)\.wal$")
_SST_RE = re.compile(r"(\d+)\.sst$")


@dataclass
class RecoveredState:
    """Everything the engine needs to resume after a restart."""

    memtables_and_wals: list[tuple[MemTable, WAL]] = field(default_factory=list)
    sstables: list[SSTable] = field(default_factory=list)  # oldest first
    next_ss_id: int = 0
    next_wal_id: int = 0
    last_version: int = 0


class EngineInitializer:
    """
    Handles engine initialization and crash recovery.

    Responsibilities:
    - Discover existing WAL and SSTable files
    - Recover MemTables from WALs
    - Restore the last committed version
    - Track the next SSTable and WAL IDs
    """

    def __init__(self, storage_dir: str) -> None:
        self.storage_dir = storage_dir
        self._memtable_recoverer = MemTableRecoverer()
        self._wal_dir = os.path.join(storage_dir, "wal")
        self._sstable_dir = os.path.join(storage_dir, "sstables")

    @staticmethod
    def _list(directory: str, pattern: re.Pattern) -> list[tuple[int, str]]:
        """(id, path) pairs of files in `directory` matching `pattern`, sorted by id."""
        if not os.path.exists(directory):
            return []

        found = []
        for filename in os.listdir(directory):
            match = pattern.search(filename)
            if match:
                found.append((int(match.group(1)), os.path.join(directory, filename)))
        return sorted(found)

    def _cleanup_temp_files(self) -> None:
        """
        Remove orphaned .tmp files from interrupted flushes or compactions.

        For flushes, the data is safe in the WAL and will be re-flushed.
        For compactions, the original SSTables are still intact.
        """
        if not os.path.exists(self._sstable_dir):
            return

        for filename in os.listdir(self._sstable_dir):
            if filename.endswith(".tmp"):
                tmp_path = os.path.join(self._sstable_dir, filename)
                try:
                    os.remove(tmp_path)
                    logger.info(f"Removed orphaned temp file {tmp_path}")
                except OSError as e:
                    logger.warning(f"Could not remove temp file {tmp_path}: {e}")

    def recover(self) -> RecoveredState:
        """Recover state from disk."""
        self._cleanup_temp_files()
        state = RecoveredState()

        for wal_id, wal_path in self._list(self._wal_dir, _WAL_RE):
            state.next_wal_id = max(state.next_wal_id, wal_id + 1)

            wal = WAL(id=str(wal_id), file_path=wal_path)
            wal.open(read_only=True)

            memtable = self._memtable_recoverer.recover(wal, SortedDictContainer())
            memtable.mark_immutable()

            if memtable.size() == 0:
                wal.destroy()
                continue

            logger.info(f"Recovered {memtable.size()} keys from WAL {wal_id}")
            state.last_version = max(state.last_version, memtable.max_version)
            state.memtables_and_wals.append((memtable, wal))

        for ss_id, sstable_path in self._list(self._sstable_dir, _SST_RE):
            state.next_ss_id = max(state.next_ss_id, ss_id + 1)

            sstable = SSTable(id=str(ss_id), file_path=sstable_path)
            sstable.open()
            state.last_version = max(state.last_version, sstable.max_version)
            state.sstables.append(sstable)

        # Compaction outputs get fresh IDs but hold the oldest data, so
        # recency is decided by the versions each table holds.
        state.sstables.sort(key=lambda sst: (sst.max_version, int(sst.id)))

        return state

    def __enter__(self) -> "EngineInitializer":
        Path(self.storage_dir).mkdir(parents=True, exist_ok=True)
        Path(self._wal_dir).mkdir(parents=True, exist_ok=True)
        Path(self._sstable_dir).mkdir(parents=True, exist_ok=True)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        pass
