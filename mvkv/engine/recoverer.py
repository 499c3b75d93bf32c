"""
MemTableRecoverer - Rebuild MemTable from WAL for crash recovery.
"""

from mvkv.interfaces.sorted_container import SortedContainer
from mvkv.models.memtable import MemTable
from mvkv.models.wal import WAL


class MemTableRecoverer:
    """
    Recovers a MemTable from a Write-Ahead Log.

    Used during startup to rebuild in-memory state from commit records
    that weren't yet flushed to SSTable. Each record is a whole batch, so
    recovery replays batches atomically.
    """

    def recover(self, wal: WAL, container: SortedContainer) -> MemTable:
        """
        Recover a MemTable by replaying WAL commit records.

        Args:
            wal: The WAL to replay.
            container: Empty sorted container to populate.

        Returns:
            Recovered MemTable with all complete records applied.
        """
        memtable = MemTable(container)

        for entry in wal:
            memtable.apply(entry.mutations)

        return memtable
