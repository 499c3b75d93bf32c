"""
MemToSSTableConverter - Convert MemTable to SSTable on disk.
"""

import os
from pathlib import Path

from mvkv.models.memtable import MemTable
from mvkv.models.sstable import SSTable
from mvkv.models.wal import WAL


class MemToSSTableConverter:
    """
    Converts an immutable MemTable to an SSTable on disk.

    The SSTable is written through a temp file and renamed into place before
    the associated WAL is removed, so a crash at any point leaves either the
    WAL or the SSTable (or both) to recover from.
    """

    def __init__(self, memtable: MemTable, wal: WAL, storage_dir: str) -> None:
        self._memtable = memtable
        self._wal = wal
        self._storage_dir = storage_dir

    def initiate(self, ss_id: str) -> SSTable:
        """
        Convert MemTable to SSTable.

        Args:
            ss_id: Unique identifier for the new SSTable.

        Returns:
            The created SSTable.
        """
        if not self._memtable.is_immutable:
            raise RuntimeError("MemTable must be immutable before conversion")

        sstables_dir = os.path.join(self._storage_dir, "sstables")
        Path(sstables_dir).mkdir(parents=True, exist_ok=True)
        file_path = os.path.join(sstables_dir, f"{ss_id}.sst")

        sstable = SSTable.create(id=ss_id, file_path=file_path, entries=iter(self._memtable))

        # Clean up WAL after successful flush
        self._wal.destroy()

        return sstable
