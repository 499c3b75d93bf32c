"""
SSTableCompactor - Compact multiple SSTables into one.

This module merges SSTables into a single SSTable and reclaims versions that
no snapshot at or above a watermark version can observe.
"""

import os
from collections.abc import Iterator
from pathlib import Path

from mvkv.engine.merge_iterator import KWayMergeIterator
from mvkv.models.sstable import SSTable
from mvkv.models.value import VersionChain


class SSTableCompactor:
    """
    Compacts multiple SSTables into a single SSTable.

    Responsibilities:
    - Merge entries from multiple SSTables using iterative k-way merge
    - Prune each key's history against the reclaim watermark
    - Drop keys whose newest reclaimable version is a tombstone
    - Write output using atomic temp file pattern

    Memory Efficiency:
    - Uses iterators, not loading all data into memory
    - O(K) memory where K = number of input SSTables (heap size)

    Thread Safety:
    - This class is designed to run in a thread pool
    - Does not modify any shared state
    - Returns results to be applied by the caller
    """

    def __init__(self, sstables: list[SSTable], storage_dir: str, watermark: int) -> None:
        """
        Initialize compactor.

        Args:
            sstables: SSTables to compact, ordered newest to oldest.
            storage_dir: Directory for SSTable storage.
            watermark: Lowest version any current or future snapshot may read.
                Tombstones at or below it are only dropped safely because the
                inputs are all of the engine's SSTables.
        """
        self._sstables = sstables
        self._storage_dir = storage_dir
        self._watermark = watermark

    def compact(self, new_ss_id: str) -> SSTable:
        """
        Perform compaction synchronously (designed to run in thread pool).

        Args:
            new_ss_id: ID for the new compacted SSTable.

        Returns:
            The newly created compacted SSTable.
        """
        sstables_dir = os.path.join(self._storage_dir, "sstables")
        Path(sstables_dir).mkdir(parents=True, exist_ok=True)
        final_path = os.path.join(sstables_dir, f"{new_ss_id}.sst")

        # Pruned tombstones may have been the newest entries; the footer must
        # still cover every version the inputs held.
        return SSTable.create(
            id=new_ss_id,
            file_path=final_path,
            entries=self._create_merged_iterator(),
            max_version=max(sstable.max_version for sstable in self._sstables),
        )

    def _create_merged_iterator(self) -> Iterator[tuple[bytes, VersionChain]]:
        sources = [sstable.iterator() for sstable in self._sstables]

        for key, chain in KWayMergeIterator(sources):
            pruned = chain.prune(self._watermark, drop_tombstone=True)
            if len(pruned):
                yield key, pruned
