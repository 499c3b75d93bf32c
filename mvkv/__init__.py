"""
Multi-version LSM-Tree key-value store.

This package provides an embedded ordered key-value store with:
- read(version) - Snapshot-isolated read transactions, never blocked by writers
- write() - Write transactions committed atomically under a new version
- iterate_at(prefix, version) - Lazy ordered prefix scans
- backup(engine, out) / restore(engine, stream) - Portable binary backups
- Tombstone-based deletion with history reclaimed by compaction
"""

from mvkv.engine.backup import backup, restore
from mvkv.engine.engine import Engine
from mvkv.engine.transaction import ReadTransaction, TxnState, WriteTransaction

__all__ = ["Engine", "ReadTransaction", "WriteTransaction", "TxnState", "backup", "restore"]
