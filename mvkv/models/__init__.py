"""
Data models for the database engine.
"""

from mvkv.models.memtable import MemTable
from mvkv.models.sstable import SSTable
from mvkv.models.value import Value, ValueType, VersionChain
from mvkv.models.wal import WAL
from mvkv.models.wal_entry import Mutation, WALEntry
from mvkv.models.write_batch import WriteBatch

__all__ = [
    "Value",
    "ValueType",
    "VersionChain",
    "Mutation",
    "WALEntry",
    "WAL",
    "MemTable",
    "SSTable",
    "WriteBatch",
]
