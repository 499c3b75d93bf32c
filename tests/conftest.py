"""
Shared pytest fixtures for async database engine tests.
"""

import os
import tempfile

import pytest
import pytest_asyncio

from mvkv.engine.engine import Engine
from mvkv.models.containers import SortedDictContainer
from mvkv.models.memtable import MemTable
from mvkv.models.value import Value, VersionChain


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that is cleaned up after test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest_asyncio.fixture
async def engine(temp_dir):
    """Provide an initialized async Engine instance."""
    async with Engine(storage_dir=temp_dir, compaction_enabled=False) as eng:
        yield eng


@pytest_asyncio.fixture
async def engine_small_threshold(temp_dir):
    """Provide an Engine with small memtable threshold for rotation tests."""
    async with Engine(
        storage_dir=temp_dir, memtable_threshold=100, compaction_enabled=False
    ) as eng:
        yield eng


@pytest.fixture
def wal_path(temp_dir):
    """Provide a path for WAL file."""
    return os.path.join(temp_dir, "test.wal")


@pytest.fixture
def sstable_path(temp_dir):
    """Provide a path for SSTable file."""
    return os.path.join(temp_dir, "test.sst")


@pytest.fixture
def memtable():
    """Provide a fresh MemTable instance."""
    return MemTable(SortedDictContainer())


@pytest.fixture
def sample_entries():
    """Provide sample sorted (key, chain) entries, one version each."""
    return [
        (b"key1", VersionChain([Value.regular(b"value1", 1)])),
        (b"key2", VersionChain([Value.regular(b"value2", 2)])),
        (b"key3", VersionChain([Value.regular(b"value3", 3)])),
    ]
