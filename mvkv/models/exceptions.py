"""
Custom exceptions for the database engine.

A missing key is not an error: lookups return None.
"""


class MvkvError(Exception):
    """Base class for all engine errors."""


class ConflictError(MvkvError):
    """
    Raised when a commit is rejected by write serialization or by
    optimistic conflict detection. The caller should retry the whole
    transaction.
    """


class StorageIOError(MvkvError):
    """Raised when the underlying storage or stream fails. Never retried internally."""


class TransactionClosedError(MvkvError):
    """Raised when an operation is attempted on a committed or aborted transaction."""


class SnapshotTooOldError(MvkvError):
    """Raised when a snapshot is requested below the reclaimed history watermark."""

    def __init__(self, requested: int, oldest_available: int):
        self.requested = requested
        self.oldest_available = oldest_available
        super().__init__(
            f"Snapshot at version {requested} is no longer available; "
            f"oldest readable version is {oldest_available}"
        )


class BackupFormatError(MvkvError):
    """Raised when a backup stream has a bad header or a corrupt record."""


class TruncatedStreamError(BackupFormatError):
    """Raised when a backup stream ends in the middle of a record."""

    def __init__(self, offset: int, needed: int, got: int):
        self.offset = offset
        self.needed = needed
        self.got = got
        super().__init__(
            f"Backup stream truncated at offset {offset}: "
            f"expected {needed} bytes, got {got}"
        )


class VersionRegressionError(MvkvError):
    """Raised when a restored record would not advance the store's version."""

    def __init__(self, version: int, current: int):
        self.version = version
        self.current = current
        super().__init__(
            f"Record version {version} does not exceed the store's "
            f"last committed version {current}"
        )


class WALCorruptionError(MvkvError):
    """
    Raised when WAL entry corruption is detected via checksum mismatch.

    This is a fail-fast error indicating data integrity issues.
    """

    def __init__(self, expected: int, actual: int, entry_offset: int):
        """
        Initialize corruption error.

        Args:
            expected: Expected CRC32 checksum.
            actual: Actual CRC32 checksum computed.
            entry_offset: File offset where corruption detected.
        """
        self.expected = expected
        self.actual = actual
        self.entry_offset = entry_offset
        super().__init__(
            f"WAL corruption detected at offset {entry_offset}: "
            f"expected CRC32 0x{expected:08x}, got 0x{actual:08x}"
        )
