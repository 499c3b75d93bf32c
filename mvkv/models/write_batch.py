"""
WriteBatch - pending operations of one write transaction.
"""

from mvkv.models.value import Value, ValueType
from mvkv.models.wal_entry import Mutation


class WriteBatch:
    """
    Ordered set of staged puts and deletes.

    Nothing staged here is visible to readers until the batch is committed.
    Staging the same key twice keeps the key's first position and the last
    operation.
    """

    def __init__(self) -> None:
        self._ops: dict[bytes, tuple[ValueType, bytes | None]] = {}

    def put(self, key: bytes, value: bytes) -> None:
        _check_bytes("key", key)
        _check_bytes("value", value)
        key = bytes(key)
        if not key:
            raise ValueError("key cannot be empty")
        self._ops[key] = (ValueType.REGULAR, bytes(value))

    def delete(self, key: bytes) -> None:
        _check_bytes("key", key)
        key = bytes(key)
        if not key:
            raise ValueError("key cannot be empty")
        self._ops[key] = (ValueType.TOMBSTONE, None)

    def lookup(self, key: bytes) -> tuple[bool, bytes | None]:
        """
        Read-your-writes lookup.

        Returns:
            (staged, data): staged is False when the key was not touched by
            this batch; data is None for a staged delete.
        """
        op = self._ops.get(key)
        if op is None:
            return False, None
        return True, op[1]

    def mutations(self, version: int) -> list[Mutation]:
        """Materialize the staged operations as values tagged with `version`."""
        result: list[Mutation] = []
        for key, (value_type, data) in self._ops.items():
            if value_type == ValueType.TOMBSTONE:
                result.append((key, Value.tombstone(version)))
            else:
                result.append((key, Value.regular(data, version)))
        return result

    def clear(self) -> None:
        self._ops.clear()

    def __len__(self) -> int:
        return len(self._ops)


def _check_bytes(name: str, data: object) -> None:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"{name} must be bytes, got {type(data).__name__}")
