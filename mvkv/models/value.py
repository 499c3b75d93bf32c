"""
Value, ValueType and VersionChain for representing versioned data.
"""

import bisect
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import IntEnum


class ValueType(IntEnum):
    """Type of value stored in the database."""

    REGULAR = 0  # Normal value
    TOMBSTONE = 1  # Deletion marker


@dataclass
class Value:
    """
    One version of a key.

    Attributes:
        data: The stored bytes (None for tombstones).
        version: Commit version that produced this value.
        type: Whether this is a regular value or a tombstone.
    """

    data: bytes | None
    version: int
    type: ValueType = ValueType.REGULAR
    _cached_bytes: bytes = field(init=False, repr=False, compare=False)

    # [type:1][version:8][data_len:4]
    HEADER_SIZE = 13

    def __post_init__(self) -> None:
        """Cache the serialized bytes on initialization."""
        data_bytes = self.data if self.data is not None else b""

        # Format: [type:1][version:8][data_len:4][data]
        self._cached_bytes = (
            self.type.to_bytes(1, "big")
            + self.version.to_bytes(8, "big")
            + len(data_bytes).to_bytes(4, "big")
            + data_bytes
        )

    @classmethod
    def regular(cls, data: bytes, version: int) -> "Value":
        return cls(data=data, version=version, type=ValueType.REGULAR)

    @classmethod
    def tombstone(cls, version: int) -> "Value":
        return cls(data=None, version=version, type=ValueType.TOMBSTONE)

    def is_tombstone(self) -> bool:
        return self.type == ValueType.TOMBSTONE

    def __bytes__(self) -> bytes:
        return self._cached_bytes

    def size_bytes(self) -> int:
        return len(self._cached_bytes)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Value":
        """Deserialize from bytes."""
        value_type = ValueType(data[0])
        version = int.from_bytes(data[1:9], "big")
        data_len = int.from_bytes(data[9:13], "big")

        if value_type == ValueType.TOMBSTONE:
            return cls(data=None, version=version, type=value_type)
        return cls(data=bytes(data[13 : 13 + data_len]), version=version, type=value_type)


class VersionChain:
    """
    Version history of a single key, kept in ascending version order.

    A chain never rewrites history: a later write adds a new version and a
    delete adds a tombstone version. Only compaction (prune) drops versions.
    """

    __slots__ = ("_versions", "_values")

    def __init__(self, values: list[Value] | None = None) -> None:
        self._versions: list[int] = []
        self._values: list[Value] = []
        for value in values or ():
            self.add(value)

    def add(self, value: Value) -> None:
        """Insert a value; a value with an already present version replaces it."""
        idx = bisect.bisect_left(self._versions, value.version)
        if idx < len(self._versions) and self._versions[idx] == value.version:
            self._values[idx] = value
            return
        self._versions.insert(idx, value.version)
        self._values.insert(idx, value)

    def visible(self, version: int) -> Value | None:
        """
        Return the value a snapshot at `version` observes.

        This is the entry with the greatest version <= `version`, which may
        be a tombstone. None if the key had no version yet.
        """
        idx = bisect.bisect_right(self._versions, version)
        return self._values[idx - 1] if idx else None

    def latest(self) -> Value | None:
        return self._values[-1] if self._values else None

    def since(self, version: int) -> list[Value]:
        """Values with a version strictly greater than `version`."""
        idx = bisect.bisect_right(self._versions, version)
        return self._values[idx:]

    def merge(self, older: "VersionChain") -> "VersionChain":
        """
        Combine with a chain from an older source.

        On equal versions the value already in this chain wins.
        """
        merged = VersionChain()
        merged._versions = list(self._versions)
        merged._values = list(self._values)
        for value in older:
            idx = bisect.bisect_left(merged._versions, value.version)
            if idx < len(merged._versions) and merged._versions[idx] == value.version:
                continue
            merged._versions.insert(idx, value.version)
            merged._values.insert(idx, value)
        return merged

    def prune(self, watermark: int, drop_tombstone: bool = True) -> "VersionChain":
        """
        Drop versions no snapshot at or above `watermark` can observe.

        Keeps every version above the watermark plus the newest version at or
        below it. That newest version is dropped too when it is a tombstone
        and `drop_tombstone` is set.
        """
        idx = bisect.bisect_right(self._versions, watermark)
        kept = self._values[idx:]
        if idx:
            base = self._values[idx - 1]
            if not (drop_tombstone and base.is_tombstone()):
                kept = [base] + kept
        return VersionChain(kept)

    def size_bytes(self) -> int:
        return sum(value.size_bytes() for value in self._values)

    def __bytes__(self) -> bytes:
        """
        Serialize the chain.

        Format: [count:4] then per value [value_len:4][value_bytes]
        """
        parts = [len(self._values).to_bytes(4, "big")]
        for value in self._values:
            value_bytes = bytes(value)
            parts.append(len(value_bytes).to_bytes(4, "big"))
            parts.append(value_bytes)
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "VersionChain":
        chain = cls()
        count = int.from_bytes(data[0:4], "big")
        offset = 4
        for _ in range(count):
            value_len = int.from_bytes(data[offset : offset + 4], "big")
            offset += 4
            chain.add(Value.from_bytes(data[offset : offset + value_len]))
            offset += value_len
        return chain

    def __iter__(self) -> Iterator[Value]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VersionChain(versions={self._versions!r})"
