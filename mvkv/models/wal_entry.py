"""
WALEntry dataclass for Write-Ahead Log commit records.
"""

from dataclasses import dataclass, field

from mvkv.models.value import Value

Mutation = tuple[bytes, Value]


@dataclass
class WALEntry:
    """
    One committed write batch as it is logged.

    The whole batch is framed and checksummed as a single record, so a torn
    write can never replay half of a batch.

    Attributes:
        version: Commit version assigned to the batch.
        mutations: (key, value) pairs, each value tagged with its version.
    """

    version: int
    mutations: list[Mutation] = field(default_factory=list)

    def __bytes__(self) -> bytes:
        """
        Serialize the entry to bytes for storage.

        Format: [version:8][count:4] then per mutation
        [key_len:4][key][value_len:4][value_bytes]
        """
        parts = [
            self.version.to_bytes(8, "big"),
            len(self.mutations).to_bytes(4, "big"),
        ]
        for key, value in self.mutations:
            value_bytes = bytes(value)
            parts.append(len(key).to_bytes(4, "big"))
            parts.append(key)
            parts.append(len(value_bytes).to_bytes(4, "big"))
            parts.append(value_bytes)
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "WALEntry":
        """Deserialize from bytes."""
        version = int.from_bytes(data[0:8], "big")
        count = int.from_bytes(data[8:12], "big")
        offset = 12

        mutations: list[Mutation] = []
        for _ in range(count):
            key_len = int.from_bytes(data[offset : offset + 4], "big")
            offset += 4
            key = bytes(data[offset : offset + key_len])
            offset += key_len

            value_len = int.from_bytes(data[offset : offset + 4], "big")
            offset += 4
            value = Value.from_bytes(data[offset : offset + value_len])
            offset += value_len

            mutations.append((key, value))

        return cls(version=version, mutations=mutations)

    def size_bytes(self) -> int:
        return len(bytes(self))
