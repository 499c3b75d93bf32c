import json
from dataclasses import dataclass
from typing import Any


@dataclass
class Request:
    method: str
    path: str
    headers: dict[str, str]
    query_params: dict[str, list]
    body: bytes
    version: str

    def __post_init__(self):
        # Routes like /restore take a raw binary body
        if self.headers.get('content-type', '').startswith('application/octet-stream'):
            self._dict = None
            return
        try:
            self._dict = json.loads(self.body) if self.body else None
        except ValueError:
            self._dict = None

    @property
    def json_body(self) -> Any:
        """Decoded JSON body, None when absent or not JSON."""
        return self._dict

    def has(self, field: str) -> bool:
        if field is None:
            raise ValueError("Field cannot be None")

        if len(field) == 0:
            raise ValueError("Field cannot be empty")

        if field in self.query_params:
            return True

        if isinstance(self._dict, dict) and field in self._dict:
            return True

        return False

    def get(self, field: str, default: Any = None) -> Any:
        if field is None:
            raise ValueError("Field cannot be None")

        if len(field) == 0:
            raise ValueError("Field cannot be empty")

        if field in self.query_params and self.query_params[field]:
            return self.query_params[field][0]

        if isinstance(self._dict, dict) and field in self._dict:
            return self._dict[field]

        return default
