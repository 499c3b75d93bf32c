import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Response:
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self, payload: Any) -> 'Response':
        headers = self.headers
        headers['content-type'] = 'application/json'

        return Response(
            status=self.status,
            headers=headers,
            body=json.dumps(payload).encode()
        )

    def text(self, message: str) -> 'Response':
        headers = self.headers
        headers['content-type'] = 'text/plain; charset=utf-8'

        return Response(
            status=self.status,
            headers=headers,
            body=message.encode()
        )

    def binary(self, data: bytes, content_type: str = 'application/octet-stream') -> 'Response':
        headers = self.headers
        headers['content-type'] = content_type

        return Response(
            status=self.status,
            headers=headers,
            body=data
        )

def response(status_code: int = 200, headers: dict[str, str] | None = None) -> Response:
    return Response(
        status=status_code,
        headers={} if headers is None else headers
    )
