import asyncio
import json
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple, Type
from urllib.parse import parse_qs, urlparse

from .request import Request
from .response import Response

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 10 * 1024 * 1024

HEADER_TIMEOUT_S = 5.0
BODY_TIMEOUT_S = 30.0

STATUS_TEXT = {
    200: 'OK',
    400: 'Bad Request',
    404: 'Not Found',
    405: 'Method Not Allowed',
    409: 'Conflict',
    413: 'Payload Too Large',
    500: 'Internal Server Error',
    503: 'Service Unavailable',
}


class HTTPError(Exception):
    """Aborts a request with `status`; the connection is closed if `close` is set."""

    def __init__(self, status: int, message: str, close: bool = False):
        self.status = status
        self.message = message
        self.close = close
        super().__init__(message)

    def to_response(self) -> Response:
        headers = {'content-type': 'application/json'}
        if self.close:
            headers['connection'] = 'close'
        return Response(
            status=self.status,
            headers=headers,
            body=json.dumps({"error": self.message}).encode()
        )


class HTTPServer:
    def __init__(self, host: str = '0.0.0.0', port: int = 8080,
                 max_body_bytes: int = DEFAULT_MAX_BODY_BYTES):
        self.host = host
        self.port = port
        self.max_body_bytes = max_body_bytes
        self.routes: Dict[Tuple[str, str], Callable] = {}
        self.error_statuses: Dict[Type[Exception], int] = {}

    def route(self, path: str, methods: Optional[List] = None):
        """Decorator for registering route handlers"""
        if methods is None:
            methods = ['GET']

        def decorator(handler):
            for method in methods:
                self.routes[(method.upper(), path)] = handler
            return handler
        return decorator

    def map_error(self, exc_type: Type[Exception], status: int) -> None:
        """Answer `status` with a JSON error when a handler raises `exc_type`."""
        self.error_statuses[exc_type] = status

    def _status_for(self, exc: Exception) -> Optional[int]:
        for klass in type(exc).__mro__:
            if klass in self.error_statuses:
                return self.error_statuses[klass]
        return None

    async def _read_head(self, reader: asyncio.StreamReader) -> Optional[Tuple[str, str, str, Dict[str, str]]]:
        request_line = await asyncio.wait_for(reader.readline(), timeout=HEADER_TIMEOUT_S)
        if not request_line:
            return None

        try:
            method, full_path, version = request_line.decode('utf-8').strip().split(' ', 2)
        except (UnicodeDecodeError, ValueError):
            raise HTTPError(400, "Malformed request line", close=True) from None

        headers = {}
        while True:
            line = await asyncio.wait_for(reader.readline(), timeout=HEADER_TIMEOUT_S)
            if line in (b'\r\n', b'\n', b''):
                break

            header_line = line.decode('utf-8', errors='replace').strip()
            if ':' in header_line:
                key, value = header_line.split(':', 1)
                headers[key.strip().lower()] = value.strip()

        return method, full_path, version, headers

    def _content_length(self, headers: Dict[str, str]) -> int:
        raw = headers.get('content-length', '0')
        try:
            length = int(raw)
        except ValueError:
            raise HTTPError(400, f"Invalid Content-Length {raw!r}", close=True) from None
        if length < 0:
            raise HTTPError(400, f"Invalid Content-Length {raw!r}", close=True)
        if length > self.max_body_bytes:
            raise HTTPError(
                413,
                f"Request body of {length} bytes exceeds limit of {self.max_body_bytes} bytes",
                close=True,
            )
        return length

    async def parse_request(self, reader: asyncio.StreamReader) -> Optional[Request]:
        """
        Read one request off the connection.

        Returns None when the peer closed the connection or went idle.
        Raises HTTPError for requests that must be answered and then dropped.
        """
        try:
            head = await self._read_head(reader)
            if head is None:
                return None
            method, full_path, version, headers = head

            body = b''
            content_length = self._content_length(headers)
            if content_length > 0:
                body = await asyncio.wait_for(
                    reader.readexactly(content_length),
                    timeout=BODY_TIMEOUT_S
                )
        except asyncio.TimeoutError:
            return None
        except asyncio.IncompleteReadError as e:
            logger.warning(f"Client closed mid-body after {len(e.partial)} bytes")
            return None

        parsed_url = urlparse(full_path)
        return Request(
            method=method.upper(),
            path=parsed_url.path,
            headers=headers,
            query_params=parse_qs(parsed_url.query),
            body=body,
            version=version
        )

    def build_response(self, response: Response) -> bytes:
        """Build HTTP response bytes"""
        status_text = STATUS_TEXT.get(response.status, 'Unknown')

        if 'content-type' not in response.headers:
            response.headers['content-type'] = 'text/plain'

        response.headers['content-length'] = str(len(response.body))
        response.headers.setdefault('connection', 'keep-alive')
        response.headers['server'] = 'mvkv/1.0'

        response_line = f"HTTP/1.1 {response.status} {status_text}\r\n"
        header_lines = ''.join(
            f"{key}: {value}\r\n"
            for key, value in response.headers.items()
        )

        return response_line.encode() + header_lines.encode() + b'\r\n' + response.body

    async def handle_request(self, request: Request) -> Response:
        """Route request to appropriate handler"""
        handler = self.routes.get((request.method, request.path))

        if handler is None:
            if any(path == request.path for _, path in self.routes):
                return Response(status=405, body=b'Method Not Allowed')
            return Response(status=404, body=b'Route Not Found')

        try:
            result = await handler(request)
        except HTTPError as e:
            return e.to_response()
        except Exception as e:
            status = self._status_for(e)
            if status is None:
                logger.exception(f"Handler error on {request.method} {request.path}")
                return Response(status=500, body=b'Internal Server Error')
            logger.warning(f"{request.method} {request.path} -> {status}: {e}")
            return HTTPError(status, str(e)).to_response()

        if isinstance(result, Response):
            return result
        if isinstance(result, (dict, list)):
            return Response(
                status=200,
                headers={'content-type': 'application/json'},
                body=json.dumps(result).encode()
            )
        if isinstance(result, str):
            return Response(status=200, body=result.encode())
        if isinstance(result, bytes):
            return Response(status=200, body=result)

        logger.error(f"Handler for {request.method} {request.path} returned {type(result).__name__}")
        return Response(status=500, body=b'Internal Server Error')

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle a single client connection with keep-alive"""
        peer = writer.get_extra_info('peername')

        try:
            while True:
                try:
                    request = await self.parse_request(reader)
                except HTTPError as e:
                    logger.warning(f"Rejected request from {peer}: {e.message}")
                    writer.write(self.build_response(e.to_response()))
                    await writer.drain()
                    break

                if request is None:
                    break

                start_time = time.perf_counter()
                logger.debug(f"--> {request.method} {request.path}")

                response = await self.handle_request(request)

                writer.write(self.build_response(response))
                await writer.drain()

                elapsed_ms = (time.perf_counter() - start_time) * 1000
                logger.debug(
                    f"<-- {response.status} - {len(response.body)} bytes - {elapsed_ms:.2f}ms"
                )

                if request.headers.get('connection', '').lower() == 'close':
                    break

        except ConnectionResetError:
            logger.debug(f"Connection reset by {peer}")
        except OSError as e:
            logger.error(f"Connection error from {peer}: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing connection to {peer}: {e}")

    async def start(self):
        """Start the HTTP server"""
        server = await asyncio.start_server(
            self.handle_client,
            self.host,
            self.port
        )

        addr = server.sockets[0].getsockname()
        logger.info(f'mvkv HTTP Server running on http://{addr[0]}:{addr[1]}')

        try:
            async with server:
                await server.serve_forever()
        except asyncio.CancelledError:
            logger.info("Server shutdown requested")
        finally:
            await self.shutdown(server)

    async def shutdown(self, server):
        """Gracefully shutdown the server"""
        logger.info("Shutting down server...")
        server.close()
        await server.wait_closed()
        logger.info("Server shutdown complete")
