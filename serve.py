import asyncio
import io
import json
import logging

from http_server.request import Request
from http_server.response import Response, response
from http_server.server import HTTPError, HTTPServer
from mvkv.config import Settings
from mvkv.engine.backup import backup, restore
from mvkv.engine.engine import Engine
from mvkv.models.exceptions import (
    BackupFormatError,
    ConflictError,
    StorageIOError,
    VersionRegressionError,
)

logger = logging.getLogger(__name__)

BACKUP_FILENAME = "mvkv-backup.bak"


async def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    server = HTTPServer(settings.host, settings.port, settings.max_body_bytes)
    async with Engine.from_settings(settings) as engine:
        await register_routes(server, engine, settings)
        logger.debug(f"Registered routes: {sorted(server.routes)}")
        await server.start()


def _decode_key(key: bytes) -> str:
    return key.decode("utf-8", errors="replace")


def _required(request: Request, field: str) -> str:
    value = request.get(field)
    if not isinstance(value, str) or not value:
        raise HTTPError(400, f"Missing '{field}' parameter")
    return value


async def register_routes(server: HTTPServer, engine: Engine, settings: Settings):
    # Each request runs as one transaction; these are the ways one can fail.
    server.map_error(ConflictError, 409)
    server.map_error(VersionRegressionError, 409)
    server.map_error(BackupFormatError, 400)
    server.map_error(StorageIOError, 503)

    @server.route('/keys', ['GET'])
    async def list_keys(request: Request) -> Response:
        prefix = request.get("prefix", "")
        keys = await engine.list_keys(prefix.encode())
        return response(status_code=200).json([_decode_key(key) for key in keys])

    @server.route('/get', ['GET'])
    async def get(request: Request) -> Response:
        key = _required(request, "key")

        value = await engine.get(key.encode())
        if value is None:
            return response(status_code=404).text("Key not found")
        return response(status_code=200).binary(value, content_type="application/json")

    @server.route('/set', ['POST'])
    async def set_value(request: Request) -> Response:
        body = request.json_body
        if not isinstance(body, dict):
            raise HTTPError(400, "Body must be a JSON object")

        key = body.get("key")
        if not isinstance(key, str) or not key or "value" not in body:
            raise HTTPError(400, "Missing 'key' or 'value' in request body")

        version = await engine.put(key.encode(), json.dumps(body["value"]).encode())
        return response(status_code=200).json({"version": version})

    @server.route('/delete', ['POST'])
    async def delete(request: Request) -> Response:
        key = _required(request, "key")

        version = await engine.delete(key.encode())
        return response(status_code=200).json({"version": version})

    @server.route('/backup', ['GET'])
    async def download_backup(request: Request) -> Response:
        try:
            since = int(request.get("since", 0))
        except ValueError:
            raise HTTPError(400, "'since' must be an integer") from None
        if since < 0:
            raise HTTPError(400, "'since' must be >= 0")

        out = io.BytesIO()
        await backup(engine, out, since_version=since)

        headers = {"content-disposition": f'attachment; filename="{BACKUP_FILENAME}"'}
        return response(status_code=200, headers=headers).binary(out.getvalue())

    @server.route('/restore', ['POST'])
    async def upload_restore(request: Request) -> Response:
        if not request.body:
            raise HTTPError(400, "Missing backup stream")

        applied = await restore(engine, io.BytesIO(request.body), settings.restore_batch_size)

        logger.info(f"Restore applied {applied} records")
        return response(status_code=200).text("Restore completed")

    @server.route('/debug-count', ['GET'])
    async def debug_count(request: Request) -> Response:
        total = await engine.count()
        return response(status_code=200).text(f"Total keys: {total}")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
