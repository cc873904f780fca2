"""
DBWalrus LAN server:
- Advertises itself with Zeroconf (_dbwalrus._tcp.local.)
- Serves a simple line-oriented protocol backed by dbwalrus.network.adapter
- One command per connection, each connection handled by its own asyncio task

Protocol (every reply except READY is a single JSON line):
    PING
    -> {"message": "DBWalrus - SQL Data Blob Storage on Walrus"}

    SAVE <size>
    -> server replies READY
    -> client sends exactly <size> bytes of JSON: {"data": ..., "encryptionKey": {...}}
    -> blob record (blobId, blobObject, timeSpent, encryptionKey)

    RETRIEVE <blob_id> [<size>]
    -> with <size>: READY, then <size> bytes of JSON {"encryptionKey": ...}
    -> rawData and, when a key was sent, decryptedData

    DELETE <blob_object_id>
    KEYGEN
    WALLET
    STOP

Usage:
    python -m dbwalrus.network.server --backend local --storage-root ~/.dbwalrus --port 39260
"""

import argparse
import asyncio
import json
import logging
import socket
from typing import Any, Dict, Optional, Tuple

from zeroconf import ServiceInfo
from zeroconf.asyncio import AsyncZeroconf

from ..config import build_context, load_settings
from ..core.exceptions import ConfigurationError, to_error_dict
from ..core.pipeline import BlobPipeline
from ..logging_config import configure_logging
from .adapter import (
    handle_delete,
    handle_generate_key,
    handle_retrieve,
    handle_save,
    handle_wallet_info,
)

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_dbwalrus._tcp.local."
BANNER = "DBWalrus - SQL Data Blob Storage on Walrus"
MAX_LINE = 4096


def get_local_ip():
    """A trick to get the current IP using a UDP socket."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80))
        return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        s.close()


def make_context(pipeline: BlobPipeline, settings) -> Dict[str, Any]:
    return {"pipeline": pipeline, "settings": settings, "stop": asyncio.Event()}


def _validation(details: str) -> Dict[str, Any]:
    return {"error": "validation_error", "details": details}


async def _send(writer, payload) -> None:
    if isinstance(payload, (dict, list)):
        payload = json.dumps(payload, ensure_ascii=False)
    writer.write(payload.encode("utf-8") + b"\n")
    await writer.drain()


async def _read_body(reader, writer, size_str: str, context) -> Tuple[Any, Optional[Dict[str, Any]]]:
    """Run the READY handshake and return ``(body, error)``.

    ``error`` is a validation result when the size or the body is unusable.
    """
    settings = context["settings"]
    try:
        size = int(size_str)
        if size < 0:
            raise ValueError("negative size")
    except ValueError:
        return None, _validation("Invalid size")
    if size > settings.max_body_bytes:
        return None, _validation(f"Body exceeds {settings.max_body_bytes} bytes")

    await _send(writer, "READY")
    raw = await asyncio.wait_for(reader.readexactly(size), timeout=settings.request_timeout)
    if not raw:
        return None, None
    try:
        return json.loads(raw.decode("utf-8")), None
    except (UnicodeDecodeError, ValueError):
        return None, _validation("Body must be valid JSON")


async def dispatch(line: str, reader, writer, context) -> Optional[Dict[str, Any]]:
    pipeline: BlobPipeline = context["pipeline"]
    settings = context["settings"]
    parts = line.split()
    if not parts:
        return _validation("Empty command")
    verb, args = parts[0].upper(), parts[1:]

    if verb == "PING":
        return {"message": BANNER}

    if verb == "SAVE":
        if len(args) != 1:
            return _validation("SAVE requires <size>")
        body, error = await _read_body(reader, writer, args[0], context)
        if error:
            return error
        return await handle_save(pipeline, body)

    if verb == "RETRIEVE":
        if not args or len(args) > 2:
            return _validation("RETRIEVE requires <blob_id> [<size>]")
        body = None
        if len(args) == 2:
            body, error = await _read_body(reader, writer, args[1], context)
            if error:
                return error
        return await handle_retrieve(pipeline, args[0], body)

    if verb == "DELETE":
        if len(args) != 1:
            return _validation("DELETE requires <blob_object_id>")
        return await handle_delete(pipeline, args[0])

    if verb == "KEYGEN":
        return handle_generate_key(pipeline)

    if verb == "WALLET":
        return handle_wallet_info(pipeline, settings.network)

    if verb == "STOP":
        context["stop"].set()
        return {"success": True, "message": "Server is shutting down"}

    return _validation("Unknown command")


async def handle_client(reader, writer, context) -> None:
    """Handle a single client connection."""
    addr = writer.get_extra_info("peername")
    timeout = context["settings"].request_timeout
    logger.info("Connection from %s", addr)
    try:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=timeout)
        except ValueError:
            # StreamReader raises ValueError once a line overruns the limit
            await _send(writer, _validation("Command line too long"))
            return
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        logger.info("Received %s from %s", line.split(" ", 1)[0].upper(), addr)
        try:
            reply = await dispatch(line, reader, writer, context)
        except (asyncio.IncompleteReadError, asyncio.TimeoutError):
            raise
        except Exception as e:
            logger.exception("Error handling %s", addr)
            reply = to_error_dict(e)
        await _send(writer, reply)
    except asyncio.TimeoutError:
        logger.warning("Timeout from %s", addr)
    except asyncio.IncompleteReadError:
        logger.warning("Connection from %s closed before the body was received", addr)
    except ConnectionError as e:
        logger.warning("Connection error from %s: %s", addr, e)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass
        logger.info("Disconnected %s", addr)


async def start_tcp_server(context, host: str, port: int) -> None:
    """Serve until a STOP command (or cancellation)."""
    server = await asyncio.start_server(
        lambda r, w: handle_client(r, w, context), host, port, limit=MAX_LINE
    )
    addrs = ", ".join(str(sock.getsockname()) for sock in server.sockets)
    logger.info("TCP server listening on %s", addrs)
    async with server:
        await context["stop"].wait()
    logger.info("TCP server listener stopped.")


async def advertise_service(name: str, port: int, service: str = SERVICE_TYPE):
    """Advertise this server using Zeroconf."""
    aiozc = AsyncZeroconf()
    local_ip = get_local_ip()
    info = ServiceInfo(
        service,
        f"{name}.{service}",
        addresses=[socket.inet_aton(local_ip)],
        port=port,
        properties={"name": name, "version": "1.0"},
        server=f"{socket.gethostname()}.local.",
    )
    await aiozc.async_register_service(info)
    logger.info("Zeroconf service registered: %s @ %s:%d (%s)", name, local_ip, port, service)
    return aiozc, info


async def run(settings, name: Optional[str] = None, advertise: bool = True) -> None:
    pipeline = BlobPipeline(build_context(settings))
    context = make_context(pipeline, settings)
    name = name or f"DBWalrus-{socket.gethostname()}"

    aiozc = info = None
    if advertise:
        aiozc, info = await advertise_service(name, settings.port)
    try:
        await start_tcp_server(context, settings.host, settings.port)
    finally:
        if aiozc is not None:
            logger.info("Unregistering Zeroconf service...")
            await aiozc.async_unregister_service(info)
            await aiozc.async_close()


# Main entry point
def main(argv=None):
    parser = argparse.ArgumentParser(description="DBWalrus blob storage server")
    parser.add_argument("--backend", choices=("local", "walrus"), default=None)
    parser.add_argument("--storage-root", default=None)
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument("--retry-delay-ms", type=int, default=None)
    parser.add_argument("--epochs", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--name", default=None)
    parser.add_argument("--no-advertise", action="store_true")
    args = parser.parse_args(argv)

    try:
        settings = load_settings().override(
            backend=args.backend,
            storage_root=args.storage_root,
            host=args.host,
            port=args.port,
            max_attempts=args.max_attempts,
            retry_delay_ms=args.retry_delay_ms,
            epochs=args.epochs,
            log_level=args.log_level,
        )
    except ConfigurationError as e:
        parser.error(e.detail)

    configure_logging(settings.log_level)
    try:
        asyncio.run(run(settings, name=args.name, advertise=not args.no_advertise))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
