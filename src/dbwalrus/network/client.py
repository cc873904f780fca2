"""
Discover a Zeroconf service of type _dbwalrus._tcp.local. (or use --host/--port),
connect to it and run one command.

Commands:
  ping                              -> server banner
  save <file|-> [--encrypt|--key-file F] -> store a payload (JSON if it parses, text otherwise)
  retrieve <blob_id> [--key HEX]    -> fetch raw (and decrypted) data
  delete <blob_object_id>           -> delete a blob object
  keygen                            -> generate fresh key material
  wallet                            -> signer address and network

Usage:
  dbwalrus-client save rows.json --encrypt
  dbwalrus-client --host 127.0.0.1 --port 39260 retrieve <blob_id> --key <hex>
"""
import argparse
import json
import logging
import socket
import sys
import threading
from typing import Any, Dict, Optional

from zeroconf import ServiceBrowser, ServiceStateChange, Zeroconf

from ..logging_config import configure_logging

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_dbwalrus._tcp.local."
DISCOVER_TIMEOUT = 8.0  # seconds to wait for service discovery
READ_BUF = 4096


class ServiceFinder:
    def __init__(self, service_type=SERVICE_TYPE, timeout=DISCOVER_TIMEOUT):
        self.zeroconf = Zeroconf()  # opens mDNS sockets
        self.service_type = service_type
        self.found_info = None
        self._found_event = threading.Event()
        self._timeout = timeout
        self.browser = ServiceBrowser(self.zeroconf, self.service_type, handlers=[self._on_service_event])

    def _on_service_event(self, zeroconf, service_type, name, state_change):
        """Resolve the first added/updated service and remember where it lives."""
        if self._found_event.is_set() or state_change is ServiceStateChange.Removed:
            return

        info = zeroconf.get_service_info(service_type, name, timeout=2000)
        if not info:
            logger.debug("Could not resolve %s", name)
            return

        addresses = info.parsed_addresses()
        if not addresses:
            return
        # prefer IPv4 if present
        ip = next((a for a in addresses if ":" not in a), addresses[0])
        self.found_info = {
            "name": name,
            "ip": ip,
            "port": info.port,
            "properties": info.decoded_properties,
        }
        self._found_event.set()

    def wait_for_service(self):
        got = self._found_event.wait(self._timeout)
        if not got:
            return None
        return self.found_info

    def close(self):
        self.browser.cancel()
        self.zeroconf.close()


def _read_line(s: socket.socket) -> bytes:
    data = b""
    while not data.endswith(b"\n"):
        chunk = s.recv(1)
        if not chunk:
            break
        data += chunk
    return data


def request(ip, port, line: str, body: Optional[Dict[str, Any]] = None, timeout: float = 60) -> Dict[str, Any]:
    """
    Send one command and return the decoded JSON reply.

    With ``body``, the size is appended to the command line and the body is
    sent after the server answers READY.
    """
    payload = None
    if body is not None:
        payload = json.dumps(body).encode("utf-8")
        line = f"{line} {len(payload)}"

    with socket.create_connection((ip, port), timeout=timeout) as s:
        s.sendall(line.encode("utf-8") + b"\n")

        if payload is not None:
            first = _read_line(s).decode("utf-8", errors="replace").strip()
            if first.upper() != "READY":
                return _decode_reply(first)
            s.sendall(payload)

        parts = []
        while True:
            chunk = s.recv(READ_BUF)
            if not chunk:
                break
            parts.append(chunk)
    return _decode_reply(b"".join(parts).decode("utf-8", errors="replace").strip())


def _decode_reply(text: str) -> Dict[str, Any]:
    if not text:
        return {"error": "empty_reply", "details": "Server closed the connection without a reply"}
    try:
        return json.loads(text)
    except ValueError:
        return {"error": "invalid_reply", "details": text}


def _load_payload(path: str) -> Any:
    if path == "-":
        text = sys.stdin.read()
    else:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    try:
        return json.loads(text)
    except ValueError:
        return text


def cmd_save(ip, port, args) -> Dict[str, Any]:
    body: Dict[str, Any] = {"data": _load_payload(args.path)}
    if args.key_file:
        with open(args.key_file, "r", encoding="utf-8") as f:
            body["encryptionKey"] = json.load(f)
    elif args.encrypt:
        generated = request(ip, port, "KEYGEN")
        if "encryptionKey" not in generated:
            return generated
        body["encryptionKey"] = generated["encryptionKey"]
    return request(ip, port, "SAVE", body=body)


def cmd_retrieve(ip, port, args) -> Dict[str, Any]:
    body = {"encryptionKey": args.key} if args.key else None
    return request(ip, port, f"RETRIEVE {args.blob_id}", body=body)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DBWalrus client")
    parser.add_argument("--host", default=None, help="skip Zeroconf discovery")
    parser.add_argument("--port", type=int, default=39260)
    parser.add_argument("--timeout", type=float, default=DISCOVER_TIMEOUT)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("ping")
    save = sub.add_parser("save")
    save.add_argument("path", help="payload file, or - for stdin")
    save.add_argument("--encrypt", action="store_true", help="encrypt with a freshly generated key")
    save.add_argument("--key-file", default=None, help="JSON file holding key, salt and iterations")
    retrieve = sub.add_parser("retrieve")
    retrieve.add_argument("blob_id")
    retrieve.add_argument("--key", default=None, help="hex decryption key")
    delete = sub.add_parser("delete")
    delete.add_argument("blob_object_id")
    sub.add_parser("keygen")
    sub.add_parser("wallet")
    return parser


def run_command(ip, port, args) -> Dict[str, Any]:
    if args.command == "save":
        return cmd_save(ip, port, args)
    if args.command == "retrieve":
        return cmd_retrieve(ip, port, args)
    if args.command == "delete":
        return request(ip, port, f"DELETE {args.blob_object_id}")
    return request(ip, port, args.command.upper())


def cli(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.WARNING)

    if args.host:
        ip, port = args.host, args.port
    else:
        finder = ServiceFinder(timeout=args.timeout)
        try:
            info = finder.wait_for_service()
        finally:
            finder.close()
        if not info:
            print("No service found within timeout.", file=sys.stderr)
            return 2
        ip, port = info["ip"], info["port"]

    try:
        reply = run_command(ip, port, args)
    except OSError as e:
        print(f"Connection to {ip}:{port} failed: {e}", file=sys.stderr)
        return 2
    print(json.dumps(reply, indent=2))
    return 1 if "error" in reply else 0


if __name__ == "__main__":
    sys.exit(cli())
