"""
Blob store contract and a local, filesystem-backed implementation

Structure Map for reference:
==============================
 - <storage_root>/
      - blobs/
          - {blob_id}           (content addressed bytes)
      - objects/
          - {object_id}.json    (one blob object per write)
==============================
For reference:
> A blob id is derived from the bytes (unpadded url-safe base64 of SHA-256), so
  identical payloads share one file on disk.
> Every write still registers a new blob object with its own id, owner and
  lifetime, mirroring how the remote store hands out objects.
> Deleting the last object that references a blob removes the bytes.

The pipeline only talks to the BlobStore protocol; WalrusHttpStore in
dbwalrus.network.walrus is the remote implementation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from .exceptions import AccessDeniedError, BlobNotFoundError, BlobStoreError
from .hashing import calculate_sha256_bytes, content_blob_id
from .models import StoredBlob

logger = logging.getLogger(__name__)


@runtime_checkable
class BlobStore(Protocol):
    async def write(
        self, data: bytes, *, epochs: int, deletable: bool, owner: str
    ) -> StoredBlob:
        ...

    async def read(self, blob_id: str) -> bytes:
        ...

    async def delete(self, blob_object_id: str, signer) -> Dict[str, Any]:
        ...


class LocalBlobStore:
    """Filesystem blob store honouring the BlobStore contract"""

    def __init__(self, root_path: Optional[str] = None):
        self.root = (
            Path(root_path).expanduser() if root_path else Path.home() / ".dbwalrus"
        )
        self.blob_root.mkdir(parents=True, exist_ok=True)
        self.object_root.mkdir(parents=True, exist_ok=True)
        # guards the object index against concurrent write/delete threads
        self._lock = threading.Lock()

    @property
    def blob_root(self) -> Path:
        return self.root / "blobs"

    @property
    def object_root(self) -> Path:
        return self.root / "objects"

    def blob_path(self, blob_id: str) -> Path:
        if not blob_id or "/" in blob_id or blob_id.startswith("."):
            raise BlobNotFoundError(f"Unknown blob id: {blob_id}")
        return self.blob_root / blob_id

    def object_path(self, object_id: str) -> Path:
        if not object_id or "/" in object_id or object_id.startswith("."):
            raise BlobNotFoundError(f"Unknown blob object: {object_id}")
        return self.object_root / f"{object_id}.json"

    # ------------------------------------------------------------------
    # BlobStore protocol
    # ------------------------------------------------------------------

    async def write(
        self, data: bytes, *, epochs: int, deletable: bool, owner: str
    ) -> StoredBlob:
        return await asyncio.to_thread(self._write, data, epochs, deletable, owner)

    async def read(self, blob_id: str) -> bytes:
        return await asyncio.to_thread(self._read, blob_id)

    async def delete(self, blob_object_id: str, signer) -> Dict[str, Any]:
        return await asyncio.to_thread(self._delete, blob_object_id, signer.address)

    # ------------------------------------------------------------------
    # Blocking implementation
    # ------------------------------------------------------------------

    def _write(self, data: bytes, epochs: int, deletable: bool, owner: str) -> StoredBlob:
        if epochs < 1:
            raise BlobStoreError("epochs must be >= 1")
        blob_id = content_blob_id(data)
        object_id = "0x" + secrets.token_hex(32)
        blob_object = {
            "id": object_id,
            "blob_id": blob_id,
            "size": len(data),
            "sha256": calculate_sha256_bytes(data),
            "registered_at": datetime.now(timezone.utc).isoformat(),
            "storage": {
                "storage_size": len(data),
                "start_epoch": 0,
                "end_epoch": epochs,
            },
            "deletable": bool(deletable),
            "owner": owner,
        }
        with self._lock:
            destination = self.blob_path(blob_id)
            if not destination.exists():
                self._atomic_write(destination, data)
            self._atomic_write(
                self.object_path(object_id),
                json.dumps(blob_object, ensure_ascii=False).encode("utf-8"),
            )
        logger.debug("Stored blob %s as object %s (%d bytes)", blob_id, object_id, len(data))
        return StoredBlob(blob_id=blob_id, blob_object=blob_object)

    def _read(self, blob_id: str) -> bytes:
        path = self.blob_path(blob_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(f"Blob {blob_id} not found") from None

    def _delete(self, object_id: str, address: str) -> Dict[str, Any]:
        with self._lock:
            blob_object = self.load_object(object_id)
            if blob_object.get("owner") != address:
                raise AccessDeniedError(f"{address} does not own blob object {object_id}")
            if not blob_object.get("deletable"):
                raise BlobStoreError(f"Blob object {object_id} is not deletable")

            blob_id = blob_object["blob_id"]
            shared = self._is_referenced(blob_id, exclude=object_id)
            self.object_path(object_id).unlink()
            removed_bytes = False
            if not shared:
                try:
                    self.blob_path(blob_id).unlink()
                    removed_bytes = True
                except FileNotFoundError:
                    pass
        logger.debug("Deleted blob object %s (blob %s)", object_id, blob_id)
        return {"deleted": object_id, "blob_id": blob_id, "blob_removed": removed_bytes}

    def load_object(self, object_id: str) -> Dict[str, Any]:
        path = self.object_path(object_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise BlobNotFoundError(f"Blob object {object_id} not found") from None

    def _is_referenced(self, blob_id: str, exclude: Optional[str] = None) -> bool:
        skip = f"{exclude}.json" if exclude else None
        for path in self.object_root.glob("*.json"):
            if path.name == skip:
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    record = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable blob object %s: %s", path.name, e)
                continue
            if isinstance(record, dict) and record.get("blob_id") == blob_id:
                return True
        return False

    def _atomic_write(self, destination: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, destination)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
