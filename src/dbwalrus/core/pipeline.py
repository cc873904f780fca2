"""Save / retrieve / delete orchestration over a BlobStore.

The pipeline is stateless apart from its PipelineContext, which is built once
at startup (store handle, signer, retry policy, write options) and only read
afterwards, so concurrent requests can share one pipeline.
"""
from __future__ import annotations

import copy
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from ..security import crypto, kdf
from .exceptions import (
    DecryptFailed,
    DecryptionError,
    DeleteFailed,
    RetryExhausted,
    SaveFailed,
    ValidationError,
)
from .models import BlobRecord, DeletionResult, KeyMaterial, RetrievedBlob
from .retry import RetryPolicy
from .storage import BlobStore

logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024


@dataclass(frozen=True)
class PipelineContext:
    store: BlobStore
    signer: Any
    retry: RetryPolicy = RetryPolicy()
    epochs: int = 3
    deletable: bool = True


def serialize_payload(value: Any) -> str:
    """Canonical text form of a payload: strings as-is, the rest compact JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError("binary payloads must be UTF-8 text") from e
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"payload is not JSON serializable: {e}") from e


def format_megabytes(value: Any, precision: int) -> str:
    return f"{int(value) / MEGABYTE:.{precision}f} MB"


def humanize_blob_object(blob_object: dict) -> dict:
    # display-only rewrite of byte counts; the stored object is untouched
    shown = copy.deepcopy(blob_object)
    if "size" in shown:
        shown["size"] = format_megabytes(shown["size"], 6)
    storage = shown.get("storage")
    if isinstance(storage, dict) and "storage_size" in storage:
        storage["storage_size"] = format_megabytes(storage["storage_size"], 2)
    return shown


class BlobPipeline:
    def __init__(self, context: PipelineContext):
        self.context = context

    def generate_key(self) -> KeyMaterial:
        return kdf.generate_key_material()

    async def save(self, payload: Any, key_material: Optional[KeyMaterial] = None) -> BlobRecord:
        """
        Store ``payload`` (encrypted when ``key_material`` is given).

        Raises ValidationError for unusable input and SaveFailed once the
        retry policy gives up.
        """
        if payload is None or payload == "" or payload == b"":
            raise ValidationError("Data is required")
        if key_material is not None and not isinstance(key_material, KeyMaterial):
            key_material = KeyMaterial.from_dict(key_material)

        text = serialize_payload(payload)
        if key_material is not None:
            text = crypto.encrypt(text, key_material)
        data = text.encode("utf-8")

        ctx = self.context
        owner = ctx.signer.address
        started = time.monotonic()

        async def write_once():
            return await ctx.store.write(
                data, epochs=ctx.epochs, deletable=ctx.deletable, owner=owner
            )

        try:
            stored = await ctx.retry.run(write_once, description="blob write")
        except RetryExhausted as e:
            logger.error("Failed to save blob after %d attempts", e.attempts)
            raise SaveFailed(e.attempts, e.last_error) from e.last_error

        time_spent = time.monotonic() - started
        logger.info(
            "Blob saved successfully with ID %s in %.3fs (encrypted=%s)",
            stored.blob_id, time_spent, key_material is not None,
        )
        return BlobRecord(
            blob_id=stored.blob_id,
            blob_object=humanize_blob_object(stored.blob_object),
            time_spent=time_spent,
            key_material=key_material,
        )

    async def retrieve(self, blob_id: str, decryption_key: Optional[str] = None) -> RetrievedBlob:
        if not blob_id:
            raise ValidationError("Blob ID is required")

        raw = await self.context.store.read(blob_id)
        raw_data = raw.decode("utf-8", errors="replace")

        decrypted = None
        if decryption_key:
            try:
                decrypted = crypto.decrypt_text(raw_data, decryption_key)
            except DecryptionError as e:
                logger.info("Decryption of blob %s failed", blob_id)
                raise DecryptFailed("Failed to decrypt data") from e

        logger.info("Retrieved blob %s (%d bytes)", blob_id, len(raw))
        return RetrievedBlob(blob_id=blob_id, raw_data=raw_data, decrypted_data=decrypted)

    async def delete(self, blob_object_id: str) -> DeletionResult:
        if not blob_object_id:
            raise ValidationError("Blob object ID is required")
        try:
            result = await self.context.store.delete(blob_object_id, self.context.signer)
        except Exception as e:
            logger.error("Deleting blob object %s failed: %s", blob_object_id, e)
            raise DeleteFailed(e) from e
        logger.info("Blob object %s deleted", blob_object_id)
        return DeletionResult(blob_object_id=blob_object_id, result=result or {})
