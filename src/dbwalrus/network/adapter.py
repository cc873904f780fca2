"""Request handlers between the line protocol and the blob pipeline.

Each handler takes already-decoded request parts and returns a JSON-able
dict. Errors are turned into ``{"error": kind, "details": ...}`` here and
never reach the server loop.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..core.exceptions import DBWalrusError, ValidationError, to_error_dict
from ..core.models import KeyMaterial
from ..core.pipeline import BlobPipeline

logger = logging.getLogger(__name__)


def _failure(exc: BaseException, action: str) -> Dict[str, Any]:
    if isinstance(exc, DBWalrusError):
        logger.warning("%s failed: %s (%s)", action, exc.kind, exc.__class__.__name__)
    else:
        logger.exception("%s failed unexpectedly", action)
    return to_error_dict(exc)


def extract_decryption_key(body: Optional[Dict[str, Any]]) -> Optional[str]:
    """Accept ``{"encryptionKey": "<hex>"}`` or ``{"encryptionKey": {"key": "<hex>", ...}}``."""
    if not body:
        return None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    value = body.get("encryptionKey")
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("key")
    if not isinstance(value, str) or not value:
        raise ValidationError("encryptionKey must be a hex string or an object with a key property")
    return value


async def handle_save(pipeline: BlobPipeline, body: Any) -> Dict[str, Any]:
    try:
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        data = body.get("data")
        # None, "", 0 and false all count as missing
        if data is None or data == "" or data == 0:
            raise ValidationError("Data is required in request body")
        key_material = None
        if body.get("encryptionKey") is not None:
            key_material = KeyMaterial.from_dict(body["encryptionKey"])
        record = await pipeline.save(data, key_material)
    except Exception as e:
        return _failure(e, "save")
    result = record.to_dict()
    result["success"] = True
    result["message"] = "SQL data stored successfully on Walrus"
    return result


async def handle_retrieve(pipeline: BlobPipeline, blob_id: str, body: Any = None) -> Dict[str, Any]:
    try:
        key = extract_decryption_key(body)
        blob = await pipeline.retrieve(blob_id, key)
    except Exception as e:
        return _failure(e, "retrieve")
    result = blob.to_dict()
    result["success"] = True
    result["message"] = "SQL data retrieved successfully from Walrus"
    return result


async def handle_delete(pipeline: BlobPipeline, blob_object_id: str) -> Dict[str, Any]:
    try:
        deletion = await pipeline.delete(blob_object_id)
    except Exception as e:
        return _failure(e, "delete")
    result = deletion.to_dict()
    result["success"] = True
    result["message"] = "Blob deleted successfully from Walrus"
    return result


def handle_generate_key(pipeline: BlobPipeline) -> Dict[str, Any]:
    try:
        key_material = pipeline.generate_key()
    except Exception as e:
        return _failure(e, "key generation")
    return {
        "success": True,
        "encryptionKey": key_material.to_dict(),
        "message": "Encryption key generated successfully",
    }


def handle_wallet_info(pipeline: BlobPipeline, network: str) -> Dict[str, Any]:
    return {
        "address": pipeline.context.signer.address,
        "network": network,
        "message": "Wallet information for Walrus operations",
    }
