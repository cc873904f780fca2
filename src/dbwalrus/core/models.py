"""
Base data models passed between the pipeline, the stores and the network layer
"""

from __future__ import annotations

import string
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .exceptions import ValidationError

HEX_DIGITS = frozenset(string.hexdigits)


def _is_hex(value: str, length: Optional[int] = None) -> bool:
    if not value or any(ch not in HEX_DIGITS for ch in value):
        return False
    if length is not None and len(value) != length:
        return False
    return len(value) % 2 == 0


@dataclass(frozen=True)
class KeyMaterial:
    """Derived AES key plus the public parameters it was derived with.

    ``key`` and ``salt`` are hex strings (64 chars, 256 bits each). The
    service hands this back to the caller once and never persists it.
    """

    key: str
    salt: str
    iterations: int

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "salt": self.salt, "iterations": self.iterations}

    @classmethod
    def from_dict(cls, data: Any) -> "KeyMaterial":
        if not isinstance(data, dict):
            raise ValidationError(
                "encryptionKey must be an object with key, salt, and iterations properties"
            )
        key = data.get("key")
        salt = data.get("salt")
        iterations = data.get("iterations")
        if not key or not salt or not iterations:
            raise ValidationError(
                "encryptionKey must be an object with key, salt, and iterations properties"
            )
        if not isinstance(key, str) or not _is_hex(key, 64):
            raise ValidationError("encryptionKey.key must be 64 hex characters")
        if not isinstance(salt, str) or not _is_hex(salt):
            raise ValidationError("encryptionKey.salt must be a hex string")
        if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations <= 0:
            raise ValidationError("encryptionKey.iterations must be a positive integer")
        return cls(key=key.lower(), salt=salt.lower(), iterations=iterations)


@dataclass(frozen=True)
class StoredBlob:
    # what a BlobStore hands back after a successful write
    blob_id: str
    blob_object: Dict[str, Any]


@dataclass(frozen=True)
class BlobRecord:
    blob_id: str
    blob_object: Dict[str, Any]
    time_spent: float
    key_material: Optional[KeyMaterial] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blobId": self.blob_id,
            "blobObject": self.blob_object,
            "timeSpent": self.time_spent,
            "encryptionKey": self.key_material.to_dict() if self.key_material else None,
        }


@dataclass(frozen=True)
class RetrievedBlob:
    blob_id: str
    raw_data: str
    decrypted_data: Optional[str] = None

    @property
    def encrypted(self) -> bool:
        return self.decrypted_data is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blobId": self.blob_id,
            "rawData": self.raw_data,
            "decryptedData": self.decrypted_data,
            "encrypted": self.encrypted,
        }


@dataclass(frozen=True)
class DeletionResult:
    blob_object_id: str
    result: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"blobObjectId": self.blob_object_id, "result": self.result}
