"""AES-256-CBC envelope encryption for blob payloads.

Envelope layout (ASCII, ':' separated, none of the parts can contain ':'):
- BASE64 of the metadata JSON ``{"salt": "<hex>", "iterations": <int>}``
- HEX of the 16-byte IV
- BASE64 of the AES-CBC ciphertext (PKCS#7 padded)

The envelope carries everything needed for decryption except the key.

Known limitation: there is no MAC over the envelope. A wrong key or a
tampered ciphertext usually fails the padding check, but it can also unpad
cleanly and yield garbage, so a successful decrypt is not proof of
authenticity.
"""
from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass
from typing import Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..core.exceptions import DecryptionError, MalformedEnvelopeError, ValidationError
from ..core.models import KeyMaterial

DELIMITER = ":"
IV_BYTES = 16
BLOCK_BITS = 128
KEY_BYTES = 32


@dataclass(frozen=True)
class EnvelopeMetadata:
    salt: str
    iterations: int

    def to_json(self) -> str:
        return json.dumps(
            {"salt": self.salt, "iterations": self.iterations}, separators=(",", ":")
        )


@dataclass(frozen=True)
class Envelope:
    metadata: EnvelopeMetadata
    iv: bytes
    ciphertext: bytes

    def encode(self) -> str:
        meta = base64.b64encode(self.metadata.to_json().encode("utf-8")).decode("ascii")
        ct = base64.b64encode(self.ciphertext).decode("ascii")
        return DELIMITER.join((meta, self.iv.hex(), ct))

    @classmethod
    def decode(cls, text: str) -> "Envelope":
        parts = text.strip().split(DELIMITER)
        if len(parts) != 3:
            raise MalformedEnvelopeError(f"expected 3 envelope parts, got {len(parts)}")
        meta_b64, iv_hex, ct_b64 = parts

        try:
            meta = json.loads(base64.b64decode(meta_b64, validate=True).decode("utf-8"))
            metadata = EnvelopeMetadata(salt=str(meta["salt"]), iterations=int(meta["iterations"]))
        except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise MalformedEnvelopeError("unreadable envelope metadata") from e

        try:
            iv = bytes.fromhex(iv_hex)
        except ValueError as e:
            raise MalformedEnvelopeError("IV is not hex") from e
        if len(iv) != IV_BYTES:
            raise MalformedEnvelopeError("IV must be 16 bytes")

        try:
            ciphertext = base64.b64decode(ct_b64, validate=True)
        except binascii.Error as e:
            raise MalformedEnvelopeError("ciphertext is not base64") from e
        if not ciphertext or len(ciphertext) % (BLOCK_BITS // 8):
            raise MalformedEnvelopeError("ciphertext is not a whole number of blocks")

        return cls(metadata=metadata, iv=iv, ciphertext=ciphertext)


def _parse_key(key: Union[str, bytes], error=DecryptionError) -> bytes:
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key)
        except ValueError as e:
            raise error("key is not hex") from e
    if len(key) != KEY_BYTES:
        raise error("key must be 256 bits")
    return key


def encrypt(plaintext: Union[bytes, str], key: KeyMaterial) -> str:
    """Encrypt ``plaintext`` under ``key.key`` and return the encoded envelope."""
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")

    raw_key = _parse_key(key.key, error=ValidationError)
    # fresh IV per call, CBC leaks structure on reuse
    iv = os.urandom(IV_BYTES)

    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(raw_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    envelope = Envelope(
        metadata=EnvelopeMetadata(salt=key.salt, iterations=key.iterations),
        iv=iv,
        ciphertext=ciphertext,
    )
    return envelope.encode()


def decrypt(envelope: str, key: Union[str, bytes]) -> bytes:
    """Decrypt an encoded envelope with the raw (hex) key."""
    parsed = Envelope.decode(envelope)
    raw_key = _parse_key(key)

    decryptor = Cipher(algorithms.AES(raw_key), modes.CBC(parsed.iv)).decryptor()
    padded = decryptor.update(parsed.ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("padding check failed") from e


def decrypt_text(envelope: str, key: Union[str, bytes]) -> str:
    plaintext = decrypt(envelope, key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("plaintext is not UTF-8") from e
