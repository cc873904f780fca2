"""Signer identity used for store-mutating calls.

The identity is an Ed25519 keypair. Its address follows the Sui scheme:
``0x`` + hex(BLAKE2b-256(scheme_flag || public_key)) with flag 0x00 for
Ed25519. It is built once at process start and only read afterwards.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from keyring.errors import KeyringError

from ..core.exceptions import ConfigurationError
from . import keystore

logger = logging.getLogger(__name__)

ED25519_FLAG = 0x00
SECRET_BYTES = 32


class SignerIdentity:
    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self.public_key_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        digest = hashlib.blake2b(
            bytes([ED25519_FLAG]) + self.public_key_bytes, digest_size=32
        ).digest()
        self.address = "0x" + digest.hex()

    def __repr__(self) -> str:
        return f"SignerIdentity(address={self.address!r})"

    @classmethod
    def generate(cls) -> "SignerIdentity":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_secret_key(cls, secret: bytes) -> "SignerIdentity":
        """Accept a raw 32-byte seed, or 33 bytes prefixed with the scheme flag."""
        if len(secret) == SECRET_BYTES + 1:
            if secret[0] != ED25519_FLAG:
                raise ConfigurationError("signer key is not an Ed25519 key")
            secret = secret[1:]
        if len(secret) != SECRET_BYTES:
            raise ConfigurationError("signer key must be 32 bytes")
        return cls(Ed25519PrivateKey.from_private_bytes(secret))

    @classmethod
    def from_base64(cls, text: str) -> "SignerIdentity":
        try:
            raw = base64.b64decode(text.strip(), validate=True)
        except binascii.Error as e:
            raise ConfigurationError("signer key is not valid base64") from e
        return cls.from_secret_key(raw)

    def secret_bytes(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)


def load_signer(settings) -> SignerIdentity:
    """
    Resolve the signer for this process.

    Order: configured base64 secret, then the OS keyring, then a freshly
    generated keypair (persisted to the keyring when ``persist_signer`` is set
    and the backend looks safe).
    """
    if settings.signer_secret:
        try:
            return SignerIdentity.from_base64(settings.signer_secret)
        except ConfigurationError as e:
            logger.error("Failed to load configured signer key: %s", e)
            logger.warning("Falling back to new keypair generation")
            return SignerIdentity.generate()

    service, account = settings.keyring_service, settings.keyring_account
    try:
        stored = keystore.load_key(service, account)
    except KeyringError as e:
        logger.warning("OS keyring unavailable: %s", e)
        stored = None

    if stored is not None:
        try:
            return SignerIdentity.from_secret_key(stored)
        except ConfigurationError as e:
            logger.error("Ignoring signer key in keyring %s/%s: %s", service, account, e)

    signer = SignerIdentity.generate()
    logger.warning("Using a freshly generated signer %s", signer.address)

    if settings.persist_signer:
        secure, msg = keystore.assess_keyring_backend()
        if not secure:
            logger.warning("Not persisting signer key: %s", msg)
        else:
            try:
                keystore.save_key(service, account, signer.secret_bytes())
            except KeyringError as e:
                logger.warning("Could not persist signer key: %s", e)
    return signer
