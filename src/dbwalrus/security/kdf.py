"""Key derivation for DBWalrus envelope encryption."""
import os
import secrets
from typing import Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.models import KeyMaterial

KEY_BYTES = 32
SALT_BYTES = 32
ENTROPY_BYTES = 64
MIN_ITERATIONS = 100_000
MAX_ITERATIONS = 150_000


def generate_salt(length: int = SALT_BYTES) -> bytes:
    """Return a cryptographically secure random salt."""
    return os.urandom(length)


def random_iterations() -> int:
    # uniform in [MIN_ITERATIONS, MAX_ITERATIONS)
    return MIN_ITERATIONS + secrets.randbelow(MAX_ITERATIONS - MIN_ITERATIONS)


def derive_key(
    secret: Union[bytes, str],
    salt: bytes,
    iterations: int,
    key_len: int = KEY_BYTES,
) -> bytes:
    """
    Derive a key with PBKDF2-HMAC-SHA512.
    Returns raw derived key bytes.
    """
    if isinstance(secret, str):
        secret = secret.encode("utf-8")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=key_len,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


def generate_key_material() -> KeyMaterial:
    """
    Produce a fresh AES-256 key with its public derivation parameters.

    The key is derived from 512 bits of throwaway entropy, so nobody (the
    service included) can re-derive it; salt and iterations only document
    the strength of the derivation and travel inside every envelope.
    """
    salt = generate_salt()
    entropy = os.urandom(ENTROPY_BYTES)
    iterations = random_iterations()
    key = derive_key(entropy.hex(), salt, iterations)
    return KeyMaterial(key=key.hex(), salt=salt.hex(), iterations=iterations)
