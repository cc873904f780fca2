"""Security helpers: key derivation, envelope encryption and signer identity.

This package provides:
- PBKDF2-HMAC-SHA512 key material generation
- AES-256-CBC envelope encryption/decryption with a self-describing format
- the Ed25519 signer identity and its OS keyring storage
"""

from .kdf import generate_key_material, derive_key, generate_salt
from .crypto import Envelope, EnvelopeMetadata, encrypt, decrypt, decrypt_text
from .identity import SignerIdentity, load_signer

__all__ = [
    "generate_key_material",
    "derive_key",
    "generate_salt",
    "Envelope",
    "EnvelopeMetadata",
    "encrypt",
    "decrypt",
    "decrypt_text",
    "SignerIdentity",
    "load_signer",
]
