"""Signer secret storage in the OS keyring.

The service's Ed25519 seed is the only secret DBWalrus keeps between runs.
It lives in the platform keyring as base64 text under
``(keyring_service, keyring_account)``; envelope keys are handed back to
callers and never reach this module.

``load_signer`` only persists a freshly generated seed when
``assess_keyring_backend`` accepts the active backend, so a plaintext or
null keyring never ends up holding the signer.
"""
import base64
import binascii
import logging
from typing import Optional, Tuple

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

# class-name fragments of keyring backends that store secrets unprotected
# or not at all (keyrings.alt plaintext/file backends, keyring.backends.fail)
UNSAFE_BACKEND_MARKERS = ("Plaintext", "Uncrypted", "Simple", "File", "fail")


def save_key(service: str, account: str, key_bytes: bytes) -> None:
    """Store a signer seed; backend failures surface as KeyringError."""
    keyring.set_password(service, account, base64.b64encode(key_bytes).decode("ascii"))


def load_key(service: str, account: str) -> Optional[bytes]:
    """Return the stored signer seed, or None when nothing usable is stored."""
    stored = keyring.get_password(service, account)
    if stored is None:
        return None
    try:
        return base64.b64decode(stored, validate=True)
    except binascii.Error:
        logger.warning("Signer entry %s/%s is not base64, ignoring it", service, account)
        return None


def delete_key(service: str, account: str) -> None:
    try:
        keyring.delete_password(service, account)
    except KeyringError:
        logger.debug("No signer entry removed for %s/%s", service, account)


def assess_keyring_backend() -> Tuple[bool, str]:
    """Decide whether the active backend may hold the signer seed.

    Returns ``(acceptable, reason)``.
    """
    try:
        backend = keyring.get_keyring()
    except KeyringError as e:
        return False, f"failed to get keyring backend: {e}"

    name = type(backend).__name__
    marker = next((m for m in UNSAFE_BACKEND_MARKERS if m in name), None)
    if marker is not None:
        return False, f"insecure backend detected: {name}"

    # keyring ranks backends by priority; <= 0 means "not viable here"
    priority = getattr(backend, "priority", None)
    if priority is not None and priority <= 0:
        return False, f"backend {name} is not viable for the signer seed (priority={priority})"
    return True, f"signer seed can be kept in {name} (priority={priority})"
