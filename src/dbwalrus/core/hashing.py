""" Utility for content addressing. """

import base64
import hashlib


def calculate_sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_blob_id(data: bytes) -> str:
    # unpadded url-safe base64 of the digest, same shape as Walrus blob ids
    digest = hashlib.sha256(data).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
