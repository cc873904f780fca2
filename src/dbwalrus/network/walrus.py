"""
Walrus HTTP backend for the BlobStore contract.

Writes go to a publisher (``PUT /v1/blobs``), reads to an aggregator
(``GET /v1/blobs/<blob_id>``). The publisher answers either with a
``newlyCreated`` blob object or with ``alreadyCertified`` when the same bytes
are already stored for long enough; both are normalized to the snake_case
blob object shape the pipeline expects.

Deleting a blob object needs a signed chain transaction from the object's
owner, which the HTTP publisher does not offer, so ``delete`` always fails
with BlobStoreError.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict

import requests

from ..core.exceptions import BlobNotFoundError, BlobStoreError, TransientStoreError
from ..core.models import StoredBlob

logger = logging.getLogger(__name__)

TESTNET_PUBLISHER = "https://publisher.walrus-testnet.walrus.space"
TESTNET_AGGREGATOR = "https://aggregator.walrus-testnet.walrus.space"

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")
# blob ids are unpadded url-safe base64
BLOB_ID_RE = re.compile(r"[A-Za-z0-9_-]+")


def snake_keys(value: Any) -> Any:
    """Recursively convert camelCase dict keys to snake_case."""
    if isinstance(value, dict):
        return {_CAMEL.sub("_", k).lower(): snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [snake_keys(v) for v in value]
    return value


def parse_store_response(payload: Dict[str, Any], owner: str) -> StoredBlob:
    if "newlyCreated" in payload:
        created = payload["newlyCreated"]
        blob_object = snake_keys(created["blobObject"])
        if "cost" in created:
            blob_object["cost"] = created["cost"]
        blob_object.setdefault("owner", owner)
        return StoredBlob(blob_id=blob_object["blob_id"], blob_object=blob_object)

    if "alreadyCertified" in payload:
        certified = snake_keys(payload["alreadyCertified"])
        # no new object was created, so there is no object id or size to report
        blob_object = {
            "id": None,
            "blob_id": certified["blob_id"],
            "size": 0,
            "storage": {"storage_size": 0, "end_epoch": certified.get("end_epoch")},
            "already_certified": True,
            "owner": owner,
        }
        return StoredBlob(blob_id=certified["blob_id"], blob_object=blob_object)

    raise TransientStoreError(f"Unexpected publisher response: {sorted(payload)}")


class WalrusHttpStore:
    def __init__(
        self,
        publisher_url: str = TESTNET_PUBLISHER,
        aggregator_url: str = TESTNET_AGGREGATOR,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.publisher_url = publisher_url.rstrip("/")
        self.aggregator_url = aggregator_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    async def write(
        self, data: bytes, *, epochs: int, deletable: bool, owner: str
    ) -> StoredBlob:
        return await asyncio.to_thread(self._write, data, epochs, deletable, owner)

    async def read(self, blob_id: str) -> bytes:
        return await asyncio.to_thread(self._read, blob_id)

    async def delete(self, blob_object_id: str, signer) -> Dict[str, Any]:
        raise BlobStoreError(
            "Deleting blob objects requires a signed transaction; "
            "the Walrus HTTP publisher cannot delete blob objects"
        )

    def _write(self, data: bytes, epochs: int, deletable: bool, owner: str) -> StoredBlob:
        params = {"epochs": epochs}
        if deletable:
            params["deletable"] = "true"
        if owner:
            params["send_object_to"] = owner
        url = f"{self.publisher_url}/v1/blobs"
        try:
            resp = self.session.put(url, params=params, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientStoreError(f"publisher unreachable: {e}") from e
        if not resp.ok:
            raise TransientStoreError(f"publisher returned {resp.status_code}: {resp.text[:200]}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise TransientStoreError("publisher returned invalid JSON") from e
        stored = parse_store_response(payload, owner)
        logger.debug("Publisher stored blob %s", stored.blob_id)
        return stored

    def _read(self, blob_id: str) -> bytes:
        if not isinstance(blob_id, str) or not BLOB_ID_RE.fullmatch(blob_id):
            raise BlobNotFoundError(f"Unknown blob id: {blob_id!r}")
        url = f"{self.aggregator_url}/v1/blobs/{blob_id}"
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientStoreError(f"aggregator unreachable: {e}") from e
        if resp.status_code == 404:
            raise BlobNotFoundError(f"Blob {blob_id} not found")
        if not resp.ok:
            raise TransientStoreError(f"aggregator returned {resp.status_code}")
        return resp.content
