"""Shared fakes for the unit tests."""

from types import SimpleNamespace

import pytest

from dbwalrus.core.exceptions import BlobNotFoundError, TransientStoreError
from dbwalrus.core.hashing import content_blob_id
from dbwalrus.core.models import KeyMaterial, StoredBlob


class FakeStore:
    """In-memory BlobStore that can be told to fail the first N writes."""

    def __init__(self, fail_writes=0):
        self.fail_writes = fail_writes
        self.write_calls = 0
        self.blobs = {}
        self.deleted = []
        self.delete_error = None

    async def write(self, data, *, epochs, deletable, owner):
        self.write_calls += 1
        if self.write_calls <= self.fail_writes:
            raise TransientStoreError(f"write {self.write_calls} failed")
        blob_id = content_blob_id(data)
        self.blobs[blob_id] = data
        return StoredBlob(
            blob_id=blob_id,
            blob_object={
                "id": f"0xobj{self.write_calls}",
                "blob_id": blob_id,
                "size": len(data),
                "storage": {"storage_size": len(data) * 5, "start_epoch": 0, "end_epoch": epochs},
                "deletable": deletable,
                "owner": owner,
            },
        )

    async def read(self, blob_id):
        try:
            return self.blobs[blob_id]
        except KeyError:
            raise BlobNotFoundError(f"Blob {blob_id} not found") from None

    async def delete(self, blob_object_id, signer):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append((blob_object_id, signer.address))
        return {"deleted": blob_object_id}


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def signer():
    return SimpleNamespace(address="0x" + "ab" * 32)


@pytest.fixture
def key_material():
    # fixed material; encryption never re-runs the KDF
    return KeyMaterial(key="11" * 32, salt="22" * 32, iterations=120000)
