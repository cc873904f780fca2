"""Unit tests for the blob pipeline."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from dbwalrus.core.exceptions import (
    BlobNotFoundError,
    DecryptFailed,
    DecryptionError,
    DeleteFailed,
    RetryExhausted,
    SaveFailed,
    TransientStoreError,
    ValidationError,
)
from dbwalrus.core.models import KeyMaterial
from dbwalrus.core.pipeline import (
    BlobPipeline,
    PipelineContext,
    format_megabytes,
    humanize_blob_object,
    serialize_payload,
)
from dbwalrus.core.retry import RetryPolicy
from dbwalrus.core.storage import LocalBlobStore
from dbwalrus.security.kdf import generate_key_material

from conftest import FakeStore


@pytest.fixture
def pipeline(fake_store, signer):
    return BlobPipeline(PipelineContext(store=fake_store, signer=signer))


@pytest.fixture
def no_sleep():
    with patch.object(RetryPolicy, "_sleep", new_callable=AsyncMock) as sleep:
        yield sleep


# ==============================================================================
# Helpers
# ==============================================================================

@pytest.mark.parametrize(
    "value, expected",
    [
        ("INSERT INTO t VALUES (1);", "INSERT INTO t VALUES (1);"),
        (b"raw text", "raw text"),
        ({"rows": [1, 2, 3]}, '{"rows":[1,2,3]}'),
        ([1, "a"], '[1,"a"]'),
        (42, "42"),
    ],
)
def test_serialize_payload(value, expected):
    assert serialize_payload(value) == expected


def test_serialize_payload_rejects_unserializable():
    with pytest.raises(ValidationError):
        serialize_payload({"x": object()})
    with pytest.raises(ValidationError):
        serialize_payload(b"\xff\xfe")


@pytest.mark.parametrize("value", [float("nan"), float("inf"), {"x": float("-inf")}])
def test_serialize_payload_rejects_non_finite_numbers(value):
    with pytest.raises(ValidationError):
        serialize_payload(value)


def test_format_megabytes():
    assert format_megabytes(1024 * 1024, 6) == "1.000000 MB"
    assert format_megabytes("3145728", 2) == "3.00 MB"


def test_humanize_blob_object_leaves_input_untouched():
    original = {"id": "0x1", "size": 524288, "storage": {"storage_size": 2097152, "end_epoch": 3}}
    shown = humanize_blob_object(original)

    assert shown["size"] == "0.500000 MB"
    assert shown["storage"]["storage_size"] == "2.00 MB"
    assert shown["storage"]["end_epoch"] == 3
    assert original["size"] == 524288
    assert original["storage"]["storage_size"] == 2097152


# ==============================================================================
# Save / retrieve scenarios
# ==============================================================================

def test_encrypted_save_then_retrieve(pipeline, fake_store):
    km = generate_key_material()

    record = asyncio.run(pipeline.save({"rows": [1, 2, 3]}, km))
    assert record.blob_id in fake_store.blobs
    assert record.key_material == km
    assert record.time_spent >= 0
    # stored bytes are the envelope, not the plaintext
    assert b"rows" not in fake_store.blobs[record.blob_id]

    blob = asyncio.run(pipeline.retrieve(record.blob_id, km.key))
    assert blob.decrypted_data == '{"rows":[1,2,3]}'
    assert blob.raw_data.count(":") == 2
    assert blob.encrypted is True


def test_plain_save_then_retrieve(pipeline):
    record = asyncio.run(pipeline.save({"rows": [1, 2, 3]}))
    assert record.key_material is None

    blob = asyncio.run(pipeline.retrieve(record.blob_id))
    assert blob.raw_data == '{"rows":[1,2,3]}'
    assert blob.decrypted_data is None
    assert blob.encrypted is False


def test_save_accepts_key_material_dict(pipeline, key_material):
    record = asyncio.run(pipeline.save("SELECT 1;", key_material.to_dict()))
    assert record.key_material == key_material


def test_save_writes_with_context_options(signer):
    store = FakeStore()
    store.write = AsyncMock(wraps=store.write)
    context = PipelineContext(store=store, signer=signer, epochs=7, deletable=False)

    asyncio.run(BlobPipeline(context).save("payload"))

    store.write.assert_awaited_once_with(b"payload", epochs=7, deletable=False, owner=signer.address)


def test_save_humanizes_sizes(pipeline):
    record = asyncio.run(pipeline.save("x" * 1024))
    assert record.blob_object["size"] == "0.000977 MB"
    assert record.blob_object["storage"]["storage_size"] == "0.00 MB"
    assert record.to_dict()["blobId"] == record.blob_id


@pytest.mark.parametrize("payload", [None, "", b""])
def test_save_requires_data(pipeline, payload):
    with pytest.raises(ValidationError):
        asyncio.run(pipeline.save(payload))


def test_save_rejects_incomplete_key(pipeline):
    with pytest.raises(ValidationError):
        asyncio.run(pipeline.save("data", {"key": "11" * 32}))


# ==============================================================================
# Retry behaviour
# ==============================================================================

def test_save_exhausts_retries(signer, no_sleep):
    store = FakeStore(fail_writes=100)
    policy = RetryPolicy(max_attempts=3, base_delay_ms=200)
    pipeline = BlobPipeline(PipelineContext(store=store, signer=signer, retry=policy))

    with pytest.raises(SaveFailed) as excinfo:
        asyncio.run(pipeline.save("data"))

    assert store.write_calls == 3
    assert isinstance(excinfo.value, RetryExhausted)
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, TransientStoreError)
    assert "write 3 failed" in str(excinfo.value)
    assert [c.args[0] for c in no_sleep.await_args_list] == [0.2, 0.4]


def test_save_succeeds_on_third_attempt(signer, no_sleep):
    store = FakeStore(fail_writes=2)
    policy = RetryPolicy(max_attempts=3, base_delay_ms=10)
    pipeline = BlobPipeline(PipelineContext(store=store, signer=signer, retry=policy))

    record = asyncio.run(pipeline.save("data"))

    assert store.write_calls == 3
    assert record.blob_id in store.blobs


def test_default_policy_is_single_attempt(signer, no_sleep):
    store = FakeStore(fail_writes=1)
    pipeline = BlobPipeline(PipelineContext(store=store, signer=signer))

    with pytest.raises(SaveFailed):
        asyncio.run(pipeline.save("data"))
    assert store.write_calls == 1
    no_sleep.assert_not_awaited()


# ==============================================================================
# Retrieve failures
# ==============================================================================

def test_retrieve_with_wrong_key(pipeline, key_material):
    record = asyncio.run(pipeline.save("secret", key_material))
    try:
        blob = asyncio.run(pipeline.retrieve(record.blob_id, "44" * 32))
    except DecryptFailed:
        return
    assert blob.decrypted_data != "secret"


def test_retrieve_plain_blob_with_key_is_decrypt_failure(pipeline, key_material):
    record = asyncio.run(pipeline.save("not an envelope"))
    with pytest.raises(DecryptFailed) as excinfo:
        asyncio.run(pipeline.retrieve(record.blob_id, key_material.key))
    assert isinstance(excinfo.value, DecryptionError)


def test_retrieve_unknown_blob(pipeline):
    with pytest.raises(BlobNotFoundError):
        asyncio.run(pipeline.retrieve("missing"))


def test_retrieve_requires_blob_id(pipeline):
    with pytest.raises(ValidationError):
        asyncio.run(pipeline.retrieve(""))


# ==============================================================================
# Delete
# ==============================================================================

def test_delete_passes_signer(pipeline, fake_store, signer):
    result = asyncio.run(pipeline.delete("0xobj1"))
    assert fake_store.deleted == [("0xobj1", signer.address)]
    assert result.to_dict() == {"blobObjectId": "0xobj1", "result": {"deleted": "0xobj1"}}


def test_delete_wraps_failures_without_retry(pipeline, fake_store):
    fake_store.delete_error = TransientStoreError("network down")
    fake_store.delete = AsyncMock(side_effect=fake_store.delete_error)

    with pytest.raises(DeleteFailed) as excinfo:
        asyncio.run(pipeline.delete("0xobj1"))

    assert excinfo.value.cause is fake_store.delete_error
    assert fake_store.delete.await_count == 1


def test_delete_requires_id(pipeline):
    with pytest.raises(ValidationError):
        asyncio.run(pipeline.delete(""))


# ==============================================================================
# End to end over the local store
# ==============================================================================

def test_local_store_end_to_end(tmp_path, signer, key_material):
    pipeline = BlobPipeline(PipelineContext(store=LocalBlobStore(str(tmp_path)), signer=signer))

    record = asyncio.run(pipeline.save([{"id": 1, "name": "alice"}], key_material))
    blob = asyncio.run(pipeline.retrieve(record.blob_id, key_material.key))
    assert blob.decrypted_data == '[{"id":1,"name":"alice"}]'

    asyncio.run(pipeline.delete(record.blob_object["id"]))
    with pytest.raises(BlobNotFoundError):
        asyncio.run(pipeline.retrieve(record.blob_id))


def test_generate_key(pipeline):
    km = pipeline.generate_key()
    assert isinstance(km, KeyMaterial)
    assert 100_000 <= km.iterations < 150_000
