"""Unit tests for the network adapter module."""

import asyncio
from unittest.mock import patch

import pytest
from dbwalrus.core.exceptions import DECRYPTION_DETAIL, INTERNAL_DETAIL, ValidationError
from dbwalrus.core.pipeline import BlobPipeline, PipelineContext
from dbwalrus.core.retry import RetryPolicy
from dbwalrus.network import adapter


# --- Fixtures ---

@pytest.fixture
def pipeline(fake_store, signer):
    return BlobPipeline(PipelineContext(store=fake_store, signer=signer, retry=RetryPolicy(max_attempts=1)))


def save(pipeline, body):
    return asyncio.run(adapter.handle_save(pipeline, body))


def retrieve(pipeline, blob_id, body=None):
    return asyncio.run(adapter.handle_retrieve(pipeline, blob_id, body))


# --- extract_decryption_key ---

def test_extract_key_forms():
    assert adapter.extract_decryption_key(None) is None
    assert adapter.extract_decryption_key({}) is None
    assert adapter.extract_decryption_key({"encryptionKey": "ab" * 32}) == "ab" * 32
    assert adapter.extract_decryption_key({"encryptionKey": {"key": "cd" * 32, "salt": "00"}}) == "cd" * 32


@pytest.mark.parametrize("body", [{"encryptionKey": 5}, {"encryptionKey": {"salt": "00"}}, {"encryptionKey": ""}, ["x"]])
def test_extract_key_rejects(body):
    with pytest.raises(ValidationError):
        adapter.extract_decryption_key(body)


# --- handle_save ---

def test_save_plain(pipeline, fake_store):
    result = save(pipeline, {"data": {"rows": [1, 2]}})

    assert result["success"] is True
    assert result["message"] == "SQL data stored successfully on Walrus"
    assert result["encryptionKey"] is None
    assert result["blobId"] in fake_store.blobs
    assert fake_store.blobs[result["blobId"]] == b'{"rows":[1,2]}'
    assert set(result) >= {"blobId", "blobObject", "timeSpent"}


def test_save_encrypted_then_retrieve(pipeline, key_material):
    saved = save(pipeline, {"data": "SELECT 1;", "encryptionKey": key_material.to_dict()})
    assert saved["encryptionKey"] == key_material.to_dict()

    got = retrieve(pipeline, saved["blobId"], {"encryptionKey": key_material.key})
    assert got["success"] is True
    assert got["encrypted"] is True
    assert got["decryptedData"] == "SELECT 1;"
    assert got["rawData"].count(":") == 2


@pytest.mark.parametrize(
    "body", [None, "text", {"data": None}, {"data": ""}, {"data": 0}, {"data": 0.0}, {"data": False}, {}]
)
def test_save_requires_data(pipeline, fake_store, body):
    result = save(pipeline, body)
    assert result["error"] == "validation_error"
    assert fake_store.write_calls == 0


def test_save_incomplete_key(pipeline, fake_store):
    result = save(pipeline, {"data": "x", "encryptionKey": {"key": "ab" * 32}})
    assert result == {
        "error": "validation_error",
        "details": "encryptionKey must be an object with key, salt, and iterations properties",
    }
    assert fake_store.write_calls == 0


def test_save_store_failure(fake_store, signer):
    fake_store.fail_writes = 5
    pipeline = BlobPipeline(PipelineContext(store=fake_store, signer=signer, retry=RetryPolicy(2, 0)))

    result = save(pipeline, {"data": "x"})

    assert result["error"] == "retry_exhausted"
    assert result["details"].startswith("Failed to save blob after 2 attempts")


def test_save_unexpected_error_is_internal(pipeline):
    with patch.object(pipeline, "save", side_effect=RuntimeError("boom")):
        result = save(pipeline, {"data": "x"})
    assert result == {"error": "internal_error", "details": INTERNAL_DETAIL}


# --- handle_retrieve ---

def test_retrieve_plain(pipeline):
    saved = save(pipeline, {"data": "hello"})
    got = retrieve(pipeline, saved["blobId"])
    assert got["rawData"] == "hello"
    assert got["decryptedData"] is None
    assert got["encrypted"] is False
    assert got["message"] == "SQL data retrieved successfully from Walrus"


def test_retrieve_wrong_key(pipeline, key_material):
    saved = save(pipeline, {"data": "secret", "encryptionKey": key_material.to_dict()})
    got = retrieve(pipeline, saved["blobId"], {"encryptionKey": "00" * 32})
    assert got == {"error": "decryption_failed", "details": DECRYPTION_DETAIL}


def test_retrieve_missing(pipeline):
    assert retrieve(pipeline, "nope")["error"] == "blob_not_found"


# --- handle_delete ---

def test_delete(pipeline, fake_store):
    result = asyncio.run(adapter.handle_delete(pipeline, "0xobj1"))
    assert result["success"] is True
    assert result["blobObjectId"] == "0xobj1"
    assert result["message"] == "Blob deleted successfully from Walrus"
    assert fake_store.deleted == [("0xobj1", pipeline.context.signer.address)]


def test_delete_failure(pipeline, fake_store):
    fake_store.delete_error = RuntimeError("chain unavailable")
    result = asyncio.run(adapter.handle_delete(pipeline, "0xobj1"))
    assert result["error"] == "delete_failed"
    assert "chain unavailable" in result["details"]


# --- key and wallet ---

def test_generate_key(pipeline):
    result = adapter.handle_generate_key(pipeline)
    assert result["success"] is True
    assert len(result["encryptionKey"]["key"]) == 64
    assert len(result["encryptionKey"]["salt"]) == 64
    assert 100000 <= result["encryptionKey"]["iterations"] < 150000


def test_wallet_info(pipeline, signer):
    result = adapter.handle_wallet_info(pipeline, "testnet")
    assert result["address"] == signer.address
    assert result["network"] == "testnet"


@pytest.mark.parametrize("data, stored", [([], b"[]"), ({}, b"{}"), (1, b"1"), (True, b"true")])
def test_save_accepts_other_values(pipeline, fake_store, data, stored):
    result = save(pipeline, {"data": data})
    assert result["success"] is True
    assert fake_store.blobs[result["blobId"]] == stored


def test_save_nan_body_rejected(pipeline, fake_store):
    result = save(pipeline, {"data": {"x": float("nan")}})
    assert result["error"] == "validation_error"
    assert fake_store.write_calls == 0
