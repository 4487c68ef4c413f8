import re

from botocore.stub import Stubber
import pytest

from photoframe_service import config
from photoframe_service.errors import StorageError
from photoframe_service.storage import S3ObjectStorage, build_destination_key


def _settings(**overrides):
    values = dict(
        r2_endpoint="https://account.r2.cloudflarestorage.com",
        r2_access_key_id="key",
        r2_secret_access_key="secret",
        r2_bucket_name="deliveries-bucket",
        r2_public_base_url="https://media.example.com/",
    )
    values.update(overrides)
    return config.Settings(**values)


def test_destination_key_layout():
    key = build_destination_key("/deliveries/", "abc123", 7, "png")
    assert re.fullmatch(r"deliveries/abc123/7-[0-9a-f]{8}\.png", key)
    assert key != build_destination_key("/deliveries/", "abc123", 7, "png")


def test_public_url_uses_base_url():
    storage = S3ObjectStorage(_settings())
    assert storage.public_url("deliveries/abc/1.png") == "https://media.example.com/deliveries/abc/1.png"


def test_public_url_falls_back_to_presigned_url():
    storage = S3ObjectStorage(_settings(r2_public_base_url=None))
    url = storage.public_url("deliveries/abc/1.png")
    assert "deliveries-bucket" in url and "X-Amz-Signature" in url


@pytest.mark.asyncio
async def test_put_uploads_object():
    storage = S3ObjectStorage(_settings())
    client = storage._get_s3_client()
    with Stubber(client) as stubber:
        stubber.add_response("put_object", {"ETag": "\"9b2cf535f27731c974343645a3985328\""})
        url = await storage.put("deliveries/abc/1.png", b"png-bytes", "image/png")
        stubber.assert_no_pending_responses()

    assert url == "https://media.example.com/deliveries/abc/1.png"


@pytest.mark.asyncio
async def test_put_failure_is_storage_error():
    storage = S3ObjectStorage(_settings())
    with Stubber(storage._get_s3_client()) as stubber:
        stubber.add_client_error("put_object", service_error_code="SlowDown", http_status_code=503)
        with pytest.raises(StorageError) as excinfo:
            await storage.put("deliveries/abc/1.png", b"png-bytes")

    assert excinfo.value.key == "deliveries/abc/1.png"


@pytest.mark.asyncio
async def test_incomplete_configuration_is_storage_error():
    storage = S3ObjectStorage(_settings(r2_bucket_name=None))
    with pytest.raises(StorageError):
        await storage.put("deliveries/abc/1.png", b"png-bytes")
