"""
Object storage for composite artifacts.

`S3ObjectStorage` targets any S3-compatible bucket (Cloudflare R2 in
production). The blocking boto3 calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol
from urllib.parse import urljoin
import uuid

import boto3
from botocore.client import Config as BotoConfig

from . import config
from .errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        """Store `data` under `key` and return its public URL."""
        ...


def build_destination_key(prefix: str, delivery_id: str, frame_id: object, extension: str = "png") -> str:
    return f"{prefix.strip('/')}/{delivery_id}/{frame_id}-{uuid.uuid4().hex[:8]}.{extension}"


class S3ObjectStorage:
    def __init__(self, settings: Optional[config.Settings] = None, *, presign_expiry: int = 3600) -> None:
        self.settings = settings or config.get_settings()
        self.presign_expiry = presign_expiry
        self._client = None

    def _get_s3_client(self):
        if self._client is not None:
            return self._client
        settings = self.settings
        required = [
            settings.r2_endpoint,
            settings.r2_access_key_id,
            settings.r2_secret_access_key,
            settings.r2_bucket_name,
        ]
        if any(v is None for v in required):
            raise RuntimeError("R2 configuration is incomplete; check env vars.")
        session = boto3.session.Session()
        self._client = session.client(
            service_name="s3",
            aws_access_key_id=settings.r2_access_key_id,
            aws_secret_access_key=settings.r2_secret_access_key,
            endpoint_url=settings.r2_endpoint,
            config=BotoConfig(signature_version="s3v4"),
        )
        return self._client

    def public_url(self, key: str) -> str:
        if self.settings.r2_public_base_url:
            return urljoin(self.settings.r2_public_base_url.rstrip("/") + "/", key)
        # No public bucket domain configured: hand out a time-limited GET URL
        return self._get_s3_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.settings.r2_bucket_name, "Key": key},
            ExpiresIn=self.presign_expiry,
        )

    def _put_sync(self, key: str, data: bytes, content_type: str) -> str:
        client = self._get_s3_client()
        client.put_object(
            Bucket=self.settings.r2_bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return self.public_url(key)

    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        try:
            url = await asyncio.to_thread(self._put_sync, key, data, content_type)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Upload of %s to R2 failed: %s", key, exc)
            raise StorageError(f"Upload to storage failed: {exc}", key=key) from exc
        logger.info("Uploaded %s (%.1fKB)", key, len(data) / 1024)
        return url
