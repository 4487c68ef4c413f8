"""
Asynchronous loading of subject and frame artwork.

References may be ``http(s)://`` URLs, ``data:`` URIs or local file paths.
Every failure mode (network, missing file, corrupt image) surfaces as
`AssetLoadError` so the batch generator can route the frame to the fallback.
"""

from __future__ import annotations

import asyncio
from io import BytesIO
import logging
from pathlib import Path
import time
from typing import Optional

import httpx
from PIL import Image

from .errors import AssetLoadError, InvalidInput
from .models import decode_data_uri, is_data_uri

logger = logging.getLogger(__name__)


def is_remote_ref(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


class AssetLoader:
    """Fetches and decodes image assets; owns its HTTP client unless one is injected."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def fetch_bytes(self, ref: str) -> bytes:
        if is_data_uri(ref):
            try:
                return decode_data_uri(ref)
            except InvalidInput as exc:
                raise AssetLoadError(str(exc), ref=ref) from exc
        if is_remote_ref(ref):
            try:
                resp = await self._get_client().get(ref)
                resp.raise_for_status()
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                raise AssetLoadError(f"Could not download asset: {exc}", ref=ref) from exc
            return resp.content
        try:
            return await asyncio.to_thread(Path(ref).read_bytes)
        except (OSError, ValueError) as exc:
            raise AssetLoadError(f"Could not read asset file: {exc}", ref=ref) from exc

    async def load(self, ref: str) -> Image.Image:
        """Fetch and fully decode an asset as RGBA."""
        started = time.perf_counter()
        raw = await self.fetch_bytes(ref)
        try:
            with Image.open(BytesIO(raw)) as image:
                image.load()
                decoded = image.convert("RGBA")
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise AssetLoadError("Asset is not a decodable image", ref=ref) from exc
        logger.debug(
            "Loaded asset %s (%dx%d) in %.1fms",
            _short_ref(ref),
            decoded.width,
            decoded.height,
            (time.perf_counter() - started) * 1000,
        )
        return decoded

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AssetLoader":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def _short_ref(ref: str) -> str:
    return ref[:48] + "..." if is_data_uri(ref) else ref
