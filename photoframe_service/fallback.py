"""
Client for the remote compositing service.

Used only when a frame cannot be rendered locally (asset fetch blocked,
corrupt artwork, render failure). The service renders the same layered
surface server-side and returns it as a base64 data URI.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import httpx

from . import config
from .assets import is_remote_ref
from .errors import FallbackError, InvalidInput
from .models import FrameTemplate, RasterImage, Transform, decode_data_uri, is_data_uri, to_data_uri

logger = logging.getLogger(__name__)


class RemoteCompositingClient:
    def __init__(
        self,
        url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> Optional["RemoteCompositingClient"]:
        """Build a client from `REMOTE_COMPOSITE_URL`, or None when no fallback is configured."""
        settings = settings or config.get_settings()
        if not settings.remote_composite_url:
            return None
        return cls(settings.remote_composite_url, timeout=settings.remote_timeout_seconds)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _inline_ref(self, ref: str) -> str:
        """Local files are meaningless to the server, so send their contents."""
        if is_remote_ref(ref) or is_data_uri(ref):
            return ref
        path = Path(ref)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise FallbackError(f"Cannot inline overlay {ref}: {exc}") from exc
        fmt = "PNG" if path.suffix.lower() == ".png" else "JPEG"
        return to_data_uri(data, fmt)

    async def build_payload(
        self,
        subject: RasterImage,
        frame: FrameTemplate,
        transform: Transform,
        canvas_size: Tuple[int, int],
        multiplier: float,
    ) -> Dict[str, Any]:
        subject_ref = subject.source_ref if subject.source_ref and is_remote_ref(subject.source_ref) else subject.data_uri
        return {
            "subjectRef": subject_ref,
            "overlayRef": await self._inline_ref(frame.artwork_ref),
            "transform": transform.to_payload(),
            "canvasWidth": canvas_size[0],
            "canvasHeight": canvas_size[1],
            "multiplier": multiplier,
        }

    async def composite(
        self,
        subject: RasterImage,
        frame: FrameTemplate,
        transform: Transform,
        canvas_size: Tuple[int, int],
        multiplier: float = 2.0,
    ) -> bytes:
        """
        Request a server-side composite and return the encoded image bytes.

        Raises:
            FallbackError: transport failure, non-2xx status, or a malformed body.
        """
        payload = await self.build_payload(subject, frame, transform, canvas_size, multiplier)
        logger.info("Requesting remote composite for frame %s from %s", frame.id, self.url)
        try:
            resp = await self._get_client().post(self.url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise FallbackError(f"Remote compositing failed for frame {frame.id}: {exc}") from exc

        if not isinstance(body, dict) or not body.get("success", False) or not body.get("compositeImage"):
            raise FallbackError(f"Remote compositing returned no image for frame {frame.id}")
        try:
            return decode_data_uri(body["compositeImage"])
        except InvalidInput as exc:
            raise FallbackError(str(exc)) from exc

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
