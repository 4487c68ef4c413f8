"""Read-only lookup of frame templates by vehicle model."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

import httpx

from . import config
from .errors import AssetLoadError
from .models import FrameId, FrameTemplate

logger = logging.getLogger(__name__)


def _visible_to(frame: FrameTemplate, dealership_id: Optional[FrameId]) -> bool:
    """Global (OEM) frames are visible to everyone; dealership frames only to their owner."""
    if dealership_id is None:
        return True
    return frame.dealership_id is None or frame.dealership_id == dealership_id


class StaticFrameCatalog:
    def __init__(self, frames: Iterable[FrameTemplate]) -> None:
        self._frames: List[FrameTemplate] = list(frames)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "StaticFrameCatalog":
        """Load a JSON list of ``{id, name, model, image_url[, dealership_id]}`` objects."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        base = Path(path).parent
        frames = []
        for entry in raw:
            frame = FrameTemplate.from_mapping(entry)
            ref = frame.artwork_ref
            if not ref.startswith(("http://", "https://", "data:")) and not Path(ref).is_absolute():
                frame = FrameTemplate(frame.id, frame.name, frame.model_key, str(base / ref), frame.dealership_id)
            frames.append(frame)
        logger.info("Loaded %d frame templates from %s", len(frames), path)
        return cls(frames)

    async def frames_for_model(
        self,
        model_key: str,
        dealership_id: Optional[FrameId] = None,
    ) -> List[FrameTemplate]:
        return [
            frame
            for frame in self._frames
            if frame.model_key == model_key and _visible_to(frame, dealership_id)
        ]


class HttpFrameCatalog:
    """Frame templates served by the dashboard backend at ``GET {base_url}/frames?model=...``."""

    def __init__(self, base_url: str, *, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def frames_for_model(
        self,
        model_key: str,
        dealership_id: Optional[FrameId] = None,
    ) -> List[FrameTemplate]:
        params = {"model": model_key}
        if dealership_id is not None:
            params["dealership_id"] = str(dealership_id)
        try:
            resp = await self._client.get(f"{self.base_url}/frames", params=params)
            resp.raise_for_status()
            entries = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AssetLoadError(f"Could not fetch frames for model {model_key}: {exc}") from exc
        frames = [FrameTemplate.from_mapping(entry) for entry in entries]
        return [
            frame
            for frame in frames
            if frame.model_key in ("", model_key) and _visible_to(frame, dealership_id)
        ]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def catalog_from_settings(
    settings: Optional[config.Settings] = None,
) -> Union[StaticFrameCatalog, HttpFrameCatalog]:
    """A local JSON catalog wins over the backend when both are configured."""
    settings = settings or config.get_settings()
    if settings.frames_catalog_path is not None:
        return StaticFrameCatalog.from_json(settings.frames_catalog_path)
    if settings.frames_catalog_url:
        return HttpFrameCatalog(settings.frames_catalog_url, timeout=settings.asset_timeout_seconds)
    raise RuntimeError("Neither FRAMES_CATALOG_PATH nor FRAMES_CATALOG_URL is configured.")
