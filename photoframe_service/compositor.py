"""
Stateful compositor bound to one subject photo and a set of frame templates.

The compositor holds the mutable editing state (active frame, subject
transform) and turns it into an immutable `LayeredSurface` for rendering.
Frame artwork is loaded asynchronously on activation; `render` itself is
synchronous and only runs once the active frame's assets are resident.
"""

from __future__ import annotations

import logging
from pathlib import Path
import time
from typing import Dict, Iterable, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from . import config
from .assets import AssetLoader
from .errors import AssetLoadError, RenderError
from .models import FrameId, FrameTemplate, RasterImage, Transform
from .normalizer import encode_raster
from .surface import LayeredSurface, build_surface, layer_bounds, render_surface

logger = logging.getLogger(__name__)


def default_transform(settings: Optional[config.Settings] = None) -> Transform:
    settings = settings or config.get_settings()
    return Transform(
        scale=settings.default_subject_scale,
        offset_x=settings.default_offset_x,
        offset_y=settings.default_offset_y,
    )


class Compositor:
    """Subject layer under a fixed frame overlay, rendered per active frame."""

    def __init__(
        self,
        subject: RasterImage,
        frames: Iterable[FrameTemplate],
        *,
        loader: Optional[AssetLoader] = None,
        canvas_size: Optional[Tuple[int, int]] = None,
        background: Optional[Tuple[int, int, int]] = None,
        output_format: Optional[str] = None,
        transform: Optional[Transform] = None,
        debug_dir: Optional[Path] = None,
    ) -> None:
        settings = config.get_settings()
        self.subject = subject
        self.frames: Dict[FrameId, FrameTemplate] = {frame.id: frame for frame in frames}
        self.loader = loader or AssetLoader(timeout=settings.asset_timeout_seconds)
        self.canvas_size = canvas_size or settings.canvas_size
        self.background = background or settings.background_rgb
        self.output_format = output_format or settings.composite_format
        self.debug_dir = debug_dir or (settings.debug_output_dir if settings.debug else None)
        self._initial_transform = transform or default_transform(settings)
        self._transform = self._initial_transform
        self._artwork: Dict[FrameId, Image.Image] = {}
        self._active: Optional[FrameTemplate] = None
        self._cached: Optional[Tuple[float, RasterImage]] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Editing state
    # ------------------------------------------------------------------

    @property
    def active_frame(self) -> Optional[FrameTemplate]:
        return self._active

    @property
    def transform(self) -> Transform:
        return self._transform

    async def activate_frame(self, frame_id: FrameId, *, reset_transform: bool = False) -> FrameTemplate:
        """
        Make `frame_id` the overlay layer, loading its artwork if needed.

        Returns once the artwork is decoded and resident, so callers can render
        immediately. The subject transform carries over unless `reset_transform`.
        """
        if self._closed:
            raise RenderError("Compositor is closed")
        frame = self.frames.get(frame_id)
        if frame is None:
            raise KeyError(f"Unknown frame id: {frame_id!r}")

        self._invalidate()
        self._active = None
        if reset_transform:
            self._transform = self._initial_transform

        if frame.id not in self._artwork:
            started = time.perf_counter()
            self._artwork[frame.id] = await self.loader.load(frame.artwork_ref)
            logger.info(
                "Loaded artwork for frame %s (%s) in %.1fms",
                frame.id,
                frame.name,
                (time.perf_counter() - started) * 1000,
            )
        self._active = frame
        return frame

    def set_transform(self, transform: Transform) -> None:
        if transform != self._transform:
            self._transform = transform
            self._invalidate()

    def reset_transform(self) -> None:
        self.set_transform(self._initial_transform)

    def _invalidate(self) -> None:
        if self._cached is not None:
            self._cached[1].close()
            self._cached = None

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def surface(self) -> LayeredSurface:
        if self._active is None:
            raise AssetLoadError("No frame artwork is loaded; activate a frame first")
        return build_surface(
            self.subject.image,
            self._artwork[self._active.id],
            self._transform,
            self.canvas_size,
            self.background,
        )

    def render(self, multiplier: float = 1.0) -> RasterImage:
        """
        Composite the active frame over the subject.

        Repeated renders of an unchanged state return the cached raster. The
        returned raster's pixel buffer is released on the next state change;
        its encoded `data` stays valid.

        Raises:
            AssetLoadError: no frame is active or its artwork is not resident.
            RenderError: rasterization or encoding failed.
        """
        if self._cached is not None and self._cached[0] == multiplier:
            return self._cached[1]

        surface = self.surface()
        try:
            image = render_surface(surface, multiplier)
            data = encode_raster(image, self.output_format)
        except (OSError, ValueError, MemoryError) as exc:
            raise RenderError(f"Rendering frame {self._active.id} failed: {exc}") from exc

        raster = RasterImage(image=image, data=data, format=self.output_format)
        self._invalidate()
        self._cached = (multiplier, raster)

        if self.debug_dir is not None:
            _maybe_dump_debug(image, surface, multiplier, Path(self.debug_dir) / str(self._active.id))
        return raster

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._invalidate()
        for artwork in self._artwork.values():
            artwork.close()
        self._artwork.clear()
        self._active = None
        self._closed = True

    def __enter__(self) -> "Compositor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _maybe_dump_debug(image: Image.Image, surface: LayeredSurface, multiplier: float, debug_dir: Path) -> None:
    """Optionally write the composite and a layer-bounds overlay when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        bgr = cv2.cvtColor(np.asarray(image), cv2.COLOR_RGB2BGR)
        cv2.imwrite(str(debug_dir / "composite.png"), bgr)

        overlay = bgr.copy()
        colors = [(0, 0, 255), (0, 255, 0)]  # subject red, frame green (BGR)
        for index, layer in enumerate(surface.layers):
            left, top, right, bottom = layer_bounds(layer, multiplier)
            cv2.rectangle(overlay, (left, top), (right - 1, bottom - 1), colors[index % len(colors)], 2)
        cv2.imwrite(str(debug_dir / "layer_bounds.png"), overlay)
        logger.debug("compositor: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("compositor: failed to write debug outputs: %s", exc)
