"""
FastAPI layer exposing server-side compositing.

The device falls back to this service when it cannot render a frame locally.
It renders the same layered surface as the on-device compositor.

Endpoints:
 - GET /health
 - POST /composite-image
"""

from __future__ import annotations

from io import BytesIO
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
import requests
from PIL import Image, UnidentifiedImageError

from . import config
from .errors import InvalidInput
from .models import Transform, decode_data_uri, is_data_uri, to_data_uri
from .normalizer import encode_raster
from .surface import build_surface, render_surface

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Photo Frame Compositing Service", version="0.1.0")


class TransformPayload(BaseModel):
    scale: float = Field(settings.default_subject_scale, gt=0)
    offsetX: float = settings.default_offset_x
    offsetY: float = settings.default_offset_y


class CompositeRequest(BaseModel):
    subjectRef: str
    overlayRef: str
    transform: TransformPayload = Field(default_factory=TransformPayload)
    canvasWidth: Optional[int] = Field(None, gt=0)
    canvasHeight: Optional[int] = Field(None, gt=0)
    multiplier: Optional[float] = Field(None, gt=0, le=4)


class CompositeResponse(BaseModel):
    success: bool = True
    compositeImage: str
    width: int
    height: int


def _download_image(url: str) -> bytes:
    resp = requests.get(url, timeout=(5, settings.request_timeout_seconds))
    resp.raise_for_status()
    return resp.content


def _load_reference(ref: str, label: str) -> Image.Image:
    try:
        raw = decode_data_uri(ref) if is_data_uri(ref) else _download_image(ref)
    except (requests.RequestException, InvalidInput) as exc:
        logger.exception("Failed to fetch %s image: %s", label, exc)
        raise HTTPException(status_code=400, detail=f"Could not download {label} image") from exc
    if len(raw) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail=f"{label.capitalize()} image is too large")
    try:
        with Image.open(BytesIO(raw)) as image:
            image.load()
            return image.convert("RGBA")
    except (UnidentifiedImageError, OSError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label} image data") from exc


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/composite-image", response_model=CompositeResponse)
def composite_image(body: CompositeRequest):
    subject = _load_reference(body.subjectRef, "subject")
    overlay = _load_reference(body.overlayRef, "overlay")

    transform = Transform(
        scale=body.transform.scale,
        offset_x=body.transform.offsetX,
        offset_y=body.transform.offsetY,
    )
    canvas_size = (body.canvasWidth or settings.canvas_width, body.canvasHeight or settings.canvas_height)
    multiplier = body.multiplier or settings.export_multiplier

    try:
        surface = build_surface(subject, overlay, transform, canvas_size, settings.background_rgb)
        composite = render_surface(surface, multiplier)
        data = encode_raster(composite, settings.composite_format)
    except (ValueError, OSError, MemoryError) as exc:
        logger.exception("Server-side compositing failed: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to composite image") from exc
    finally:
        subject.close()
        overlay.close()

    logger.info(
        "Composited %dx%d image (%.1fKB) at multiplier %.1f",
        composite.width,
        composite.height,
        len(data) / 1024,
        multiplier,
    )
    return CompositeResponse(
        compositeImage=to_data_uri(data, settings.composite_format),
        width=composite.width,
        height=composite.height,
    )
