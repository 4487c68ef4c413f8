"""
Image loading and normalization for captured delivery photos.

Photos arrive straight from mobile cameras, so they are validated, oriented,
downscaled to a bounded resolution and recompressed before compositing or
upload.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from . import config
from .errors import DecodeError, InvalidType, Oversize
from .models import RasterImage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizeConstraints:
    max_width: int = 1920
    max_height: int = 1080
    quality: float = 0.8
    target_format: str = "JPEG"

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "NormalizeConstraints":
        settings = settings or config.get_settings()
        return cls(
            max_width=settings.normalize_max_width,
            max_height=settings.normalize_max_height,
            quality=settings.normalize_quality,
            target_format=settings.normalize_format,
        )


@dataclass
class NormalizeResult:
    image: RasterImage
    original_size: Tuple[int, int]  # (width, height)
    original_bytes: int
    output_bytes: int


def _compute_resize_dims(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Uniform downscale into the bounding box; never upscales."""
    if width <= max_width and height <= max_height:
        return width, height
    ratio = min(max_width / width, max_height / height)
    new_w = min(max_width, max(1, int(width * ratio)))
    new_h = min(max_height, max(1, int(height * ratio)))
    return new_w, new_h


def _check_payload(image_bytes: bytes, content_type: Optional[str], max_bytes: int) -> None:
    if content_type is not None and not content_type.lower().startswith("image/"):
        raise InvalidType(f"Unsupported content type: {content_type}")
    if not image_bytes:
        raise InvalidType("Empty image payload")
    if len(image_bytes) > max_bytes:
        raise Oversize(len(image_bytes), max_bytes)


def probe_dimensions(image_bytes: bytes) -> Tuple[int, int]:
    """Read (width, height) from the image header without decoding pixels."""
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            return image.size
    except UnidentifiedImageError as exc:
        raise InvalidType("Payload is not a recognized image") from exc


def encode_raster(image: Image.Image, fmt: str, quality: float = 0.9) -> bytes:
    buf = BytesIO()
    fmt = fmt.upper()
    if fmt == "JPEG":
        if image.mode != "RGB":
            image = image.convert("RGB")
        image.save(buf, format="JPEG", quality=config.normalize_quality(quality), optimize=True)
    elif fmt == "WEBP":
        image.save(buf, format="WEBP", quality=config.normalize_quality(quality))
    else:
        image.save(buf, format=fmt)
    return buf.getvalue()


def normalize_image_bytes(
    image_bytes: bytes,
    constraints: Optional[NormalizeConstraints] = None,
    *,
    content_type: Optional[str] = None,
    max_bytes: Optional[int] = None,
    source_ref: Optional[str] = None,
) -> NormalizeResult:
    """
    Decode, orient, downscale and recompress a captured photo.

    The byte ceiling is checked before anything is decoded.

    Raises:
        InvalidType: the payload is not an image.
        Oversize: the payload exceeds ``max_bytes``.
        DecodeError: the image header is valid but the pixel data is not.
    """
    constraints = constraints or NormalizeConstraints.from_settings()
    if max_bytes is None:
        max_bytes = config.get_settings().max_upload_bytes
    _check_payload(image_bytes, content_type, max_bytes)

    try:
        source = Image.open(BytesIO(image_bytes))
    except UnidentifiedImageError as exc:
        raise InvalidType("Payload is not a recognized image") from exc

    with source:
        try:
            source.load()
            oriented = ImageOps.exif_transpose(source)
            image = oriented.convert("RGB")
        except (OSError, ValueError, SyntaxError) as exc:
            raise DecodeError("Invalid image data") from exc

    orig_w, orig_h = image.size
    new_w, new_h = _compute_resize_dims(orig_w, orig_h, constraints.max_width, constraints.max_height)
    if (new_w, new_h) != (orig_w, orig_h):
        resized = image.resize((new_w, new_h), Image.LANCZOS)
        image.close()
        image = resized

    data = encode_raster(image, constraints.target_format, constraints.quality)
    logger.info(
        "Image normalized: %dx%d %.1fKB -> %dx%d %.1fKB",
        orig_w,
        orig_h,
        len(image_bytes) / 1024,
        new_w,
        new_h,
        len(data) / 1024,
    )

    return NormalizeResult(
        image=RasterImage(image=image, data=data, format=constraints.target_format, source_ref=source_ref),
        original_size=(orig_w, orig_h),
        original_bytes=len(image_bytes),
        output_bytes=len(data),
    )
