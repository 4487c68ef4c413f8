"""
Layered raster surface: an ordered list of placed images and a pure renderer.

Both the on-device compositor and the remote compositing endpoint build a
surface with `build_surface` and rasterize it with `render_surface`, so the
two paths produce equivalent pixels for the same inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Tuple, Union

import numpy as np
from PIL import Image

from .models import Transform

Size = Tuple[int, int]


@dataclass(frozen=True, eq=False)
class Layer:
    image: Image.Image
    left: float
    top: float
    scale: float


@dataclass(frozen=True, eq=False)
class LayeredSurface:
    width: int
    height: int
    layers: Tuple[Layer, ...]
    background: Tuple[int, int, int] = (255, 255, 255)

    @property
    def size(self) -> Size:
        return self.width, self.height


def fit_scale(artwork_size: Size, canvas_size: Size) -> float:
    """Uniform scale that fits artwork inside the canvas without distortion."""
    art_w, art_h = artwork_size
    canvas_w, canvas_h = canvas_size
    if art_w <= 0 or art_h <= 0:
        raise ValueError("Artwork has no pixels")
    return min(canvas_w / art_w, canvas_h / art_h)


def build_surface(
    subject: Image.Image,
    overlay: Image.Image,
    transform: Transform,
    canvas_size: Size,
    background: Tuple[int, int, int] = (255, 255, 255),
) -> LayeredSurface:
    """Subject at the user transform (bottom), frame artwork fitted at the origin (top)."""
    subject_layer = Layer(subject, transform.offset_x, transform.offset_y, transform.scale)
    overlay_layer = Layer(overlay, 0.0, 0.0, fit_scale(overlay.size, canvas_size))
    return LayeredSurface(canvas_size[0], canvas_size[1], (subject_layer, overlay_layer), background)


def _scaled_layer(layer: Layer, multiplier: float) -> Image.Image:
    scale = layer.scale * multiplier
    width = max(1, round(layer.image.width * scale))
    height = max(1, round(layer.image.height * scale))
    image = layer.image if layer.image.mode == "RGBA" else layer.image.convert("RGBA")
    if (width, height) != image.size:
        image = image.resize((width, height), Image.LANCZOS)
    return image


def layer_bounds(layer: Layer, multiplier: float = 1.0) -> Tuple[int, int, int, int]:
    """(left, top, right, bottom) of a layer in output pixels."""
    scale = layer.scale * multiplier
    left = round(layer.left * multiplier)
    top = round(layer.top * multiplier)
    return (
        left,
        top,
        left + max(1, round(layer.image.width * scale)),
        top + max(1, round(layer.image.height * scale)),
    )


def render_surface(surface: LayeredSurface, multiplier: float = 1.0) -> Image.Image:
    """
    Rasterize layers bottom-to-top onto an opaque canvas.

    `multiplier` scales the output (and every placement) so exports can be
    rendered at print resolution independently of the preview size.
    """
    if multiplier <= 0:
        raise ValueError("multiplier must be > 0")
    out_w = max(1, round(surface.width * multiplier))
    out_h = max(1, round(surface.height * multiplier))
    canvas = Image.new("RGB", (out_w, out_h), surface.background)
    for layer in surface.layers:
        placed = _scaled_layer(layer, multiplier)
        left, top, _, _ = layer_bounds(layer, multiplier)
        # paste() clips layers that extend past the canvas edges
        canvas.paste(placed, (left, top), placed)
    return canvas


def pixels_equivalent(
    a: Union[Image.Image, bytes],
    b: Union[Image.Image, bytes],
    tolerance: int = 2,
) -> bool:
    """Compare two rasters channel-wise, allowing for encoder noise."""
    arr_a = _as_array(a)
    arr_b = _as_array(b)
    if arr_a.shape != arr_b.shape:
        return False
    diff = np.abs(arr_a.astype(np.int16) - arr_b.astype(np.int16))
    return int(diff.max(initial=0)) <= tolerance


def _as_array(value: Union[Image.Image, bytes]) -> np.ndarray:
    if isinstance(value, (bytes, bytearray)):
        with Image.open(BytesIO(value)) as image:
            return np.asarray(image.convert("RGB"))
    return np.asarray(value.convert("RGB"))
