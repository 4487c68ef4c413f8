"""Value types shared by the normalizer, compositor, batch generator and uploader."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Union

from PIL import Image

from .errors import InvalidInput

MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}

FrameId = Union[int, str]


def mime_type_for(fmt: str) -> str:
    return MIME_TYPES.get(fmt.upper(), "application/octet-stream")


def to_data_uri(data: bytes, fmt: str) -> str:
    return f"data:{mime_type_for(fmt)};base64,{base64.b64encode(data).decode('ascii')}"


def is_data_uri(ref: str) -> bool:
    return ref.startswith("data:")


def decode_data_uri(value: str) -> bytes:
    """Decode a ``data:`` URI or a bare base64 string."""
    payload = value.split(",", 1)[1] if is_data_uri(value) else value
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInput("Malformed base64 image payload") from exc


@dataclass(frozen=True)
class Transform:
    """Subject placement: scale factor and top-left offset in canvas coordinates."""

    scale: float = 0.8
    offset_x: float = 50.0
    offset_y: float = 50.0

    def __post_init__(self) -> None:
        if not self.scale > 0:
            raise InvalidInput(f"Transform scale must be > 0, got {self.scale}")

    def moved(self, dx: float, dy: float) -> "Transform":
        return replace(self, offset_x=self.offset_x + dx, offset_y=self.offset_y + dy)

    def scaled(self, scale: float) -> "Transform":
        return replace(self, scale=scale)

    def to_payload(self) -> Dict[str, float]:
        return {"scale": self.scale, "offsetX": self.offset_x, "offsetY": self.offset_y}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Transform":
        return cls(
            scale=float(payload.get("scale", 0.8)),
            offset_x=float(payload.get("offsetX", payload.get("x", 50.0))),
            offset_y=float(payload.get("offsetY", payload.get("y", 50.0))),
        )


@dataclass(frozen=True, eq=False)
class RasterImage:
    """A decoded image together with its encoded bytes."""

    image: Image.Image
    data: bytes
    format: str
    source_ref: Optional[str] = None

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size

    @property
    def data_uri(self) -> str:
        return to_data_uri(self.data, self.format)

    def close(self) -> None:
        self.image.close()


@dataclass(frozen=True)
class FrameTemplate:
    id: FrameId
    name: str
    model_key: str
    artwork_ref: str
    dealership_id: Optional[FrameId] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "FrameTemplate":
        try:
            return cls(
                id=raw["id"],
                name=str(raw.get("name") or raw["id"]),
                model_key=str(raw.get("model_key", raw.get("model", ""))),
                artwork_ref=str(raw.get("artwork_ref") or raw["image_url"]),
                dealership_id=raw.get("dealership_id"),
            )
        except KeyError as exc:
            raise InvalidInput(f"Frame definition is missing {exc.args[0]!r}") from exc


@dataclass(frozen=True)
class CompositeResult:
    frame_id: FrameId
    frame_name: str
    data: bytes = field(repr=False)
    format: str
    width: int
    height: int
    transform: Transform
    source: str = "local"  # "local" | "remote"

    @property
    def content_type(self) -> str:
        return mime_type_for(self.format)

    @property
    def data_uri(self) -> str:
        return to_data_uri(self.data, self.format)

    @property
    def extension(self) -> str:
        return "jpg" if self.format.upper() == "JPEG" else self.format.lower()
