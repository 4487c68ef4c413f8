"""Image factories and fake collaborators shared by the test modules."""

from __future__ import annotations

import asyncio
from io import BytesIO
from typing import List, Optional

from PIL import Image

from photoframe_service.errors import StorageError

RED = (255, 0, 0)
GREEN = (0, 255, 0)
BLUE = (0, 0, 255)
WHITE = (255, 255, 255)


def encode(image: Image.Image, fmt: str = "PNG", **params) -> bytes:
    buf = BytesIO()
    image.save(buf, format=fmt, **params)
    return buf.getvalue()


def banded_frame(size=(80, 60), band=15, color=GREEN) -> Image.Image:
    """Transparent artwork with an opaque band across the top."""
    frame = Image.new("RGBA", size, (0, 0, 0, 0))
    frame.paste(Image.new("RGBA", (size[0], band), color + (255,)), (0, 0))
    return frame


class FakeStorage:
    """Scripted object storage: the first `failures` uploads raise StorageError."""

    def __init__(self, failures: int = 0, gate: Optional[asyncio.Event] = None) -> None:
        self.failures = failures
        self.gate = gate
        self.calls: List[str] = []

    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        self.calls.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("simulated transient storage error", key=key)
        return f"https://cdn.example.com/{key}"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
