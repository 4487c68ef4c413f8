"""
Test configuration: shared pytest fixtures.
"""

from __future__ import annotations

from typing import Sequence

from PIL import Image
import pytest

from helpers import BLUE, GREEN, RED, RecordingSleep, banded_frame, encode
from photoframe_service.models import FrameTemplate, RasterImage


@pytest.fixture
def subject_raster() -> RasterImage:
    image = Image.new("RGB", (40, 40), RED)
    return RasterImage(image=image, data=encode(image), format="PNG")


@pytest.fixture
def frame_files(tmp_path) -> Sequence[FrameTemplate]:
    """Three frame templates backed by PNG files on disk."""
    frames = []
    for index, color in enumerate((GREEN, BLUE, (255, 255, 0)), start=1):
        path = tmp_path / f"frame_{index}.png"
        banded_frame(color=color).save(path)
        frames.append(
            FrameTemplate(id=index, name=f"Frame {index}", model_key="City", artwork_ref=str(path))
        )
    return frames


@pytest.fixture
def sleep_recorder() -> RecordingSleep:
    return RecordingSleep()
