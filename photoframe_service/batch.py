"""
Batch generation of framed composites.

Drives one `Compositor` across the selected frames strictly in order (the
compositor holds a single mutable layer state), isolating failures per frame
and routing locally-unrenderable frames to the remote compositing service.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
import time
from typing import Dict, List, Mapping, Optional, Sequence

from PIL import Image

from .cancellation import CancellationToken, run_cancellable
from .compositor import Compositor
from .errors import AssetLoadError, FallbackError, PhotoFrameError, RenderError
from .fallback import RemoteCompositingClient
from .models import CompositeResult, FrameId, FrameTemplate, Transform

logger = logging.getLogger(__name__)


@dataclass
class FrameOutcome:
    """Result slot for one frame: a composite, or the terminal error."""

    frame: FrameTemplate
    result: Optional[CompositeResult] = None
    error: Optional[PhotoFrameError] = None

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def used_fallback(self) -> bool:
        return self.result is not None and self.result.source == "remote"


class BatchGenerator:
    def __init__(
        self,
        compositor: Compositor,
        *,
        fallback: Optional[RemoteCompositingClient] = None,
        multiplier: float = 2.0,
    ) -> None:
        self.compositor = compositor
        self.fallback = fallback
        self.multiplier = multiplier
        self._slots: Dict[FrameId, FrameOutcome] = {}

    @property
    def outcomes(self) -> List[FrameOutcome]:
        return list(self._slots.values())

    @property
    def results(self) -> List[CompositeResult]:
        return [outcome.result for outcome in self._slots.values() if outcome.result is not None]

    @property
    def failed_frames(self) -> List[FrameTemplate]:
        return [outcome.frame for outcome in self._slots.values() if not outcome.ok]

    def outcome_for(self, frame_id: FrameId) -> Optional[FrameOutcome]:
        return self._slots.get(frame_id)

    async def generate(
        self,
        frames: Sequence[FrameTemplate],
        transform: Optional[Transform] = None,
        *,
        transforms: Optional[Mapping[FrameId, Transform]] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[FrameOutcome]:
        """
        Generate every frame in selection order, one outcome per input frame.

        `transforms` overrides the shared `transform` per frame id; with neither,
        the compositor's transform at call time is used for every frame.
        """
        transforms = transforms or {}
        base = transform or self.compositor.transform
        started = time.perf_counter()
        outcomes: List[FrameOutcome] = []
        for frame in frames:
            if token is not None:
                token.raise_if_cancelled()
            outcome = await self.generate_one(frame, transforms.get(frame.id, base), token=token)
            outcomes.append(outcome)

        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        logger.info(
            "Generated %d/%d composites in %.1fms",
            succeeded,
            len(outcomes),
            (time.perf_counter() - started) * 1000,
        )
        return outcomes

    async def generate_one(
        self,
        frame: FrameTemplate,
        transform: Optional[Transform] = None,
        *,
        token: Optional[CancellationToken] = None,
    ) -> FrameOutcome:
        """Generate (or regenerate) a single frame; only that frame's slot changes."""
        self.compositor.frames.setdefault(frame.id, frame)
        if transform is not None:
            self.compositor.set_transform(transform)
        applied = self.compositor.transform

        try:
            result = await self._render_locally(frame, token)
        except (AssetLoadError, RenderError) as exc:
            logger.warning("Local compositing failed for frame %s: %s", frame.id, exc)
            outcome = await self._render_remotely(frame, applied, exc, token)
        else:
            outcome = FrameOutcome(frame=frame, result=result)

        self._slots[frame.id] = outcome
        return outcome

    async def _render_locally(self, frame: FrameTemplate, token: Optional[CancellationToken]) -> CompositeResult:
        await run_cancellable(self.compositor.activate_frame(frame.id), token)
        raster = self.compositor.render(self.multiplier)
        return CompositeResult(
            frame_id=frame.id,
            frame_name=frame.name,
            data=raster.data,
            format=raster.format,
            width=raster.width,
            height=raster.height,
            transform=self.compositor.transform,
            source="local",
        )

    async def _render_remotely(
        self,
        frame: FrameTemplate,
        transform: Transform,
        local_error: PhotoFrameError,
        token: Optional[CancellationToken],
    ) -> FrameOutcome:
        if self.fallback is None:
            return FrameOutcome(frame=frame, error=local_error)

        try:
            data = await run_cancellable(
                self.fallback.composite(
                    self.compositor.subject,
                    frame,
                    transform,
                    self.compositor.canvas_size,
                    self.multiplier,
                ),
                token,
            )
            with Image.open(BytesIO(data)) as image:
                width, height = image.size
                fmt = (image.format or "PNG").upper()
        except FallbackError as exc:
            logger.error("Fallback compositing failed for frame %s: %s", frame.id, exc)
            return FrameOutcome(frame=frame, error=exc)
        except (OSError, Image.DecompressionBombError) as exc:
            logger.error("Fallback returned an undecodable image for frame %s", frame.id)
            return FrameOutcome(frame=frame, error=FallbackError(f"Undecodable fallback image: {exc}"))

        logger.info("Frame %s composited by the remote fallback", frame.id)
        return FrameOutcome(
            frame=frame,
            result=CompositeResult(
                frame_id=frame.id,
                frame_name=frame.name,
                data=data,
                format=fmt,
                width=width,
                height=height,
                transform=transform,
                source="remote",
            ),
        )
