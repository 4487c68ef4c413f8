from PIL import Image
import pytest

from helpers import encode
from photoframe_service.batch import BatchGenerator
from photoframe_service.cancellation import CancellationToken
from photoframe_service.compositor import Compositor
from photoframe_service.errors import FallbackError, OperationCancelled, RenderError
from photoframe_service.models import Transform


class FlakyCompositor(Compositor):
    """Fails to render the configured frame ids."""

    def __init__(self, *args, fail_on=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on = set(fail_on)

    def render(self, multiplier=1.0):
        if self.active_frame is not None and self.active_frame.id in self.fail_on:
            raise RenderError(f"simulated failure on frame {self.active_frame.id}")
        return super().render(multiplier)


class StubFallback:
    def __init__(self, fail=False):
        self.fail = fail
        self.requests = []

    async def composite(self, subject, frame, transform, canvas_size, multiplier=2.0):
        self.requests.append((frame.id, transform, canvas_size, multiplier))
        if self.fail:
            raise FallbackError("remote service unavailable")
        width, height = canvas_size
        return encode(Image.new("RGB", (int(width * multiplier), int(height * multiplier)), (1, 2, 3)))


def _generator(subject_raster, frames, *, fail_on=(), fallback=None):
    compositor = FlakyCompositor(
        subject_raster,
        frames,
        canvas_size=(80, 60),
        output_format="PNG",
        transform=Transform(scale=1.0, offset_x=10, offset_y=10),
        fail_on=fail_on,
    )
    return BatchGenerator(compositor, fallback=fallback, multiplier=2.0)


@pytest.mark.asyncio
async def test_generate_all_returns_one_outcome_per_frame(subject_raster, frame_files):
    generator = _generator(subject_raster, frame_files)
    outcomes = await generator.generate(frame_files)

    assert [outcome.frame.id for outcome in outcomes] == [1, 2, 3]
    assert all(outcome.ok and not outcome.used_fallback for outcome in outcomes)
    assert [result.frame_name for result in generator.results] == ["Frame 1", "Frame 2", "Frame 3"]
    assert {(result.width, result.height) for result in generator.results} == {(160, 120)}


@pytest.mark.asyncio
async def test_render_failure_uses_fallback_for_that_frame_only(subject_raster, frame_files):
    fallback = StubFallback()
    generator = _generator(subject_raster, frame_files, fail_on={2}, fallback=fallback)

    outcomes = await generator.generate(frame_files)

    assert len(outcomes) == 3
    assert [outcome.result.source for outcome in outcomes] == ["local", "remote", "local"]
    assert [request[0] for request in fallback.requests] == [2]
    assert fallback.requests[0][2:] == ((80, 60), 2.0)
    assert outcomes[1].result.width == 160


@pytest.mark.asyncio
async def test_fallback_failure_is_reported_per_frame(subject_raster, frame_files):
    generator = _generator(subject_raster, frame_files, fail_on={2}, fallback=StubFallback(fail=True))

    outcomes = await generator.generate(frame_files)

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert isinstance(outcomes[1].error, FallbackError)
    assert [frame.id for frame in generator.failed_frames] == [2]


@pytest.mark.asyncio
async def test_without_fallback_local_error_is_kept(subject_raster, frame_files):
    generator = _generator(subject_raster, frame_files, fail_on={1})

    outcomes = await generator.generate(frame_files)

    assert isinstance(outcomes[0].error, RenderError)
    assert outcomes[1].ok and outcomes[2].ok


@pytest.mark.asyncio
async def test_regenerating_one_frame_leaves_others_untouched(subject_raster, frame_files):
    generator = _generator(subject_raster, frame_files)
    await generator.generate(frame_files)
    before = {result.frame_id: result for result in generator.results}

    moved = Transform(scale=0.5, offset_x=0, offset_y=0)
    outcome = await generator.generate_one(frame_files[1], moved)

    after = {result.frame_id: result for result in generator.results}
    assert after[1] is before[1]
    assert after[3] is before[3]
    assert after[2] is outcome.result
    assert after[2].transform == moved
    assert after[2].data != before[2].data
    assert [result.frame_id for result in generator.results] == [1, 2, 3]


@pytest.mark.asyncio
async def test_per_frame_transforms(subject_raster, frame_files):
    generator = _generator(subject_raster, frame_files)
    shared = Transform(scale=1.0, offset_x=0, offset_y=0)
    special = Transform(scale=0.4, offset_x=20, offset_y=20)

    outcomes = await generator.generate(frame_files, shared, transforms={3: special})

    assert [outcome.result.transform for outcome in outcomes] == [shared, shared, special]


@pytest.mark.asyncio
async def test_cancelled_token_stops_generation(subject_raster, frame_files):
    generator = _generator(subject_raster, frame_files)
    token = CancellationToken()
    token.cancel("operator left the screen")

    with pytest.raises(OperationCancelled):
        await generator.generate(frame_files, token=token)
    assert generator.outcomes == []


@pytest.mark.asyncio
async def test_override_on_first_frame_does_not_leak(subject_raster, frame_files):
    generator = _generator(subject_raster, frame_files)
    base = generator.compositor.transform
    special = Transform(scale=0.4, offset_x=20, offset_y=20)

    outcomes = await generator.generate(frame_files, transforms={1: special})

    assert [outcome.result.transform for outcome in outcomes] == [special, base, base]


@pytest.mark.asyncio
async def test_oversized_fallback_image_fails_only_that_frame(subject_raster, frame_files, monkeypatch):
    # Frame artwork (80x60) stays under the limit; the 160x120 fallback image does not.
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 5000)
    generator = _generator(subject_raster, frame_files, fail_on={2}, fallback=StubFallback())

    outcomes = await generator.generate(frame_files)

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert isinstance(outcomes[1].error, FallbackError)
