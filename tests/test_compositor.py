import pytest

from helpers import GREEN, RED
from photoframe_service.assets import AssetLoader
from photoframe_service.compositor import Compositor
from photoframe_service.errors import AssetLoadError
from photoframe_service.models import FrameTemplate, Transform
from photoframe_service.surface import pixels_equivalent


class CountingLoader(AssetLoader):
    def __init__(self):
        super().__init__()
        self.loaded = []

    async def load(self, ref):
        self.loaded.append(ref)
        return await super().load(ref)


def _compositor(subject_raster, frames, **kwargs):
    kwargs.setdefault("loader", CountingLoader())
    return Compositor(
        subject_raster,
        frames,
        canvas_size=(80, 60),
        background=(255, 255, 255),
        output_format="PNG",
        transform=Transform(scale=1.0, offset_x=10, offset_y=10),
        **kwargs,
    )


def test_render_requires_active_frame(subject_raster, frame_files):
    with _compositor(subject_raster, frame_files) as compositor:
        with pytest.raises(AssetLoadError):
            compositor.render()


@pytest.mark.asyncio
async def test_render_composites_active_frame(subject_raster, frame_files):
    with _compositor(subject_raster, frame_files) as compositor:
        await compositor.activate_frame(1)
        raster = compositor.render(multiplier=2.0)

        assert raster.size == (160, 120)
        assert raster.format == "PNG"
        assert raster.image.getpixel((40, 60)) == RED
        assert raster.image.getpixel((60, 10)) == GREEN


@pytest.mark.asyncio
async def test_set_transform_is_idempotent(subject_raster, frame_files):
    with _compositor(subject_raster, frame_files) as compositor:
        await compositor.activate_frame(1)
        transform = Transform(scale=0.5, offset_x=5, offset_y=20)

        compositor.set_transform(transform)
        first = compositor.render().data
        compositor.set_transform(transform)
        assert compositor.render().data == first

        compositor.set_transform(transform.moved(15, 0))
        moved = compositor.render().data
        compositor.set_transform(transform)
        again = compositor.render().data

        assert not pixels_equivalent(first, moved)
        assert pixels_equivalent(first, again)


@pytest.mark.asyncio
async def test_switching_frames_preserves_transform(subject_raster, frame_files):
    with _compositor(subject_raster, frame_files) as compositor:
        await compositor.activate_frame(1)
        custom = Transform(scale=0.7, offset_x=0, offset_y=0)
        compositor.set_transform(custom)

        await compositor.activate_frame(2)
        assert compositor.transform == custom
        assert compositor.active_frame.id == 2

        await compositor.activate_frame(3, reset_transform=True)
        assert compositor.transform == Transform(scale=1.0, offset_x=10, offset_y=10)


@pytest.mark.asyncio
async def test_artwork_is_loaded_once_per_frame(subject_raster, frame_files):
    loader = CountingLoader()
    with _compositor(subject_raster, frame_files, loader=loader) as compositor:
        await compositor.activate_frame(1)
        await compositor.activate_frame(2)
        await compositor.activate_frame(1)

    assert loader.loaded == [frame_files[0].artwork_ref, frame_files[1].artwork_ref]


@pytest.mark.asyncio
async def test_failed_activation_leaves_no_active_frame(subject_raster, frame_files, tmp_path):
    broken = FrameTemplate(id="broken", name="Broken", model_key="City", artwork_ref=str(tmp_path / "missing.png"))
    corrupt_path = tmp_path / "corrupt.png"
    corrupt_path.write_bytes(b"not a png")
    corrupt = FrameTemplate(id="corrupt", name="Corrupt", model_key="City", artwork_ref=str(corrupt_path))

    with _compositor(subject_raster, [*frame_files, broken, corrupt]) as compositor:
        await compositor.activate_frame(1)
        with pytest.raises(AssetLoadError):
            await compositor.activate_frame("broken")
        with pytest.raises(AssetLoadError):
            compositor.render()
        with pytest.raises(AssetLoadError):
            await compositor.activate_frame("corrupt")


@pytest.mark.asyncio
async def test_surface_orders_subject_before_overlay(subject_raster, frame_files):
    with _compositor(subject_raster, frame_files) as compositor:
        await compositor.activate_frame(2)
        surface = compositor.surface()

    assert surface.size == (80, 60)
    assert surface.layers[0].image is subject_raster.image
    assert surface.layers[1].left == 0 and surface.layers[1].top == 0
    assert surface.layers[1].scale == pytest.approx(1.0)
