import asyncio

import httpx
from PIL import Image
import pytest

from helpers import RED, banded_frame, encode
from photoframe_service.assets import AssetLoader
from photoframe_service.cancellation import CancellationToken, run_cancellable
from photoframe_service.errors import AssetLoadError, OperationCancelled
from photoframe_service.models import to_data_uri


@pytest.mark.asyncio
async def test_loads_local_file_data_uri_and_url(tmp_path):
    path = tmp_path / "frame.png"
    banded_frame().save(path)
    remote_png = encode(Image.new("RGB", (12, 8), RED))

    def handler(request):
        return httpx.Response(200, content=remote_png, headers={"content-type": "image/png"})

    async with AssetLoader(client=httpx.AsyncClient(transport=httpx.MockTransport(handler))) as loader:
        local = await loader.load(str(path))
        inline = await loader.load(to_data_uri(encode(banded_frame(size=(10, 10))), "PNG"))
        remote = await loader.load("https://cdn.example.com/frames/1.png")

    assert (local.mode, local.size) == ("RGBA", (80, 60))
    assert inline.size == (10, 10)
    assert remote.size == (12, 8)
    assert remote.getpixel((0, 0)) == RED + (255,)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ref",
    [
        "https://cdn.example.com/frames/blocked.png",
        "data:image/png;base64,%%%",
        "/nonexistent/frame.png",
    ],
)
async def test_every_failure_is_asset_load_error(ref):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(403)))
    async with AssetLoader(client=client) as loader:
        with pytest.raises(AssetLoadError) as excinfo:
            await loader.load(ref)
    assert excinfo.value.ref == ref
    await client.aclose()


@pytest.mark.asyncio
async def test_corrupt_artwork_is_asset_load_error(tmp_path):
    path = tmp_path / "corrupt.png"
    path.write_bytes(encode(banded_frame())[:40])
    async with AssetLoader() as loader:
        with pytest.raises(AssetLoadError):
            await loader.load(str(path))


@pytest.mark.asyncio
async def test_run_cancellable_abandons_pending_work():
    token = CancellationToken()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)

    pending = asyncio.ensure_future(run_cancellable(slow(), token))
    await started.wait()
    token.cancel("stop")

    with pytest.raises(OperationCancelled, match="stop"):
        await pending
    assert await run_cancellable(asyncio.sleep(0, result="done"), CancellationToken()) == "done"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ref",
    [
        "https://cdn.example.com/frames/\x00frame.png",
        "/tmp/frames/fra\x00me.png",
    ],
)
async def test_malformed_refs_are_asset_load_errors(ref):
    async with AssetLoader() as loader:
        with pytest.raises(AssetLoadError):
            await loader.load(ref)


@pytest.mark.asyncio
async def test_decompression_bomb_is_asset_load_error(tmp_path, monkeypatch):
    path = tmp_path / "huge.png"
    banded_frame().save(path)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

    async with AssetLoader() as loader:
        with pytest.raises(AssetLoadError):
            await loader.load(str(path))


@pytest.mark.asyncio
async def test_child_token_follows_parent():
    parent = CancellationToken()
    child = CancellationToken(parent=parent)
    parent.cancel("delivery abandoned")

    assert child.cancelled
    assert child.reason == "delivery abandoned"
    assert CancellationToken(parent=parent).cancelled
