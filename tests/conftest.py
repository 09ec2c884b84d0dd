import io
from typing import AsyncGenerator, List

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from bgflip.main import app
from bgflip.api.dependencies import get_background_remover, get_settings
from bgflip.core.config import Settings
from bgflip.core.storage import LocalStorage, get_storage


def make_image(fmt: str = "PNG", size=(4, 2)) -> bytes:
    """Small image with a red left column and blue elsewhere, so mirroring is visible."""
    image = Image.new("RGBA", size, (0, 0, 255, 255))
    for y in range(size[1]):
        image.putpixel((0, y), (255, 0, 0, 255))
    if fmt == "JPEG":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


class FakeRemover:
    """Background remover that returns its input, recording calls."""

    def __init__(self, error: Exception = None):
        self.calls: List[bytes] = []
        self.error = error

    async def remove_background(self, png_bytes: bytes) -> bytes:
        self.calls.append(png_bytes)
        if self.error is not None:
            raise self.error
        return png_bytes


@pytest.fixture
def png_bytes() -> bytes:
    return make_image("PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image("JPEG", size=(8, 4))


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        STORAGE_BACKEND="local",
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        CLIPDROP_API_KEY="test-key",
    )


@pytest.fixture
def local_storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_path=str(tmp_path / "storage"))


@pytest.fixture
def remover() -> FakeRemover:
    return FakeRemover()


@pytest.fixture
async def client(local_storage, remover, test_settings) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_storage] = lambda: local_storage
    app.dependency_overrides[get_background_remover] = lambda: remover
    app.dependency_overrides[get_settings] = lambda: test_settings

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_remover():
    return FakeRemover
