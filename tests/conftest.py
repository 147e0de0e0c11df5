"""Pytest configuration and fixtures."""

from io import BytesIO
from typing import Callable, Optional

import pytest
from PIL import Image

from src.core.optimizer import ImageOptimizer
from src.core.pipeline import MediaPipeline
from src.core.storage import UploadError


class FakeBlobStore:
    """In-memory blob store that refuses to overwrite objects."""

    def __init__(self, base_url: str = "https://cdn.example.com/media") -> None:
        self.base_url = base_url
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.put_calls: list[tuple[str, str]] = []
        self.fail_with: Optional[Exception] = None

    async def put_object(self, path: str, data: bytes, content_type: str) -> str:
        self.put_calls.append((path, content_type))
        if self.fail_with is not None:
            raise UploadError(f"Failed to upload {path}: {self.fail_with}") from self.fail_with
        if path in self.objects:
            raise UploadError(f"Object already exists: {path}")
        self.objects[path] = (data, content_type)
        return path

    def public_url(self, resolved_path: str) -> str:
        return f"{self.base_url}/{resolved_path}"


@pytest.fixture
def image_optimizer() -> ImageOptimizer:
    """Create image optimizer instance."""
    return ImageOptimizer()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    """Create an empty in-memory blob store."""
    return FakeBlobStore()


@pytest.fixture
def media_pipeline(blob_store: FakeBlobStore, image_optimizer: ImageOptimizer) -> MediaPipeline:
    """Create a pipeline writing to the in-memory blob store."""
    return MediaPipeline(store=blob_store, optimizer=image_optimizer, max_input_bytes=1024 * 1024)


@pytest.fixture
def make_image_bytes() -> Callable[..., bytes]:
    """Factory for encoded test images."""

    def _make(
        width: int,
        height: int,
        format: str = "PNG",
        mode: str = "RGB",
        color: object = (200, 120, 40),
        exif: Optional[Image.Exif] = None,
    ) -> bytes:
        img = Image.new(mode, (width, height), color=color)  # type: ignore[arg-type]
        buffer = BytesIO()
        if exif is not None:
            img.save(buffer, format=format, exif=exif)
        else:
            img.save(buffer, format=format)
        return buffer.getvalue()

    return _make


@pytest.fixture
def gradient_png() -> bytes:
    """A 400x300 PNG with a horizontal and vertical color gradient."""
    red = Image.linear_gradient("L").resize((400, 300))
    green = red.transpose(Image.Transpose.ROTATE_90).resize((400, 300))
    blue = Image.new("L", (400, 300), 128)
    img = Image.merge("RGB", (red, green, blue))
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
