"""Tests for the optimize-and-upload pipeline."""

import asyncio
import re
from io import BytesIO
from typing import Callable
from unittest.mock import patch

import pytest
from PIL import Image

from src.core.optimizer import DecodeError, OptimizationOptions
from src.core.pipeline import (
    InputTooLargeError,
    MediaInput,
    MediaPipeline,
    PipelineCancelledError,
    PipelineStage,
    generate_object_path,
)
from src.core.storage import UploadError


class TestUploadOptimizedImage:
    """Test the single-file pipeline."""

    @pytest.mark.asyncio
    async def test_photo_end_to_end(
        self,
        media_pipeline: MediaPipeline,
        blob_store,
        make_image_bytes: Callable[..., bytes],
    ) -> None:
        """Test a 4000x2000 PNG is stored as a 1920x960 WebP."""
        options = OptimizationOptions(max_width=1920, max_height=1080, format="webp", quality=0.8)

        ref = await media_pipeline.upload_optimized_image(
            make_image_bytes(4000, 2000), "photo.png", "blog/photo.webp", options
        )

        assert ref.path == "blog/photo.webp"
        assert ref.public_url == "https://cdn.example.com/media/blog/photo.webp"
        assert blob_store.put_calls == [("blog/photo.webp", "image/webp")]

        stored, content_type = blob_store.objects["blog/photo.webp"]
        assert content_type == "image/webp"
        with Image.open(BytesIO(stored)) as image:
            assert image.size == (1920, 960)

    @pytest.mark.asyncio
    async def test_zero_byte_file_never_uploads(
        self, media_pipeline: MediaPipeline, blob_store
    ) -> None:
        """Test a zero-byte file fails in the probe and never reaches the store."""
        with pytest.raises(DecodeError):
            await media_pipeline.upload_optimized_image(b"", "bad.jpg", "bad.webp")

        assert blob_store.put_calls == []

    @pytest.mark.asyncio
    async def test_conflict_is_upload_error(
        self,
        media_pipeline: MediaPipeline,
        blob_store,
        make_image_bytes: Callable[..., bytes],
    ) -> None:
        """Test uploading to an existing path fails without overwriting."""
        data = make_image_bytes(10, 10)
        await media_pipeline.upload_optimized_image(data, "a.png", "a.webp")
        original = blob_store.objects["a.webp"]

        with pytest.raises(UploadError, match="already exists"):
            await media_pipeline.upload_optimized_image(
                make_image_bytes(20, 20), "a.png", "a.webp"
            )

        assert blob_store.objects["a.webp"] == original

    @pytest.mark.asyncio
    async def test_empty_path(
        self, media_pipeline: MediaPipeline, blob_store, make_image_bytes: Callable[..., bytes]
    ) -> None:
        """Test an empty destination path is rejected up front."""
        with pytest.raises(UploadError, match="must not be empty"):
            await media_pipeline.upload_optimized_image(make_image_bytes(10, 10), "a.png", "  ")

        assert blob_store.put_calls == []

    @pytest.mark.asyncio
    async def test_cancelled_before_start(
        self, media_pipeline: MediaPipeline, blob_store, make_image_bytes: Callable[..., bytes]
    ) -> None:
        """Test a set cancel event stops the pipeline before it starts."""
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(PipelineCancelledError) as exc_info:
            await media_pipeline.upload_optimized_image(
                make_image_bytes(10, 10), "a.png", "a.webp", cancel_event=cancel
            )

        assert exc_info.value.stage == PipelineStage.RECEIVED
        assert blob_store.put_calls == []

    @pytest.mark.asyncio
    async def test_cancelled_during_encode(
        self, media_pipeline: MediaPipeline, blob_store, make_image_bytes: Callable[..., bytes]
    ) -> None:
        """Test cancelling while encoding leaves the store untouched."""
        cancel = asyncio.Event()
        encode_image = media_pipeline.optimizer.encode_image

        async def encode_then_cancel(*args, **kwargs):
            result = await encode_image(*args, **kwargs)
            cancel.set()
            return result

        with patch.object(media_pipeline.optimizer, "encode_image", side_effect=encode_then_cancel):
            with pytest.raises(PipelineCancelledError) as exc_info:
                await media_pipeline.upload_optimized_image(
                    make_image_bytes(10, 10), "a.png", "a.webp", cancel_event=cancel
                )

        assert exc_info.value.stage == PipelineStage.ENCODED
        assert blob_store.put_calls == []


class TestUploadMany:
    """Test batch uploads."""

    @pytest.mark.asyncio
    async def test_failures_are_isolated(
        self, media_pipeline: MediaPipeline, blob_store, make_image_bytes: Callable[..., bytes]
    ) -> None:
        """Test one corrupt file does not affect the others and order is kept."""
        items = [
            MediaInput(filename="first.png", data=make_image_bytes(3000, 1500)),
            MediaInput(filename="bad.jpg", data=b""),
            MediaInput(filename="third.jpg", data=make_image_bytes(100, 50, format="JPEG")),
        ]

        results = await media_pipeline.upload_many(items, folder="blog")

        assert [result.ok for result in results] == [True, False, True]
        assert results[0].filename == "first.webp"
        assert (results[0].width, results[0].height) == (1920, 960)
        assert results[0].stage == PipelineStage.UPLOADED
        assert results[0].path.startswith("blog/")
        assert results[0].path.endswith(".webp")
        assert results[0].public_url == f"https://cdn.example.com/media/{results[0].path}"

        assert results[1].filename == "bad.jpg"
        assert results[1].stage == PipelineStage.RECEIVED
        assert isinstance(results[1].error, DecodeError)

        assert (results[2].width, results[2].height) == (100, 50)
        assert len(blob_store.objects) == 2

    @pytest.mark.asyncio
    async def test_upload_failure_reports_stage(
        self, media_pipeline: MediaPipeline, blob_store, make_image_bytes: Callable[..., bytes]
    ) -> None:
        """Test a store failure is reported after the encode stage."""
        blob_store.fail_with = ConnectionError("unreachable")

        results = await media_pipeline.upload_many(
            [MediaInput(filename="a.png", data=make_image_bytes(10, 10))]
        )

        assert results[0].stage == PipelineStage.ENCODED
        assert isinstance(results[0].error, UploadError)
        assert "unreachable" in str(results[0].error)

    @pytest.mark.asyncio
    async def test_too_large(
        self, media_pipeline: MediaPipeline, blob_store
    ) -> None:
        """Test files over the input limit fail without processing."""
        results = await media_pipeline.upload_many(
            [MediaInput(filename="huge.png", data=b"\0" * (1024 * 1024 + 1))]
        )

        assert isinstance(results[0].error, InputTooLargeError)
        assert results[0].stage == PipelineStage.RECEIVED
        assert blob_store.put_calls == []

    @pytest.mark.asyncio
    async def test_raw_upload(self, media_pipeline: MediaPipeline, blob_store) -> None:
        """Test unoptimized uploads keep bytes and guess the content type."""
        results = await media_pipeline.upload_many(
            [MediaInput(filename="brochure.pdf", data=b"%PDF-1.4")],
            folder="docs",
            optimize=False,
        )

        result = results[0]
        assert result.ok
        assert result.path.startswith("docs/")
        assert result.path.endswith(".pdf")
        assert result.content_type == "application/pdf"
        assert blob_store.objects[result.path] == (b"%PDF-1.4", "application/pdf")

    @pytest.mark.asyncio
    async def test_raw_upload_reports_stored_content_type(
        self, media_pipeline: MediaPipeline, blob_store
    ) -> None:
        """Test the reported content type is the one the object was stored with."""
        results = await media_pipeline.upload_many(
            [MediaInput(filename="logo.png", data=b"x")], optimize=False
        )

        result = results[0]
        stored_type = blob_store.objects[result.path][1]
        assert stored_type == "image/png"
        assert result.content_type == stored_type

    @pytest.mark.asyncio
    async def test_raw_upload_keeps_declared_content_type(
        self, media_pipeline: MediaPipeline, blob_store
    ) -> None:
        """Test an explicit content type wins over the filename guess."""
        results = await media_pipeline.upload_many(
            [MediaInput(filename="data.bin", data=b"x", content_type="image/avif")],
            optimize=False,
        )

        assert results[0].content_type == "image/avif"
        assert blob_store.objects[results[0].path][1] == "image/avif"

    @pytest.mark.asyncio
    async def test_too_large_by_declared_size(
        self, media_pipeline: MediaPipeline, blob_store
    ) -> None:
        """Test an unread file is rejected from its declared size alone."""
        results = await media_pipeline.upload_many(
            [MediaInput(filename="huge.png", data=b"", size=5 * 1024 * 1024)]
        )

        assert isinstance(results[0].error, InputTooLargeError)
        assert "5.00MB" in str(results[0].error)
        assert blob_store.put_calls == []

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(
        self, blob_store, make_image_bytes: Callable[..., bytes]
    ) -> None:
        """Test no more than the configured number of uploads run at once."""
        pipeline = MediaPipeline(store=blob_store, concurrency=2)
        active = 0
        peak = 0
        put_object = blob_store.put_object

        async def tracked_put(*args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await put_object(*args, **kwargs)

        blob_store.put_object = tracked_put
        items = [MediaInput(filename=f"{i}.png", data=make_image_bytes(10, 10)) for i in range(6)]

        results = await pipeline.upload_many(items)

        assert all(result.ok for result in results)
        assert peak <= 2


class TestGenerateObjectPath:
    """Test unique path generation."""

    def test_format(self) -> None:
        """Test timestamp, token and lowercased extension under the folder."""
        path = generate_object_path("Photo.WEBP", "blog/2024")
        assert re.fullmatch(r"blog/2024/\d{8}T\d{12}-[0-9a-f]{8}\.webp", path)

    def test_root_and_unsafe_segments(self) -> None:
        """Test empty folder and dot segments are dropped."""
        assert "/" not in generate_object_path("a.png", "")
        assert generate_object_path("a.png", "../../etc/./").count("/") == 1

    def test_unique(self) -> None:
        """Test repeated calls give different paths."""
        assert generate_object_path("a.png") != generate_object_path("a.png")
