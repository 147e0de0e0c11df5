"""Per-file optimize-and-upload pipeline."""

import asyncio
import logging
import mimetypes
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Iterable, List, Optional, Tuple

from src.api.config import UPLOAD_CONCURRENCY
from src.core.optimizer import (
    DecodeError,
    EncodeError,
    ImageOptimizer,
    OptimizationOptions,
    OptimizedImage,
    optimized_filename,
)
from src.core.storage import BlobStore, StoredObjectRef, UploadError
from src.utils.metrics import Stopwatch

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    """States one file moves through, in order."""

    RECEIVED = "received"
    PROBED = "probed"
    RESIZED = "resized"
    ENCODED = "encoded"
    UPLOADED = "uploaded"


class PipelineCancelledError(Exception):
    """Raised when a pipeline is cancelled before it reaches the blob store."""

    def __init__(self, stage: PipelineStage):
        super().__init__(f"Upload cancelled after stage '{stage.value}'")
        self.stage = stage


class InputTooLargeError(Exception):
    """Raised when an upload exceeds the configured input size."""

    pass


PIPELINE_ERRORS = (
    DecodeError,
    EncodeError,
    UploadError,
    PipelineCancelledError,
    InputTooLargeError,
)


@dataclass
class MediaInput:
    """A file as received from the caller."""

    filename: str
    data: bytes
    content_type: str = "application/octet-stream"
    # Declared size when the body was not read
    size: Optional[int] = None

    @property
    def size_bytes(self) -> int:
        return self.size if self.size is not None else len(self.data)


@dataclass
class FileResult:
    """Outcome of one file in a batch."""

    filename: str
    stage: PipelineStage
    path: Optional[str] = None
    public_url: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class _Progress:
    """Tracks the last stage a file completed."""

    def __init__(self, filename: str) -> None:
        self.filename = filename
        self.stage = PipelineStage.RECEIVED
        self.stopwatch = Stopwatch()

    def advance(self, stage: PipelineStage) -> None:
        self.stage = stage
        logger.info(f"{self.filename}: {stage.value} ({self.stopwatch.elapsed_ms}ms)")


def generate_object_path(filename: str, folder: str = "") -> str:
    """
    Build a unique object path for an upload.

    The name is a UTC timestamp plus a random token, keeping the file's
    extension. Empty, '.' and '..' folder segments are dropped.
    """
    extension = PurePosixPath(filename.replace("\\", "/")).suffix.lower()
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    name = f"{stamp}-{secrets.token_hex(4)}{extension}"

    segments = [part for part in folder.split("/") if part and part not in (".", "..")]
    return "/".join(segments + [name])


def raw_content_type(item: MediaInput) -> str:
    """Declared content type, or one guessed from the filename when missing."""
    content_type = item.content_type or "application/octet-stream"
    if content_type == "application/octet-stream":
        content_type = mimetypes.guess_type(item.filename)[0] or content_type
    return content_type


def _check_cancelled(cancel_event: Optional[asyncio.Event], progress: _Progress) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.warning(f"{progress.filename}: cancelled after {progress.stage.value}")
        raise PipelineCancelledError(progress.stage)


class MediaPipeline:
    """Optimize images and upload them to a blob store."""

    def __init__(
        self,
        store: BlobStore,
        optimizer: Optional[ImageOptimizer] = None,
        concurrency: int = UPLOAD_CONCURRENCY,
        max_input_bytes: Optional[int] = None,
    ) -> None:
        self.store = store
        self.optimizer = optimizer or ImageOptimizer()
        self.concurrency = max(1, concurrency)
        self.max_input_bytes = max_input_bytes

    async def upload_optimized_image(
        self,
        data: bytes,
        filename: str,
        path: str,
        options: Optional[OptimizationOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StoredObjectRef:
        """
        Optimize one image and upload it to the given path.

        Args:
            data: Raw image bytes
            filename: Original filename
            path: Destination object path; uniqueness is the caller's concern
            options: Resize bounds and output encoding
            cancel_event: When set, abort at the next suspension point

        Returns:
            Resolved path and public URL of the stored object

        Raises:
            DecodeError: Source is not a readable image
            EncodeError: Rasterization or encoding failed
            UploadError: The blob store rejected the upload or was unreachable
            PipelineCancelledError: cancel_event was set before the upload
        """
        _, ref = await self._optimize_and_upload(
            MediaInput(filename=filename, data=data),
            path,
            options or OptimizationOptions(),
            cancel_event,
            _Progress(filename),
        )
        return ref

    async def upload_many(
        self,
        items: Iterable[MediaInput],
        folder: str = "",
        options: Optional[OptimizationOptions] = None,
        optimize: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[FileResult]:
        """
        Run one pipeline per file concurrently.

        Failures are reported per file and never affect the other files.
        Results are returned in input order.
        """
        options = options or OptimizationOptions()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(item: MediaInput) -> FileResult:
            async with semaphore:
                return await self._process(item, folder, options, optimize, cancel_event)

        results = await asyncio.gather(*(run_one(item) for item in items))
        failed = sum(1 for result in results if not result.ok)
        logger.info(f"Batch finished: {len(results) - failed} uploaded, {failed} failed")
        return list(results)

    async def _process(
        self,
        item: MediaInput,
        folder: str,
        options: OptimizationOptions,
        optimize: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> FileResult:
        progress = _Progress(item.filename)

        try:
            self._check_size(item)

            if not optimize:
                content_type = raw_content_type(item)
                ref = await self._upload_raw(
                    item,
                    generate_object_path(item.filename, folder),
                    content_type,
                    cancel_event,
                    progress,
                )
                return FileResult(
                    filename=item.filename,
                    stage=progress.stage,
                    path=ref.path,
                    public_url=ref.public_url,
                    content_type=content_type,
                    size_bytes=len(item.data),
                )

            path = generate_object_path(optimized_filename(item.filename, options.format), folder)
            optimized, ref = await self._optimize_and_upload(
                item, path, options, cancel_event, progress
            )

        except PIPELINE_ERRORS as e:
            logger.warning(f"{item.filename}: failed after {progress.stage.value}: {e}")
            return FileResult(filename=item.filename, stage=progress.stage, error=e)

        return FileResult(
            filename=optimized.filename,
            stage=progress.stage,
            path=ref.path,
            public_url=ref.public_url,
            content_type=optimized.content_type,
            size_bytes=optimized.size_bytes,
            width=optimized.dimensions.width,
            height=optimized.dimensions.height,
        )

    async def _optimize_and_upload(
        self,
        item: MediaInput,
        path: str,
        options: OptimizationOptions,
        cancel_event: Optional[asyncio.Event],
        progress: _Progress,
    ) -> Tuple[OptimizedImage, StoredObjectRef]:
        if not path.strip():
            raise UploadError("Destination path must not be empty")

        _check_cancelled(cancel_event, progress)
        source = await self.optimizer.probe_image(item.data, item.filename)
        progress.advance(PipelineStage.PROBED)

        _check_cancelled(cancel_event, progress)
        target = self.optimizer.target_dimensions(source.dimensions, options)
        progress.advance(PipelineStage.RESIZED)

        optimized = await self.optimizer.encode_image(source, target, options)
        progress.advance(PipelineStage.ENCODED)

        _check_cancelled(cancel_event, progress)
        ref = await self._put(path, optimized.data, optimized.content_type)
        progress.advance(PipelineStage.UPLOADED)
        return optimized, ref

    async def _upload_raw(
        self,
        item: MediaInput,
        path: str,
        content_type: str,
        cancel_event: Optional[asyncio.Event],
        progress: _Progress,
    ) -> StoredObjectRef:
        _check_cancelled(cancel_event, progress)
        ref = await self._put(path, item.data, content_type)
        progress.advance(PipelineStage.UPLOADED)
        return ref

    async def _put(self, path: str, data: bytes, content_type: str) -> StoredObjectRef:
        resolved_path = await self.store.put_object(path, data, content_type)
        return StoredObjectRef(path=resolved_path, public_url=self.store.public_url(resolved_path))

    def _check_size(self, item: MediaInput) -> None:
        if self.max_input_bytes is not None and item.size_bytes > self.max_input_bytes:
            raise InputTooLargeError(
                f"File too large: {item.size_bytes / (1024 * 1024):.2f}MB "
                f"(max: {self.max_input_bytes / (1024 * 1024):.0f}MB)"
            )
