"""Media upload and library endpoints."""

import asyncio
import logging
from typing import Literal

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.api.config import (
    DEFAULT_FORMAT,
    DEFAULT_MAX_HEIGHT,
    DEFAULT_MAX_WIDTH,
    DEFAULT_QUALITY,
    settings,
)
from src.api.models import (
    FolderCreate,
    FolderResponse,
    MediaFile,
    MediaListResponse,
    UploadResponse,
    UploadResult,
)
from src.core.optimizer import ImageOptimizer, OptimizationOptions
from src.core.pipeline import MediaInput, MediaPipeline
from src.core.storage import StorageError, StorageService, normalize_key

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

router = APIRouter(prefix="/api/v1")


def get_storage_service() -> StorageService:
    """Get storage service instance."""
    return StorageService(
        bucket=settings.storage_bucket,
        aws_access_key_id=settings.storage_access_key_id,
        aws_secret_access_key=settings.storage_secret_access_key,
        region=settings.storage_region,
        endpoint_url=settings.storage_endpoint_url,
        public_base_url=settings.storage_public_base_url,
        timeout_seconds=settings.storage_timeout_seconds,
        cache_control_seconds=settings.storage_cache_control_seconds,
    )


def get_image_optimizer() -> ImageOptimizer:
    """Get image optimizer instance."""
    return ImageOptimizer(allow_upscale=settings.image_allow_upscale)


def get_media_pipeline(
    storage: StorageService = Depends(get_storage_service),
    optimizer: ImageOptimizer = Depends(get_image_optimizer),
) -> MediaPipeline:
    """Get upload pipeline bound to the configured bucket."""
    return MediaPipeline(
        store=storage,
        optimizer=optimizer,
        concurrency=settings.upload_concurrency,
        max_input_bytes=settings.max_input_size_bytes,
    )


@router.post("/media/upload", response_model=UploadResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
@limiter.limit(f"{settings.rate_limit_per_hour}/hour")
async def upload_media(
    request: Request,
    files: list[UploadFile] = File(..., description="Files to upload"),
    folder: str = Form(default="", description="Destination folder"),
    optimize: bool = Form(default=True, description="Resize and transcode images"),
    max_width: int = Form(default=DEFAULT_MAX_WIDTH, gt=0, description="Maximum width"),
    max_height: int = Form(default=DEFAULT_MAX_HEIGHT, gt=0, description="Maximum height"),
    quality: float = Form(default=DEFAULT_QUALITY, gt=0.0, le=1.0, description="Quality"),
    format: Literal["webp", "jpeg", "png"] = Form(
        default=DEFAULT_FORMAT, description="Output image format"
    ),
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> UploadResponse:
    """
    Upload one or more files, optimizing images on the way.

    Each file succeeds or fails independently; failures are reported in
    the per-file results rather than failing the request.
    """
    options = OptimizationOptions(
        max_width=max_width, max_height=max_height, quality=quality, format=format
    )

    limit = pipeline.max_input_bytes
    items = []
    for upload in files:
        filename = upload.filename or "upload"
        content_type = upload.content_type or "application/octet-stream"
        if limit is not None and upload.size is not None and upload.size > limit:
            # Left unread; the pipeline rejects it by declared size
            items.append(
                MediaInput(filename=filename, data=b"", content_type=content_type, size=upload.size)
            )
            continue
        items.append(
            MediaInput(filename=filename, data=await upload.read(), content_type=content_type)
        )

    try:
        results = await asyncio.wait_for(
            pipeline.upload_many(items, folder=folder, options=options, optimize=optimize),
            timeout=settings.request_timeout_seconds,
        )

    except asyncio.TimeoutError:
        logger.error(f"Upload timeout after {settings.request_timeout_seconds}s")
        raise HTTPException(
            status_code=504,
            detail=f"Request timeout: upload took longer than {settings.request_timeout_seconds}s",
        )

    except Exception as e:
        logger.error(f"Unexpected error uploading media: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    failed = sum(1 for result in results if not result.ok)
    return UploadResponse(
        results=[UploadResult.from_file_result(result) for result in results],
        uploaded=len(results) - failed,
        failed=failed,
    )


@router.get("/media", response_model=MediaListResponse)
async def list_media(
    folder: str = Query(default="", description="Folder to list, empty for the root"),
    storage: StorageService = Depends(get_storage_service),
) -> MediaListResponse:
    """List files and sub-folders of a media folder."""
    try:
        objects, folders = await storage.list_objects(folder)
    except StorageError as e:
        logger.error(f"Media listing error: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return MediaListResponse(
        folder=normalize_key(folder),
        files=[MediaFile.from_stored_object(stored) for stored in objects],
        folders=folders,
    )


@router.post("/media/folders", response_model=FolderResponse, status_code=201)
async def create_folder(
    body: FolderCreate,
    storage: StorageService = Depends(get_storage_service),
) -> FolderResponse:
    """Create an empty media folder."""
    if not normalize_key(body.name):
        raise HTTPException(status_code=422, detail="Folder name must not be empty")

    try:
        folder = await storage.create_folder(body.name)
    except StorageError as e:
        logger.error(f"Folder create error: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return FolderResponse(folder=folder)


@router.delete("/media/{path:path}", status_code=204)
async def delete_media(
    path: str,
    storage: StorageService = Depends(get_storage_service),
) -> Response:
    """Delete a stored media object."""
    try:
        await storage.delete_object(path)
    except StorageError as e:
        logger.error(f"Media delete error: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return Response(status_code=204)


@router.get("/health")
async def health_check(
    storage: StorageService = Depends(get_storage_service),
) -> JSONResponse:
    """
    Health check endpoint.

    Reports the configured bucket without contacting the store.
    """
    return JSONResponse(
        content={
            "status": "healthy",
            "bucket": storage.bucket,
        }
    )
