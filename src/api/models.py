"""API request and response models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from src.core.pipeline import FileResult
from src.core.storage import StoredObject


class UploadResult(BaseModel):
    """Outcome of one uploaded file."""

    filename: str = Field(..., description="Output filename (original name if optimization failed)")
    stage: str = Field(..., description="Last pipeline stage the file completed")
    path: Optional[str] = Field(default=None, description="Object path in the bucket")
    url: Optional[str] = Field(default=None, description="Public URL of the stored object")
    content_type: Optional[str] = Field(default=None, description="MIME type of the stored object")
    size_bytes: Optional[int] = Field(default=None, description="Size of the stored object")
    width: Optional[int] = Field(default=None, description="Stored image width in pixels")
    height: Optional[int] = Field(default=None, description="Stored image height in pixels")
    error: Optional[str] = Field(default=None, description="Failure reason, if the file failed")

    @classmethod
    def from_file_result(cls, result: FileResult) -> "UploadResult":
        return cls(
            filename=result.filename,
            stage=result.stage.value,
            path=result.path,
            url=result.public_url,
            content_type=result.content_type,
            size_bytes=result.size_bytes,
            width=result.width,
            height=result.height,
            error=str(result.error) if result.error is not None else None,
        )


class UploadResponse(BaseModel):
    """Per-file results of an upload request, in request order."""

    results: list[UploadResult]
    uploaded: int = Field(..., ge=0, description="Number of files stored")
    failed: int = Field(..., ge=0, description="Number of files that failed")


class MediaFile(BaseModel):
    """A stored media object."""

    name: str
    path: str
    url: str
    size_bytes: int
    content_type: str
    last_modified: Optional[datetime] = None

    @classmethod
    def from_stored_object(cls, stored: StoredObject) -> "MediaFile":
        return cls(
            name=stored.name,
            path=stored.path,
            url=stored.public_url,
            size_bytes=stored.size_bytes,
            content_type=stored.content_type,
            last_modified=stored.last_modified,
        )


class MediaListResponse(BaseModel):
    """Contents of a media folder."""

    folder: str = Field(..., description="Listed folder, empty for the root")
    files: list[MediaFile]
    folders: list[str] = Field(..., description="Sub-folder names directly under the folder")


class FolderCreate(BaseModel):
    """Request to create an empty media folder."""

    name: str = Field(..., min_length=1, description="Folder path, e.g. 'blog/2024'")


class FolderResponse(BaseModel):
    """A created media folder."""

    folder: str = Field(..., description="Normalized folder path")
