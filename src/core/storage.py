"""S3-compatible blob storage for media objects."""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import quote

import aioboto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Error codes S3-compatible stores return when a conditional write finds an existing object
CONFLICT_ERROR_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "409", "412"}

mimetypes.add_type("image/webp", ".webp")


class StorageError(Exception):
    """Raised when a blob store operation fails."""

    pass


class UploadError(StorageError):
    """Raised when the blob store rejects an upload or cannot be reached."""

    pass


@dataclass
class StoredObjectRef:
    """Location of an uploaded object."""

    path: str
    public_url: str


@dataclass
class StoredObject:
    """An object listed from a media folder."""

    name: str
    path: str
    public_url: str
    size_bytes: int
    content_type: str
    last_modified: Optional[datetime] = None


class BlobStore(Protocol):
    """The two calls the upload pipeline makes into object storage."""

    async def put_object(self, path: str, data: bytes, content_type: str) -> str:
        ...

    def public_url(self, resolved_path: str) -> str:
        ...


def normalize_key(path: str) -> str:
    """Drop empty segments and leading slashes from an object path."""
    return "/".join(part for part in path.strip().split("/") if part)


class StorageService:
    """Blob store client for a single bucket."""

    def __init__(
        self,
        bucket: str = "media",
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
        timeout_seconds: int = 30,
        cache_control_seconds: int = 3600,
    ):
        """Initialize storage service with credentials and bucket settings."""
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url
        self.timeout_seconds = timeout_seconds
        self.cache_control_seconds = cache_control_seconds
        self.session = aioboto3.Session(
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            region_name=region,
        )

    def _client(self) -> Any:
        client_config = {"region_name": self.region}
        if self.endpoint_url:
            client_config["endpoint_url"] = self.endpoint_url
        return self.session.client("s3", **client_config)

    async def put_object(self, path: str, data: bytes, content_type: str) -> str:
        """
        Upload bytes to a new object. Existing objects are never overwritten.

        Args:
            path: Destination object path within the bucket
            data: Object content
            content_type: MIME type stored with the object

        Returns:
            The resolved object path

        Raises:
            UploadError: On conflict, permission, timeout or transport failure
        """
        key = normalize_key(path)
        if not key:
            raise UploadError("Destination path must not be empty")

        try:
            logger.info(
                f"Uploading to bucket={self.bucket}, key={key} "
                f"({len(data) / 1024:.1f}KB, {content_type})"
            )
            async with self._client() as s3_client:
                await asyncio.wait_for(
                    s3_client.put_object(
                        Bucket=self.bucket,
                        Key=key,
                        Body=data,
                        ContentType=content_type,
                        CacheControl=f"max-age={self.cache_control_seconds}",
                        IfNoneMatch="*",
                    ),
                    timeout=self.timeout_seconds,
                )

        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in CONFLICT_ERROR_CODES:
                raise UploadError(f"Object already exists: {key}") from e
            logger.error(f"Upload of {key} rejected: {code}")
            raise UploadError(f"Failed to upload {key}: {code or e}") from e
        except asyncio.TimeoutError as e:
            raise UploadError(
                f"Timeout uploading {key} after {self.timeout_seconds}s"
            ) from e
        except Exception as e:
            logger.error(f"Error uploading {key}: {e}")
            raise UploadError(f"Failed to upload {key}: {str(e)}") from e

        logger.info(f"Uploaded {key}")
        return key

    def public_url(self, resolved_path: str) -> str:
        """Build the public URL of an object from the bucket settings."""
        key = quote(normalize_key(resolved_path), safe="/")

        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{self.bucket}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def list_objects(self, folder: str = "") -> Tuple[list[StoredObject], list[str]]:
        """
        List objects and sub-folders directly under a folder.

        Args:
            folder: Folder path, empty for the bucket root

        Returns:
            Tuple of (objects, sub-folder names)

        Raises:
            StorageError: If listing fails
        """
        folder_key = normalize_key(folder)
        prefix = f"{folder_key}/" if folder_key else ""

        objects: list[StoredObject] = []
        folders: list[str] = []
        request: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "Delimiter": "/"}

        try:
            async with self._client() as s3_client:
                while True:
                    response = await asyncio.wait_for(
                        s3_client.list_objects_v2(**request),
                        timeout=self.timeout_seconds,
                    )

                    for item in response.get("Contents", []):
                        key = item["Key"]
                        name = key[len(prefix):]
                        if not name:
                            continue
                        content_type, _ = mimetypes.guess_type(name)
                        objects.append(
                            StoredObject(
                                name=name,
                                path=key,
                                public_url=self.public_url(key),
                                size_bytes=item.get("Size", 0),
                                content_type=content_type or "application/octet-stream",
                                last_modified=item.get("LastModified"),
                            )
                        )

                    for common_prefix in response.get("CommonPrefixes", []):
                        folders.append(common_prefix["Prefix"][len(prefix):].rstrip("/"))

                    if not response.get("IsTruncated"):
                        break
                    request["ContinuationToken"] = response["NextContinuationToken"]

        except asyncio.TimeoutError as e:
            raise StorageError(f"Timeout listing {prefix or '/'}") from e
        except Exception as e:
            logger.error(f"Error listing {prefix or '/'}: {e}")
            raise StorageError(f"Failed to list folder '{folder_key}': {str(e)}") from e

        logger.info(f"Listed {len(objects)} objects, {len(folders)} folders under {prefix or '/'}")
        return objects, sorted(folders)

    async def create_folder(self, folder: str) -> str:
        """
        Create an empty folder by storing a zero-byte '<folder>/' placeholder.

        Creating an existing folder succeeds without changes.

        Returns:
            The normalized folder path

        Raises:
            StorageError: If the name is empty or the write fails
        """
        folder_key = normalize_key(folder)
        if not folder_key:
            raise StorageError("Folder name must not be empty")

        try:
            async with self._client() as s3_client:
                await asyncio.wait_for(
                    s3_client.put_object(
                        Bucket=self.bucket,
                        Key=f"{folder_key}/",
                        Body=b"",
                        ContentType="application/x-directory",
                    ),
                    timeout=self.timeout_seconds,
                )
        except asyncio.TimeoutError as e:
            raise StorageError(f"Timeout creating folder {folder_key}") from e
        except Exception as e:
            logger.error(f"Error creating folder {folder_key}: {e}")
            raise StorageError(f"Failed to create folder {folder_key}: {str(e)}") from e

        logger.info(f"Created folder {folder_key}/")
        return folder_key

    async def delete_object(self, path: str) -> None:
        """
        Delete a single object.

        Raises:
            StorageError: If the path is empty or deletion fails
        """
        key = normalize_key(path)
        if not key:
            raise StorageError("Object path must not be empty")

        try:
            async with self._client() as s3_client:
                await asyncio.wait_for(
                    s3_client.delete_object(Bucket=self.bucket, Key=key),
                    timeout=self.timeout_seconds,
                )
        except asyncio.TimeoutError as e:
            raise StorageError(f"Timeout deleting {key}") from e
        except Exception as e:
            logger.error(f"Error deleting {key}: {e}")
            raise StorageError(f"Failed to delete {key}: {str(e)}") from e

        logger.info(f"Deleted {key}")
