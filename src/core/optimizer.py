"""Image probing, aspect-preserving resizing and transcoding."""

import asyncio
import logging
import math
from dataclasses import dataclass
from functools import partial
from io import BytesIO
from pathlib import PurePosixPath
from typing import Dict, Literal, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field

from src.api.config import (
    DEFAULT_FORMAT,
    DEFAULT_MAX_HEIGHT,
    DEFAULT_MAX_WIDTH,
    DEFAULT_QUALITY,
)

logger = logging.getLogger(__name__)

EXIF_ORIENTATION_TAG = 0x0112
# Orientations that rotate by 90 or 270 degrees
TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}

LOSSY_FORMATS = {"WEBP", "JPEG"}


class DecodeError(Exception):
    """Raised when the source buffer cannot be decoded as an image."""

    pass


class EncodeError(Exception):
    """Raised when rasterizing or encoding the target image fails."""

    pass


class OptimizationOptions(BaseModel):
    """Resize bounds and output encoding for one optimization call."""

    model_config = ConfigDict(frozen=True)

    max_width: int = Field(default=DEFAULT_MAX_WIDTH, gt=0, description="Maximum width in pixels")
    max_height: int = Field(
        default=DEFAULT_MAX_HEIGHT, gt=0, description="Maximum height in pixels"
    )
    quality: float = Field(
        default=DEFAULT_QUALITY,
        gt=0.0,
        le=1.0,
        description="Encoder quality in (0, 1]; ignored for png",
    )
    format: Literal["webp", "jpeg", "png"] = Field(
        default=DEFAULT_FORMAT, description="Output image format"
    )

    @property
    def content_type(self) -> str:
        return f"image/{self.format}"


@dataclass(frozen=True)
class ImageDimensions:
    """Pixel size of an image."""

    width: int
    height: int


@dataclass
class SourceImage:
    """A decoded-enough upload: raw bytes plus what the probe learned."""

    data: bytes
    filename: str
    content_type: str
    dimensions: ImageDimensions


@dataclass
class OptimizedImage:
    """Re-encoded image ready to be handed to the blob store."""

    data: bytes
    filename: str
    content_type: str
    dimensions: ImageDimensions
    original_dimensions: ImageDimensions
    quality: Optional[int]

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_target_dimensions(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
    allow_upscale: bool = False,
) -> ImageDimensions:
    """
    Fit (width, height) inside (max_width, max_height) keeping the aspect ratio.

    Args:
        width: Source width in pixels
        height: Source height in pixels
        max_width: Bounding box width
        max_height: Bounding box height
        allow_upscale: Scale images that already fit up to the bounding box

    Returns:
        Target dimensions, never smaller than 1x1

    Raises:
        ValueError: If any input is not positive
    """
    if min(width, height, max_width, max_height) <= 0:
        raise ValueError(
            f"Dimensions must be positive: source {width}x{height}, "
            f"bounds {max_width}x{max_height}"
        )

    scale = min(max_width / width, max_height / height)
    if not allow_upscale:
        scale = min(scale, 1.0)

    return ImageDimensions(
        width=max(1, _round_half_up(width * scale)),
        height=max(1, _round_half_up(height * scale)),
    )


def optimized_filename(filename: str, output_format: str) -> str:
    """Replace the extension after the final dot with the output format."""
    name = PurePosixPath(filename.replace("\\", "/")).name
    stem, dot, _ = name.rpartition(".")
    if not dot or not stem:
        stem = name
    return f"{stem or 'image'}.{output_format}"


class ImageOptimizer:
    """Probe, resize and transcode uploaded images."""

    def __init__(self, allow_upscale: bool = False) -> None:
        """Initialize the optimizer with its upscaling policy."""
        self.allow_upscale = allow_upscale

    async def probe_image(self, data: bytes, filename: str = "") -> SourceImage:
        """
        Read the pixel dimensions of an image without decoding its pixels.

        Args:
            data: Raw image bytes
            filename: Original filename, kept for naming the output

        Returns:
            SourceImage with dimensions as displayed (EXIF rotation applied)

        Raises:
            DecodeError: If the buffer is empty, corrupt or not an image
        """
        loop = asyncio.get_running_loop()
        dimensions, content_type = await loop.run_in_executor(
            None, partial(self._read_header, data)
        )
        logger.info(f"Probed {filename or '<unnamed>'}: {dimensions.width}x{dimensions.height}")
        return SourceImage(
            data=data,
            filename=filename,
            content_type=content_type,
            dimensions=dimensions,
        )

    def target_dimensions(
        self, source: ImageDimensions, options: OptimizationOptions
    ) -> ImageDimensions:
        """Compute output dimensions for a source under the given options."""
        return calculate_target_dimensions(
            source.width,
            source.height,
            options.max_width,
            options.max_height,
            allow_upscale=self.allow_upscale,
        )

    async def encode_image(
        self,
        source: SourceImage,
        target: ImageDimensions,
        options: OptimizationOptions,
    ) -> OptimizedImage:
        """
        Rasterize the source at the target size and encode it.

        Args:
            source: Probed source image
            target: Output dimensions
            options: Output format and quality

        Returns:
            OptimizedImage with the encoded bytes

        Raises:
            DecodeError: If the source pixel data turns out to be corrupt
            EncodeError: If the format has no encoder or encoding fails
        """
        output_format = options.format.upper()
        quality_value = self._quality_value(options.quality, output_format)

        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(
            None,
            partial(self._render, source.data, target, output_format, quality_value),
        )

        optimized = OptimizedImage(
            data=data,
            filename=optimized_filename(source.filename, options.format),
            content_type=options.content_type,
            dimensions=target,
            original_dimensions=source.dimensions,
            quality=quality_value,
        )
        logger.info(
            f"Encoded {optimized.filename}: {target.width}x{target.height}, "
            f"{optimized.size_bytes / 1024:.1f}KB ({source.dimensions.width}x"
            f"{source.dimensions.height}, {len(source.data) / 1024:.1f}KB before)"
        )
        return optimized

    async def optimize_image(
        self,
        data: bytes,
        filename: str,
        options: Optional[OptimizationOptions] = None,
    ) -> OptimizedImage:
        """Probe, resize and encode in one call."""
        options = options or OptimizationOptions()
        source = await self.probe_image(data, filename)
        target = self.target_dimensions(source.dimensions, options)
        return await self.encode_image(source, target, options)

    def _read_header(self, data: bytes) -> Tuple[ImageDimensions, str]:
        """Open the image lazily and report its displayed size and MIME type."""
        if not data:
            raise DecodeError("Image data is empty")

        try:
            with Image.open(BytesIO(data)) as image:
                width, height = image.size
                content_type = image.get_format_mimetype() or "application/octet-stream"
                orientation = image.getexif().get(EXIF_ORIENTATION_TAG)
        except (UnidentifiedImageError, Image.DecompressionBombError) as e:
            raise DecodeError(f"Not a readable image: {e}") from e
        except (OSError, SyntaxError, ValueError) as e:
            raise DecodeError(f"Failed to read image header: {e}") from e

        if width <= 0 or height <= 0:
            raise DecodeError(f"Invalid image size: {width}x{height}")

        if orientation in TRANSPOSED_ORIENTATIONS:
            width, height = height, width

        return ImageDimensions(width=width, height=height), content_type

    def _render(
        self,
        data: bytes,
        target: ImageDimensions,
        output_format: str,
        quality: Optional[int],
    ) -> bytes:
        """Decode, orient, resize and encode; runs in a worker thread."""
        Image.init()
        if output_format not in Image.SAVE:
            raise EncodeError(f"No {output_format} encoder available in this Pillow build")

        with Image.open(BytesIO(data)) as source:
            try:
                source.load()
            except (OSError, SyntaxError, ValueError) as e:
                raise DecodeError(f"Failed to decode image data: {e}") from e

            try:
                image = ImageOps.exif_transpose(source)
                image = self._prepare_mode(image, output_format)

                size = (target.width, target.height)
                if image.size != size:
                    # LANCZOS is deterministic for identical input
                    image = image.resize(size, Image.Resampling.LANCZOS)
            except (OSError, ValueError, MemoryError) as e:
                raise EncodeError(f"Failed to rasterize image: {e}") from e

        return self._compress_image(image, output_format, quality)

    def _prepare_mode(self, image: Image.Image, output_format: str) -> Image.Image:
        """Convert to a mode the output encoder accepts."""
        has_alpha = image.mode in ("RGBA", "LA", "PA") or (
            image.mode == "P" and "transparency" in image.info
        )

        if output_format == "JPEG":
            if has_alpha:
                rgba = image.convert("RGBA")
                background = Image.new("RGB", rgba.size, (255, 255, 255))
                background.paste(rgba, mask=rgba.split()[3])
                return background
            return image if image.mode in ("RGB", "L") else image.convert("RGB")

        if has_alpha:
            return image if image.mode == "RGBA" else image.convert("RGBA")
        return image if image.mode == "RGB" else image.convert("RGB")

    def _compress_image(
        self, image: Image.Image, output_format: str, quality: Optional[int]
    ) -> bytes:
        """Encode with format-specific settings."""
        buffer = BytesIO()
        save_kwargs: Dict[str, object] = {}

        if output_format == "WEBP":
            save_kwargs["quality"] = quality
            save_kwargs["method"] = 6  # Best compression
        elif output_format == "JPEG":
            save_kwargs["quality"] = quality
            save_kwargs["optimize"] = True
            save_kwargs["progressive"] = True
        elif output_format == "PNG":
            save_kwargs["optimize"] = True
            save_kwargs["compress_level"] = 9

        try:
            image.save(buffer, format=output_format, **save_kwargs)
        except (OSError, KeyError, ValueError) as e:
            raise EncodeError(f"Failed to encode {output_format}: {e}") from e

        return buffer.getvalue()

    def _quality_value(self, quality: float, output_format: str) -> Optional[int]:
        """Map (0, 1] onto the encoder's 1-100 scale; None for lossless formats."""
        if output_format not in LOSSY_FORMATS:
            logger.debug(f"Quality {quality} ignored for lossless {output_format}")
            return None
        return max(1, min(100, _round_half_up(quality * 100)))
