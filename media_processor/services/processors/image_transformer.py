"""
Image transformer: square thumbnail plus an aspect-preserving resolution ladder.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import filetype

from media_processor.core.exceptions import ImageTransformError, NoOutputsError
from media_processor.models.job import (
    ImageMetadata,
    OutputKind,
    ProcessingOutput,
    TempFileRole,
)
from media_processor.services.processors.base import (
    OutputKeys,
    TrackFn,
    TransformResult,
    no_tracking,
)
from utils.image_utils import (
    cover_crop,
    load_image,
    read_channel_count,
    resize_exact,
    write_jpeg,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageQuality:
    label: str
    width: int
    height: int
    jpeg_quality: int


IMAGE_QUALITY_LADDER: Tuple[ImageQuality, ...] = (
    ImageQuality("180p", 180, 180, 80),
    ImageQuality("360p", 360, 360, 80),
    ImageQuality("720p", 720, 720, 85),
    ImageQuality("1080p", 1080, 1080, 90),
)

THUMBNAIL_SIZE = 300
THUMBNAIL_JPEG_QUALITY = 80


def calculate_variant_size(
    original_width: int, original_height: int, quality: ImageQuality
) -> Tuple[int, int]:
    """Target size for one ladder entry, preserving the original aspect ratio.

    Landscape works width-first: height = round(width / ratio); if that falls
    below the quality's minimum height the height is pinned there and the
    width recomputed. Portrait mirrors this height-first. Square keeps both
    edges at the quality size.
    """
    ratio = original_width / original_height
    if ratio > 1:
        width = quality.width
        height = round(width / ratio)
        if height < quality.height:
            height = quality.height
            width = round(height * ratio)
    elif ratio < 1:
        height = quality.height
        width = round(height * ratio)
        if width < quality.width:
            width = quality.width
            height = round(width / ratio)
    else:
        width, height = quality.width, quality.height
    return width, height


def should_generate_variant(
    original_width: int, original_height: int, width: int, height: int
) -> bool:
    """Never upscale: the target must fit inside the original and be smaller"""
    fits = width <= original_width and height <= original_height
    return fits and (width < original_width or height < original_height)


class ImageTransformer:
    """
    Produces a center-cropped thumbnail and the resolution ladder for one image.

    Runs synchronously; callers schedule it on an executor.

    Example:
        transformer = ImageTransformer()
        result = transformer.transform(path, output_dir, ImageOutputKeys(media_id))
    """

    def __init__(self, ladder: Sequence[ImageQuality] = IMAGE_QUALITY_LADDER):
        self.ladder = tuple(ladder)

    def probe(self, path: str) -> ImageMetadata:
        """Read dimensions and format without producing outputs.

        Raises:
            ImageTransformError: the file cannot be decoded
        """
        img = load_image(path)
        if img is None:
            raise ImageTransformError(f"Unable to decode image: {os.path.basename(path)}")
        return self._metadata(path, img)

    def _metadata(self, path: str, img) -> ImageMetadata:
        height, width = img.shape[:2]
        kind = filetype.guess(path)
        channels = read_channel_count(path)
        return ImageMetadata(
            width=width,
            height=height,
            file_size=os.path.getsize(path),
            mime_type=kind.mime if kind else "application/octet-stream",
            format=kind.extension if kind else os.path.splitext(path)[1].lstrip(".").lower(),
            color_space="b-w" if channels == 1 else "srgb",
            has_alpha=channels == 4,
        )

    def transform(
        self,
        path: str,
        output_dir: str,
        keys: OutputKeys,
        track: TrackFn = no_tracking,
        name_prefix: str = "",
    ) -> TransformResult:
        """Generate thumbnail and ladder variants.

        Raises:
            ImageTransformError: the source cannot be decoded
            NoOutputsError: not even the thumbnail could be written
        """
        img = load_image(path)
        if img is None:
            raise ImageTransformError(f"Unable to decode image: {os.path.basename(path)}")

        metadata = self._metadata(path, img)
        result = TransformResult(metadata=metadata.to_wire())
        os.makedirs(output_dir, exist_ok=True)

        thumbnail = self._write_thumbnail(img, output_dir, keys, track, name_prefix)
        if thumbnail is not None:
            result.outputs.append(thumbnail)
        else:
            result.errors.append("thumbnail")

        for quality in self.ladder:
            width, height = calculate_variant_size(metadata.width, metadata.height, quality)
            if not should_generate_variant(metadata.width, metadata.height, width, height):
                logger.debug(
                    "Skipping %s for %dx%d source (target %dx%d)",
                    quality.label,
                    metadata.width,
                    metadata.height,
                    width,
                    height,
                )
                continue

            out_path = os.path.join(output_dir, f"{name_prefix}{quality.label}.jpg")
            track(out_path, TempFileRole.OUTPUT)
            try:
                resized = resize_exact(img, width, height)
                write_jpeg(out_path, resized, quality.jpeg_quality)
            except Exception as e:
                # includes cv2.error from the encoder; other levels still run
                logger.error("Failed to generate %s variant: %s", quality.label, e)
                result.errors.append(quality.label)
                continue

            result.outputs.append(
                ProcessingOutput(
                    kind=OutputKind.RESOLUTION_VARIANT,
                    quality=quality.label,
                    width=width,
                    height=height,
                    destination_key=keys.variant(quality.label, "jpg"),
                    local_path=out_path,
                    byte_size=os.path.getsize(out_path),
                    mime_type="image/jpeg",
                )
            )

        if not result.outputs:
            raise NoOutputsError("No outputs generated")

        logger.info(
            "Image %dx%d -> %d outputs (%d failed)",
            metadata.width,
            metadata.height,
            len(result.outputs),
            len(result.errors),
        )
        return result

    def _write_thumbnail(
        self, img, output_dir: str, keys: OutputKeys, track: TrackFn, name_prefix: str
    ) -> Optional[ProcessingOutput]:
        out_path = os.path.join(output_dir, f"{name_prefix}thumbnail.jpg")
        track(out_path, TempFileRole.OUTPUT)
        try:
            thumb = cover_crop(img, THUMBNAIL_SIZE, THUMBNAIL_SIZE)
            width, height = write_jpeg(out_path, thumb, THUMBNAIL_JPEG_QUALITY)
        except Exception as e:
            logger.error("Failed to generate thumbnail: %s", e)
            return None
        return ProcessingOutput(
            kind=OutputKind.THUMBNAIL,
            quality="thumbnail",
            width=width,
            height=height,
            destination_key=keys.thumbnail(0),
            local_path=out_path,
            byte_size=os.path.getsize(out_path),
            mime_type="image/jpeg",
        )
