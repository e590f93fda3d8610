"""
Video transformer: thumbnails every 15 seconds, a normalized mp4 original and an
orientation-aware letterboxed resolution ladder, all driven through ffmpeg.
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from media_processor.core.exceptions import VideoProbeError, VideoTransformError
from media_processor.models.job import (
    OutputKind,
    ProcessingOutput,
    TempFileRole,
    VideoMetadata,
)
from media_processor.services.processors.base import (
    OutputKeys,
    TrackFn,
    TransformResult,
    no_tracking,
)
from utils.image_utils import fit_inside, load_image, write_jpeg
from utils.subprocess_utils import SubprocessError, safe_subprocess_run
from utils.video_utils import (
    build_frame_extract_cmd,
    build_normalize_cmd,
    build_variant_cmd,
    find_video_stream,
    parse_frame_rate,
    probe_media,
)

logger = logging.getLogger(__name__)

CANONICAL_EXTENSION = ".mp4"
THUMBNAIL_INTERVAL_SECONDS = 15
THUMBNAIL_BOX = 720
THUMBNAIL_JPEG_QUALITY = 85
THUMBNAIL_FALLBACK_SECONDS = 1.0


@dataclass(frozen=True)
class VideoQuality:
    label: str
    width: int
    height: int
    bitrate: str


_LANDSCAPE: Tuple[VideoQuality, ...] = (
    VideoQuality("360p", 640, 360, "800k"),
    VideoQuality("540p", 960, 540, "1500k"),
    VideoQuality("720p", 1280, 720, "2500k"),
)

VIDEO_LADDERS: Dict[str, Tuple[VideoQuality, ...]] = {
    "landscape": _LANDSCAPE,
    "portrait": tuple(VideoQuality(q.label, q.height, q.width, q.bitrate) for q in _LANDSCAPE),
    "square": tuple(VideoQuality(q.label, q.height, q.height, q.bitrate) for q in _LANDSCAPE),
}


def classify_orientation(width: int, height: int) -> str:
    ratio = width / height if height else 1.0
    if ratio > 1.1:
        return "landscape"
    if ratio < 0.9:
        return "portrait"
    return "square"


def thumbnail_timestamps(
    duration: float, interval: int = THUMBNAIL_INTERVAL_SECONDS
) -> List[float]:
    """One frame per ``interval`` seconds of duration, at least one"""
    count = max(1, math.ceil(duration / interval))
    return [min((i + 1) * interval, duration) for i in range(count)]


def ladder_for(width: int, height: int) -> List[VideoQuality]:
    """Ladder entries strictly smaller than the source in both dimensions"""
    ladder = VIDEO_LADDERS[classify_orientation(width, height)]
    return [q for q in ladder if q.width < width and q.height < height]


class VideoTransformer:
    """
    Runs ffprobe/ffmpeg for one video. Synchronous; callers use an executor.

    Each thumbnail and ladder entry fails independently. Only probing and the
    normalization of the original are fatal.
    """

    def __init__(self, ffmpeg_binary: str = "ffmpeg", ffprobe_binary: str = "ffprobe"):
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary

    def probe(self, path: str) -> VideoMetadata:
        """
        Raises:
            VideoProbeError: ffprobe failed or there is no video stream
        """
        try:
            probe = probe_media(path, self.ffprobe_binary)
        except (SubprocessError, ValueError) as e:
            raise VideoProbeError(f"Failed to probe video: {e}") from e

        stream = find_video_stream(probe)
        if stream is None:
            raise VideoProbeError("No video stream found")

        fmt = probe.get("format", {})
        duration = float(fmt.get("duration") or stream.get("duration") or 0)
        bitrate = int(fmt.get("bit_rate") or stream.get("bit_rate") or 0)
        return VideoMetadata(
            duration=duration,
            codec=stream.get("codec_name", "unknown"),
            bitrate=bitrate,
            framerate=parse_frame_rate(stream.get("r_frame_rate")),
            width=int(stream.get("width") or 0),
            height=int(stream.get("height") or 0),
            file_size=os.path.getsize(path),
            mime_type="video/mp4",
        )

    def transform(
        self,
        path: str,
        metadata: VideoMetadata,
        output_dir: str,
        keys: OutputKeys,
        track: TrackFn = no_tracking,
        name_prefix: str = "",
    ) -> TransformResult:
        """
        Raises:
            VideoTransformError: the original could not be normalized
        """
        os.makedirs(output_dir, exist_ok=True)
        orientation = classify_orientation(metadata.width, metadata.height)
        result_metadata = metadata.to_wire()
        result_metadata.update(orientation=orientation, resolution=metadata.resolution)
        result = TransformResult(metadata=result_metadata)

        for index, timestamp in enumerate(thumbnail_timestamps(metadata.duration)):
            thumbnail = self._thumbnail(
                path, metadata.duration, timestamp, index, output_dir, keys, track, name_prefix
            )
            if thumbnail is None and index == 0:
                logger.warning("First thumbnail failed, retrying at %.1fs", THUMBNAIL_FALLBACK_SECONDS)
                thumbnail = self._thumbnail(
                    path,
                    metadata.duration,
                    THUMBNAIL_FALLBACK_SECONDS,
                    index,
                    output_dir,
                    keys,
                    track,
                    name_prefix,
                )
            if thumbnail is None:
                result.errors.append(f"thumbnail_{index}")
            else:
                result.outputs.append(thumbnail)

        result.outputs.append(self._original(path, metadata, output_dir, keys, track, name_prefix))

        for quality in ladder_for(metadata.width, metadata.height):
            out_path = os.path.join(output_dir, f"{name_prefix}{quality.label}.mp4")
            track(out_path, TempFileRole.OUTPUT)
            cmd = build_variant_cmd(
                path, out_path, quality.width, quality.height, quality.bitrate, self.ffmpeg_binary
            )
            try:
                safe_subprocess_run(cmd, f"ffmpeg {quality.label} variant", logger)
            except SubprocessError as e:
                logger.error("Failed to encode %s variant: %s", quality.label, e)
                result.errors.append(quality.label)
                continue

            result.outputs.append(
                ProcessingOutput(
                    kind=OutputKind.RESOLUTION_VARIANT,
                    quality=quality.label,
                    width=quality.width,
                    height=quality.height,
                    destination_key=keys.variant(quality.label, "mp4"),
                    local_path=out_path,
                    byte_size=os.path.getsize(out_path),
                    mime_type="video/mp4",
                )
            )

        logger.info(
            "Video %s %s (%.1fs) -> %d outputs (%d failed)",
            metadata.resolution,
            orientation,
            metadata.duration,
            len(result.outputs),
            len(result.errors),
        )
        return result

    def _original(
        self,
        path: str,
        metadata: VideoMetadata,
        output_dir: str,
        keys: OutputKeys,
        track: TrackFn,
        name_prefix: str,
    ) -> ProcessingOutput:
        if os.path.splitext(path)[1].lower() == CANONICAL_EXTENSION:
            out_path = path
        else:
            out_path = os.path.join(output_dir, f"{name_prefix}original.mp4")
            track(out_path, TempFileRole.OUTPUT)
            cmd = build_normalize_cmd(path, out_path, self.ffmpeg_binary)
            try:
                safe_subprocess_run(cmd, "ffmpeg normalize", logger)
            except SubprocessError as e:
                raise VideoTransformError(f"Failed to normalize original video: {e}") from e

        return ProcessingOutput(
            kind=OutputKind.RESOLUTION_VARIANT,
            quality="original",
            width=metadata.width,
            height=metadata.height,
            destination_key=keys.variant("original", "mp4"),
            local_path=out_path,
            byte_size=os.path.getsize(out_path),
            mime_type="video/mp4",
        )

    def _thumbnail(
        self,
        path: str,
        duration: float,
        timestamp: float,
        index: int,
        output_dir: str,
        keys: OutputKeys,
        track: TrackFn,
        name_prefix: str,
    ) -> Optional[ProcessingOutput]:
        frame_path = os.path.join(output_dir, f"{name_prefix}frame_{index}.jpg")
        out_path = os.path.join(output_dir, f"{name_prefix}thumbnail_{index}.jpg")
        track(frame_path, TempFileRole.INTERMEDIATE)
        track(out_path, TempFileRole.OUTPUT)

        # seeking to exactly the last timestamp yields no frame
        seek = timestamp if timestamp < duration else max(duration - 0.1, 0.0)
        cmd = build_frame_extract_cmd(path, seek, frame_path, self.ffmpeg_binary)
        try:
            safe_subprocess_run(cmd, f"ffmpeg thumbnail {index}", logger)
            frame = load_image(frame_path)
            if frame is None:
                raise VideoTransformError(f"No frame extracted at {timestamp:.1f}s")
            width, height = write_jpeg(
                out_path,
                fit_inside(frame, THUMBNAIL_BOX, THUMBNAIL_BOX),
                THUMBNAIL_JPEG_QUALITY,
            )
        except (SubprocessError, VideoTransformError, IOError) as e:
            logger.error("Thumbnail %d at %.1fs failed: %s", index, timestamp, e)
            return None
        finally:
            if os.path.exists(frame_path):
                os.remove(frame_path)

        return ProcessingOutput(
            kind=OutputKind.THUMBNAIL,
            quality=f"thumbnail_{index}",
            width=width,
            height=height,
            destination_key=keys.thumbnail(index),
            local_path=out_path,
            byte_size=os.path.getsize(out_path),
            mime_type="image/jpeg",
        )
