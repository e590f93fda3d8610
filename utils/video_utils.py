"""
ffprobe / ffmpeg helpers for the video transformer
"""

import json
import logging
from typing import Any, Dict, List, Optional

from utils.subprocess_utils import safe_subprocess_run

logger = logging.getLogger(__name__)


def format_timestamp(seconds: float) -> str:
    """Seconds -> HH:MM:SS.mmm as accepted by ffmpeg -ss"""
    seconds = max(0.0, seconds)
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds - hours * 3600 - minutes * 60
    return f"{hours:02d}:{minutes:02d}:{secs:06.3f}"


def parse_frame_rate(value: Optional[str]) -> float:
    """Parse ffprobe's "num/den" frame rate"""
    if not value:
        return 0.0
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            den_f = float(den)
            return round(float(num) / den_f, 3) if den_f else 0.0
        return float(value)
    except ValueError:
        return 0.0


def probe_media(path: str, ffprobe_binary: str = "ffprobe") -> Dict[str, Any]:
    """Run ffprobe and return its JSON output"""
    cmd = [
        ffprobe_binary,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        path,
    ]
    result = safe_subprocess_run(cmd, "ffprobe")
    return json.loads(result.stdout or "{}")


def find_video_stream(probe: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for stream in probe.get("streams", []):
        if stream.get("codec_type") == "video":
            return stream
    return None


def build_frame_extract_cmd(
    input_path: str, timestamp: float, output_path: str, ffmpeg_binary: str = "ffmpeg"
) -> List[str]:
    """Extract one high-quality frame at ``timestamp``"""
    return [
        ffmpeg_binary,
        "-y",
        "-ss",
        format_timestamp(timestamp),
        "-i",
        input_path,
        "-frames:v",
        "1",
        "-q:v",
        "2",
        output_path,
    ]


def build_normalize_cmd(
    input_path: str, output_path: str, ffmpeg_binary: str = "ffmpeg"
) -> List[str]:
    """Re-encode into the canonical mp4 container (H.264 + AAC)"""
    return [
        ffmpeg_binary,
        "-y",
        "-i",
        input_path,
        "-c:v",
        "libx264",
        "-preset",
        "medium",
        "-crf",
        "23",
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        "-movflags",
        "+faststart",
        output_path,
    ]


def letterbox_filter(width: int, height: int) -> str:
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:black"
    )


def build_variant_cmd(
    input_path: str,
    output_path: str,
    width: int,
    height: int,
    bitrate: str,
    ffmpeg_binary: str = "ffmpeg",
) -> List[str]:
    """Scale + pad into exactly width x height, CRF capped at ``bitrate``"""
    bufsize = f"{int(bitrate.rstrip('k')) * 2}k"
    return [
        ffmpeg_binary,
        "-y",
        "-i",
        input_path,
        "-vf",
        letterbox_filter(width, height),
        "-c:v",
        "libx264",
        "-preset",
        "medium",
        "-crf",
        "23",
        "-maxrate",
        bitrate,
        "-bufsize",
        bufsize,
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        "-movflags",
        "+faststart",
        "-fflags",
        "+genpts",
        "-avoid_negative_ts",
        "make_zero",
        output_path,
    ]
