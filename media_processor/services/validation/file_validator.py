"""
File validation by sniffed content type, not by extension
"""

import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional

import filetype

from media_processor.models.job import MediaClass

logger = logging.getLogger(__name__)


@dataclass
class MediaFileInfo:
    """Outcome of validating one local file"""

    filepath: str
    filename: str
    original_path: str
    media_class: Optional[MediaClass]
    mime_type: Optional[str]
    extension: Optional[str]
    file_size: int
    is_valid: bool
    error: Optional[str] = None


class FileValidator:
    """Classifies files as IMAGE or VIDEO against configured allow-lists"""

    def __init__(
        self,
        allowed_image_types: Iterable[str],
        allowed_video_types: Iterable[str],
        max_file_size: int,
    ):
        self.allowed_image_types = {t.lower() for t in allowed_image_types}
        self.allowed_video_types = {t.lower() for t in allowed_video_types}
        self.max_file_size = max_file_size

    @classmethod
    def from_settings(cls, settings) -> "FileValidator":
        return cls(
            settings.allowed_image_types,
            settings.allowed_video_types,
            settings.max_file_size,
        )

    def classify_mime(self, mime_type: Optional[str]) -> Optional[MediaClass]:
        if not mime_type:
            return None
        mime_type = mime_type.lower()
        if mime_type in self.allowed_image_types:
            return MediaClass.IMAGE
        if mime_type in self.allowed_video_types:
            return MediaClass.VIDEO
        return None

    def validate(self, path: str, original_path: Optional[str] = None) -> MediaFileInfo:
        original_path = original_path or os.path.basename(path)
        info = MediaFileInfo(
            filepath=path,
            filename=os.path.basename(original_path),
            original_path=original_path,
            media_class=None,
            mime_type=None,
            extension=None,
            file_size=0,
            is_valid=False,
        )

        try:
            info.file_size = os.path.getsize(path)
        except OSError as e:
            info.error = f"File not readable: {e}"
            return info

        if info.file_size == 0:
            info.error = "File is empty"
            return info
        if info.file_size > self.max_file_size:
            info.error = (
                f"File too large: {info.file_size} bytes "
                f"(max {self.max_file_size} bytes)"
            )
            return info

        kind = filetype.guess(path)
        if kind is None:
            info.error = "Unable to determine file type"
            return info

        info.mime_type = kind.mime
        info.extension = kind.extension
        info.media_class = self.classify_mime(kind.mime)
        if info.media_class is None:
            info.error = f"Unsupported file type: {kind.mime}"
            return info

        info.is_valid = True
        return info
