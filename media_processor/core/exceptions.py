"""
Custom exception handlers and error types
"""

from fastapi import Request
from fastapi.responses import JSONResponse
import logging
import traceback
from typing import Optional

logger = logging.getLogger(__name__)


class MediaProcessingError(Exception):
    """Base exception for media processing errors"""

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class ProcessingError(MediaProcessingError):
    """Raised by a pipeline stage when its work fails"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        self.stage = stage
        super().__init__(message, error_code)


class ConfigurationError(MediaProcessingError):
    """Required configuration is missing at startup"""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")


class RequestParseError(MediaProcessingError):
    """A queue message could not be turned into a processing job"""

    def __init__(self, message: str, media_id: Optional[str] = None):
        self.media_id = media_id
        super().__init__(message, "INVALID_REQUEST")


class FileValidationError(MediaProcessingError):
    """Oversized file, disallowed type or unreadable content"""

    def __init__(self, message: str, file_name: Optional[str] = None):
        self.file_name = file_name
        super().__init__(message, "VALIDATION_ERROR")


class ArchiveValidationError(FileValidationError):
    """Archive too large or not a readable archive"""


class NoValidEntriesError(ArchiveValidationError):
    """Archive produced zero usable entries"""

    def __init__(self, message: str = "No valid files found in zip file"):
        super().__init__(message)


class StorageError(MediaProcessingError):
    """Object store transfer failure"""

    def __init__(
        self, message: str, key: Optional[str] = None, error_code: str = "STORAGE_ERROR"
    ):
        self.key = key
        super().__init__(message, error_code)


class DownloadError(StorageError):
    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, key, "DOWNLOAD_ERROR")


class UploadError(StorageError):
    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, key, "UPLOAD_ERROR")


class ImageTransformError(MediaProcessingError):
    def __init__(self, message: str):
        super().__init__(message, "IMAGE_TRANSFORM_ERROR")


class VideoTransformError(MediaProcessingError):
    def __init__(self, message: str):
        super().__init__(message, "VIDEO_TRANSFORM_ERROR")


class VideoProbeError(VideoTransformError):
    """Container probe failed or the file has no video stream"""


class NoOutputsError(MediaProcessingError):
    def __init__(self, message: str = "No outputs generated"):
        super().__init__(message, "NO_OUTPUTS")


async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors"""
    logger.error("Unexpected error: %s: %s", type(exc).__name__, exc)
    logger.error("Traceback: %s", traceback.format_exc())

    return JSONResponse(
        status_code=500,
        content={
            "detail": {
                "error": "Internal server error",
                "details": "An unexpected error occurred",
            }
        },
    )
