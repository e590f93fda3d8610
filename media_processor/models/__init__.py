"""
Data models shared across the worker
"""

from .job import (
    AdmissionState,
    ImageMetadata,
    MediaClass,
    OutputKind,
    ProcessingJob,
    ProcessingOutput,
    Stage,
    StageEnvelope,
    TempFileRecord,
    TempFileRole,
    VideoMetadata,
)
from .messages import ProcessingResult, ProgressUpdate, parse_request

__all__ = [
    "AdmissionState",
    "ImageMetadata",
    "MediaClass",
    "OutputKind",
    "ProcessingJob",
    "ProcessingOutput",
    "ProcessingResult",
    "ProgressUpdate",
    "Stage",
    "StageEnvelope",
    "TempFileRecord",
    "TempFileRole",
    "VideoMetadata",
    "parse_request",
]
