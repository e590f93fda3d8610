"""
Queue message schemas and the single adapter for inbound request payloads.

Producers of request messages are not consistent about key naming
(``s3Key`` vs ``s3_key``, ``mediaType`` vs ``mediaClass``). Every variant is
translated here, once, into the canonical ``ProcessingJob`` field names; no
other module looks at raw request dictionaries.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import Field, ValidationError

from media_processor.core.exceptions import RequestParseError
from media_processor.models.job import MediaClass, ProcessingJob, WireModel

# canonical field -> accepted inbound spellings, first match wins
_REQUEST_ALIASES: Dict[str, tuple] = {
    "job_id": ("jobId", "job_id", "id"),
    "media_id": ("mediaId", "media_id"),
    "user_id": ("userId", "user_id"),
    "media_class": ("mediaClass", "media_class", "mediaType", "media_type"),
    "source_key": ("sourceKey", "source_key", "s3Key", "s3_key"),
    "original_filename": ("originalFilename", "original_filename", "filename"),
    "declared_mime_type": (
        "mimeType",
        "mime_type",
        "declaredMimeType",
        "declared_mime_type",
    ),
    "file_size": ("fileSize", "file_size"),
    "options": ("options",),
    "created_at": ("createdAt", "created_at"),
}

_MEDIA_CLASS_ALIASES = {
    "IMAGE": MediaClass.IMAGE,
    "VIDEO": MediaClass.VIDEO,
    "ARCHIVE": MediaClass.ARCHIVE,
    "ZIP": MediaClass.ARCHIVE,
}


def canonicalize_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Map any known spelling of request keys onto canonical field names"""
    canonical: Dict[str, Any] = {}
    for field_name, spellings in _REQUEST_ALIASES.items():
        for spelling in spellings:
            if payload.get(spelling) is not None:
                canonical[field_name] = payload[spelling]
                break

    media_class = canonical.get("media_class")
    if isinstance(media_class, str):
        canonical["media_class"] = _MEDIA_CLASS_ALIASES.get(
            media_class.strip().upper(), media_class
        )
    if canonical.get("options") is None:
        canonical["options"] = {}
    return canonical


def parse_request(body: Union[bytes, str, Dict[str, Any]]) -> ProcessingJob:
    """Build a ProcessingJob from a raw request message.

    Raises:
        RequestParseError: body is not JSON or misses required fields
    """
    if isinstance(body, (bytes, str)):
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise RequestParseError(f"Request is not valid JSON: {e}") from e
    else:
        payload = body

    if not isinstance(payload, dict):
        raise RequestParseError("Request must be a JSON object")

    canonical = canonicalize_request(payload)
    try:
        return ProcessingJob.model_validate(canonical)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise RequestParseError(
            f"Invalid processing request ({fields})",
            media_id=canonical.get("media_id"),
        ) from e


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressUpdate(WireModel):
    type: Literal["progress"] = "progress"
    job_id: str
    media_id: str
    media_class: MediaClass
    status: Literal["PROCESSING"] = "PROCESSING"
    progress: int = Field(ge=0, le=100)
    step: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ProcessingResult(WireModel):
    type: Literal["result"] = "result"
    job_id: str
    media_id: str
    media_class: MediaClass
    status: Literal["COMPLETED", "FAILED"]
    outputs: Optional[List[Dict[str, Any]]] = None
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    processing_time: Optional[float] = None
    timestamp: datetime = Field(default_factory=_utcnow)
