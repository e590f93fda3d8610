"""
Core job, envelope and output models shared by every pipeline stage
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MediaClass(str, Enum):
    """Media class decides the transformer and concurrency ceiling"""

    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    ARCHIVE = "ARCHIVE"

    @property
    def plural(self) -> str:
        return f"{self.value.lower()}s"


class Stage(str, Enum):
    """Lifecycle position of a job envelope"""

    PENDING = "PENDING"
    DOWNLOADED = "DOWNLOADED"
    PROCESSED = "PROCESSED"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.FAILED)


class OutputKind(str, Enum):
    THUMBNAIL = "THUMBNAIL"
    RESOLUTION_VARIANT = "RESOLUTION_VARIANT"


class TempFileRole(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    INTERMEDIATE = "intermediate"


class WireModel(BaseModel):
    """Base for models that cross the queue boundary (camelCase on the wire)"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_wire(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", **kwargs)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingJob(WireModel):
    """A unit of work; immutable once created"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    media_id: str
    user_id: str
    media_class: MediaClass
    source_key: str
    original_filename: str = ""
    declared_mime_type: str = ""
    file_size: Optional[int] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class ProcessingOutput(WireModel):
    """One derived artifact"""

    kind: OutputKind
    quality: str
    width: int
    height: int
    destination_key: str
    local_path: Optional[str] = None
    byte_size: int = 0
    mime_type: str = "image/jpeg"
    source_path: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        """Wire form without the process-local path"""
        return self.to_wire(exclude={"local_path"}, exclude_none=True)


class ImageMetadata(WireModel):
    width: int
    height: int
    file_size: int
    mime_type: str
    format: str
    color_space: Optional[str] = None
    has_alpha: bool = False


class VideoMetadata(WireModel):
    duration: float
    codec: str
    bitrate: int
    framerate: float
    width: int
    height: int
    file_size: int = 0
    mime_type: str = "video/mp4"

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


class StageEnvelope(WireModel):
    """The message handed from one stage to the next"""

    job: ProcessingJob
    stage: Stage = Stage.PENDING
    previous_stage: Optional[Stage] = None
    local_path: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    outputs: List[ProcessingOutput] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def start(cls, job: ProcessingJob) -> "StageEnvelope":
        return cls(job=job)

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def media_id(self) -> str:
        return self.job.media_id

    def advance(self, stage: Stage, **changes: Any) -> "StageEnvelope":
        """Return a copy moved to ``stage``; the receiver owns it from now on"""
        changes.update(stage=stage, previous_stage=self.stage)
        return self.model_copy(update=changes)


@dataclass
class TempFileRecord:
    path: str
    job_id: str
    stage: str
    role: TempFileRole
    created_at: float = field(default_factory=time.time)
    byte_size: int = 0


@dataclass
class AdmissionState:
    """Per-class admission bookkeeping.

    Invariant: ``subscribed == (len(active_job_ids) < max_concurrent)``.
    """

    media_class: MediaClass
    max_concurrent: int
    active_job_ids: Set[str] = field(default_factory=set)
    subscribed: bool = False

    @property
    def active_count(self) -> int:
        return len(self.active_job_ids)

    @property
    def has_capacity(self) -> bool:
        return self.active_count < self.max_concurrent
