"""Shared types for the media transformers"""

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol

from media_processor.models.job import ProcessingOutput, TempFileRole

# Called with (path, role) before a transformer writes a file
TrackFn = Callable[[str, TempFileRole], None]


def no_tracking(path: str, role: TempFileRole) -> None:
    return None


# Called with a path whose file is no longer needed
RemoveFn = Callable[[str], None]


def remove_local(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)


class OutputKeys(Protocol):
    def thumbnail(self, index: int = 0) -> str: ...

    def variant(self, quality: str, extension: str = ...) -> str: ...


@dataclass
class TransformResult:
    metadata: Dict[str, Any]
    outputs: List[ProcessingOutput] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
