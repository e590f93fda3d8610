"""
Interface for pipeline stage handlers
"""

from abc import ABC, abstractmethod
from enum import Enum

from media_processor.models.job import StageEnvelope


class StageHandlerStatus(Enum):
    """Status of the last stage execution"""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class IStageHandler(ABC):
    """
    Contract for one stage of the pipeline.

    A handler receives the envelope it now owns and returns the envelope for
    the next stage, or raises ``ProcessingError``. It never decides where the
    envelope goes next; that is the dispatcher's job.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of the stage"""

    @property
    @abstractmethod
    def status(self) -> StageHandlerStatus:
        """Status of the most recent execution"""

    @abstractmethod
    async def execute(self, envelope: StageEnvelope) -> StageEnvelope:
        """
        Run the stage.

        Args:
            envelope: Envelope handed over by the previous stage

        Returns:
            StageEnvelope: Envelope for the next stage

        Raises:
            ProcessingError: If the stage fails
        """
