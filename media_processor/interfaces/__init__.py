"""
Interfaces for the media processing worker.
"""

from .queue import IQueueClient, IQueueMessage, MessageHandler
from .stage import IStageHandler, StageHandlerStatus
from .storage import IObjectStore

__all__ = [
    "IObjectStore",
    "IQueueClient",
    "IQueueMessage",
    "IStageHandler",
    "MessageHandler",
    "StageHandlerStatus",
]
