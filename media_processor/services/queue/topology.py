"""
Queue/exchange naming and stage routing
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from media_processor.models.job import MediaClass, Stage


class PipelineStep(str, Enum):
    """Work a stage queue carries"""

    DOWNLOAD = "download"
    PROCESSING = "processing"
    UPLOAD = "upload"


@dataclass(frozen=True)
class QueueBinding:
    queue: str
    exchange: str
    routing_key: str


class QueueTopology:
    """Namespaced exchange and queue names.

    Everything is prefixed with the system namespace so several deployments
    can share one broker.
    """

    UPDATES_ROUTING_KEY = "updates"

    def __init__(
        self,
        namespace: str = "reedi",
        requests_exchange: str = "media.requests",
        processing_exchange: str = "media.processing",
        updates_exchange: str = "media.updates",
    ):
        self.namespace = namespace
        self.requests_exchange = self._ns(requests_exchange)
        self.processing_exchange = self._ns(processing_exchange)
        self.updates_exchange = self._ns(updates_exchange)

    @classmethod
    def from_settings(cls, settings) -> "QueueTopology":
        return cls(
            namespace=settings.system_name,
            requests_exchange=settings.exchange_requests,
            processing_exchange=settings.exchange_processing,
            updates_exchange=settings.exchange_updates,
        )

    def _ns(self, name: str) -> str:
        return f"{self.namespace}.{name}"

    @property
    def exchanges(self) -> List[str]:
        return [self.requests_exchange, self.processing_exchange, self.updates_exchange]

    def request_queue(self, media_class: MediaClass) -> str:
        return self._ns(f"media.{media_class.plural}.requests")

    def request_routing_key(self, media_class: MediaClass) -> str:
        return media_class.plural

    @property
    def updates_queue(self) -> str:
        return self._ns("media.processing.updates")

    def stage_queue(self, media_class: MediaClass, step: PipelineStep) -> str:
        return self._ns(f"media.{media_class.plural}.{step.value}")

    def stage_routing_key(self, media_class: MediaClass, step: PipelineStep) -> str:
        return f"{media_class.plural}.{step.value}"

    def bindings(self, include_stages: bool = False) -> List[QueueBinding]:
        result = [
            QueueBinding(
                self.request_queue(c), self.requests_exchange, self.request_routing_key(c)
            )
            for c in MediaClass
        ]
        result.append(
            QueueBinding(self.updates_queue, self.updates_exchange, self.UPDATES_ROUTING_KEY)
        )
        if include_stages:
            result.extend(
                QueueBinding(
                    self.stage_queue(c, step),
                    self.processing_exchange,
                    self.stage_routing_key(c, step),
                )
                for c in MediaClass
                for step in PipelineStep
            )
        return result

    def describe(self, include_stages: bool = False) -> Dict[str, List[str]]:
        return {
            "exchanges": self.exchanges,
            "queues": [b.queue for b in self.bindings(include_stages)],
        }


class StageRouter:
    """Maps an envelope's current stage to the step that must run next"""

    _NEXT_STEP: Dict[Stage, PipelineStep] = {
        Stage.PENDING: PipelineStep.DOWNLOAD,
        Stage.DOWNLOADED: PipelineStep.PROCESSING,
        Stage.PROCESSED: PipelineStep.UPLOAD,
    }

    def __init__(self, topology: QueueTopology):
        self.topology = topology

    def next_step(self, stage: Stage) -> Optional[PipelineStep]:
        """None once the envelope is terminal"""
        if stage.is_terminal:
            return None
        step = self._NEXT_STEP.get(stage)
        if step is None:
            raise ValueError(f"No step follows stage {stage.value}")
        return step

    def publish_target(
        self, media_class: MediaClass, stage: Stage
    ) -> Optional[Tuple[str, str]]:
        """(exchange, routing_key) for the envelope's next step"""
        step = self.next_step(stage)
        if step is None:
            return None
        return (
            self.topology.processing_exchange,
            self.topology.stage_routing_key(media_class, step),
        )

    def consume_queue(self, media_class: MediaClass, step: PipelineStep) -> str:
        return self.topology.stage_queue(media_class, step)
