"""
Progress and result events on the updates exchange
"""

import logging
from typing import Any, Dict, List, Optional

from media_processor.interfaces.queue import IQueueClient
from media_processor.models.job import ProcessingJob, ProcessingOutput
from media_processor.models.messages import ProcessingResult, ProgressUpdate
from media_processor.services.queue.topology import QueueTopology
from media_processor.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)


class ProgressPublisher:
    """Emits ProgressUpdate / ProcessingResult events for a job.

    Publishing is best effort: a job that finished its work is not failed
    because the broker refused an event.
    """

    def __init__(
        self,
        queue_client: IQueueClient,
        topology: QueueTopology,
        status_reporter: Optional[StatusReporter] = None,
    ):
        self.queue_client = queue_client
        self.topology = topology
        self.status_reporter = status_reporter

    async def _publish(self, payload: Dict[str, Any]) -> bool:
        try:
            await self.queue_client.publish(
                self.topology.updates_exchange,
                QueueTopology.UPDATES_ROUTING_KEY,
                payload,
            )
            return True
        except Exception as e:
            logger.error(
                "Failed to publish %s for job %s: %s",
                payload.get("type"),
                payload.get("jobId"),
                e,
            )
            return False

    async def progress(self, job: ProcessingJob, progress: int, step: str) -> None:
        update = ProgressUpdate(
            job_id=job.job_id,
            media_id=job.media_id,
            media_class=job.media_class,
            progress=max(0, min(100, int(progress))),
            step=step,
        )
        logger.debug("Job %s progress %d%% (%s)", job.job_id, update.progress, step)
        await self._publish(update.to_wire())

    async def completed(
        self,
        job: ProcessingJob,
        outputs: List[ProcessingOutput],
        metadata: Optional[Dict[str, Any]] = None,
        processing_time: Optional[float] = None,
    ) -> ProcessingResult:
        result = ProcessingResult(
            job_id=job.job_id,
            media_id=job.media_id,
            media_class=job.media_class,
            status="COMPLETED",
            outputs=[o.to_public() for o in outputs],
            metadata=metadata,
            processing_time=processing_time,
        )
        await self._emit_result(result)
        return result

    async def failed(
        self, job: ProcessingJob, error: str, processing_time: Optional[float] = None
    ) -> ProcessingResult:
        result = ProcessingResult(
            job_id=job.job_id,
            media_id=job.media_id,
            media_class=job.media_class,
            status="FAILED",
            error=error,
            processing_time=processing_time,
        )
        await self._emit_result(result)
        return result

    async def _emit_result(self, result: ProcessingResult) -> None:
        payload = result.to_wire(exclude_none=True)
        published = await self._publish(payload)
        logger.info(
            "Job %s %s (media %s, published=%s)",
            result.job_id,
            result.status,
            result.media_id,
            published,
        )
        if self.status_reporter is not None and self.status_reporter.enabled:
            await self.status_reporter.report(result.media_id, payload)
