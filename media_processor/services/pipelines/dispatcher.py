"""
Stage dispatcher: decides where an envelope goes after each stage and
finishes the job once it is terminal.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from media_processor.core.exceptions import ProcessingError
from media_processor.core.metrics import MetricsCollector, ProcessingStage
from media_processor.interfaces.queue import IQueueClient
from media_processor.interfaces.stage import IStageHandler
from media_processor.models.job import ProcessingJob, Stage, StageEnvelope
from media_processor.services.publisher import ProgressPublisher
from media_processor.services.queue.topology import PipelineStep, StageRouter
from media_processor.services.temp_files import TempFileTracker

logger = logging.getLogger(__name__)


class StageDispatcher:
    """
    Drives envelopes through the stage handlers.

    ``run`` executes every stage in-process (single-process deployment).
    ``step`` executes one stage and publishes the result to the next stage
    queue (staged deployment). Both end in ``finalize``, which always cleans
    up the job's files before the terminal event goes out.
    """

    def __init__(
        self,
        router: StageRouter,
        handlers: Dict[PipelineStep, IStageHandler],
        tracker: TempFileTracker,
        publisher: ProgressPublisher,
        queue_client: Optional[IQueueClient] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        missing = [step.value for step in PipelineStep if step not in handlers]
        if missing:
            raise ValueError(f"No handler for steps: {', '.join(missing)}")
        self.router = router
        self.handlers = handlers
        self.tracker = tracker
        self.publisher = publisher
        self.queue_client = queue_client
        self.metrics_collector = metrics_collector or MetricsCollector()

    async def run(self, job: ProcessingJob) -> StageEnvelope:
        envelope = StageEnvelope.start(job)
        step = self.router.next_step(envelope.stage)
        while step is not None:
            envelope = await self._run_step(envelope, step)
            step = self.router.next_step(envelope.stage)
        return await self.finalize(envelope)

    async def step(self, envelope: StageEnvelope) -> StageEnvelope:
        step = self.router.next_step(envelope.stage)
        if step is not None:
            envelope = await self._run_step(envelope, step)

        target = self.router.publish_target(envelope.job.media_class, envelope.stage)
        if target is None:
            return await self.finalize(envelope)

        return await self.handoff(envelope)

    async def handoff(self, envelope: StageEnvelope) -> StageEnvelope:
        """Publish a non-terminal envelope to the queue of its next step"""
        if self.queue_client is None:
            raise RuntimeError("Staged dispatch needs a queue client")
        exchange, routing_key = self.router.publish_target(
            envelope.job.media_class, envelope.stage
        )
        try:
            await self.queue_client.publish(exchange, routing_key, envelope.to_wire())
        except Exception as e:
            logger.error("Handoff of job %s to %s failed: %s", envelope.job_id, routing_key, e)
            envelope = envelope.advance(Stage.FAILED, error=f"Stage handoff failed: {e}")
            return await self.finalize(envelope)

        logger.debug("Job %s handed off to %s", envelope.job_id, routing_key)
        return envelope

    async def _run_step(self, envelope: StageEnvelope, step: PipelineStep) -> StageEnvelope:
        try:
            return await self.handlers[step].execute(envelope)
        except ProcessingError as e:
            return envelope.advance(Stage.FAILED, error=e.message)

    async def finalize(self, envelope: StageEnvelope) -> StageEnvelope:
        job = envelope.job
        metric = self.metrics_collector.start_stage(ProcessingStage.CLEANUP, job.job_id)
        files_removed, _ = self.tracker.cleanup_job(job.job_id)
        self.metrics_collector.end_stage(metric, items_processed=files_removed)

        processing_time = (
            datetime.now(timezone.utc) - _aware(job.created_at)
        ).total_seconds() * 1000

        if envelope.stage == Stage.COMPLETED:
            await self.publisher.completed(
                job, envelope.outputs, envelope.metadata, processing_time
            )
            self.metrics_collector.increment_counter(f"jobs_{job.media_class.value.lower()}_completed")
        else:
            if envelope.stage != Stage.FAILED:
                envelope = envelope.advance(
                    Stage.FAILED, error=envelope.error or "Pipeline stopped early"
                )
            await self.publisher.failed(job, envelope.error or "Unknown error", processing_time)
            self.metrics_collector.increment_counter(f"jobs_{job.media_class.value.lower()}_failed")
        return envelope


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
