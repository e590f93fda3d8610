"""
Pipeline coordinator: consumes request queues under admission control and
dispatches each job to the stage handlers.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Set

from pydantic import ValidationError

from media_processor.config.settings import Settings, settings as default_settings
from media_processor.core.exceptions import RequestParseError
from media_processor.core.metrics import MetricsCollector
from media_processor.interfaces.queue import IQueueClient, IQueueMessage
from media_processor.interfaces.storage import IObjectStore
from media_processor.models.job import MediaClass, ProcessingJob, Stage, StageEnvelope
from media_processor.models.messages import parse_request
from media_processor.services.admission import AdmissionController
from media_processor.services.pipelines.archive_pipeline import ArchivePipeline
from media_processor.services.pipelines.dispatcher import StageDispatcher
from media_processor.services.pipelines.stages import (
    DownloadStage,
    TransformStage,
    UploadStage,
)
from media_processor.services.processors.archive_extractor import ArchiveExtractor
from media_processor.services.processors.image_transformer import ImageTransformer
from media_processor.services.processors.video_transformer import VideoTransformer
from media_processor.services.publisher import ProgressPublisher
from media_processor.services.queue.rabbitmq import mask_url
from media_processor.services.queue.topology import (
    PipelineStep,
    QueueTopology,
    StageRouter,
)
from media_processor.services.status_reporter import StatusReporter
from media_processor.services.temp_files import TempFileTracker
from media_processor.services.validation.file_validator import FileValidator

logger = logging.getLogger(__name__)


class PipelineCoordinator:
    """
    Root of the worker.

    Request messages are acknowledged as soon as the job is admitted, before
    any processing starts, so a long transcode is never redelivered by the
    broker. A crash between that ack and the terminal event loses the job.

    Queue and object store clients are injected; everything else is built
    from settings unless given explicitly.
    """

    def __init__(
        self,
        queue_client: IQueueClient,
        object_store: IObjectStore,
        config: Optional[Settings] = None,
        topology: Optional[QueueTopology] = None,
        tracker: Optional[TempFileTracker] = None,
        ceilings: Optional[Dict[MediaClass, int]] = None,
        image_transformer: Optional[ImageTransformer] = None,
        video_transformer: Optional[VideoTransformer] = None,
        status_reporter: Optional[StatusReporter] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self.config = config or default_settings
        self.queue_client = queue_client
        self.object_store = object_store
        self.topology = topology or QueueTopology.from_settings(self.config)
        self.router = StageRouter(self.topology)
        self.tracker = tracker or TempFileTracker(self.config.temp_dir)
        self.metrics_collector = metrics_collector or MetricsCollector()
        self.staged = self.config.deployment_mode == "staged"

        self.admission = AdmissionController(
            queue_client,
            ceilings
            or {
                MediaClass.IMAGE: self.config.max_concurrent_image_jobs,
                MediaClass.VIDEO: self.config.max_concurrent_video_jobs,
                MediaClass.ARCHIVE: self.config.max_concurrent_archive_jobs,
            },
        )

        self.status_reporter = status_reporter or StatusReporter(
            self.config.api_base_url, self.config.webhook_secret, self.config.webhook_timeout
        )
        self.publisher = ProgressPublisher(queue_client, self.topology, self.status_reporter)

        validator = FileValidator.from_settings(self.config)
        image_transformer = image_transformer or ImageTransformer()
        video_transformer = video_transformer or VideoTransformer(
            self.config.ffmpeg_binary_path, self.config.ffprobe_binary_path
        )
        archive_pipeline = ArchivePipeline(
            ArchiveExtractor(self.config.max_archive_size, self.config.max_file_size),
            validator,
            image_transformer,
            video_transformer,
            self.publisher,
        )

        handlers = {
            PipelineStep.DOWNLOAD: DownloadStage(
                object_store,
                self.tracker,
                self.publisher,
                validator,
                image_transformer,
                video_transformer,
                self.metrics_collector,
            ),
            PipelineStep.PROCESSING: TransformStage(
                self.tracker,
                self.publisher,
                image_transformer,
                video_transformer,
                archive_pipeline,
                self.metrics_collector,
            ),
            PipelineStep.UPLOAD: UploadStage(
                object_store, self.tracker, self.publisher, self.metrics_collector
            ),
        }
        self.dispatcher = StageDispatcher(
            self.router,
            handlers,
            self.tracker,
            self.publisher,
            queue_client,
            self.metrics_collector,
        )

        self._tasks: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None
        self._running = False

    @property
    def uptime(self) -> float:
        return time.time() - self._started_at if self._started_at else 0.0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        if self._running:
            return
        self.tracker.ensure_root()
        await self.queue_client.connect()

        for media_class in MediaClass:
            await self.admission.attach(
                media_class, self.topology.request_queue(media_class), self._on_request
            )

        if self.staged:
            for media_class in MediaClass:
                for step in PipelineStep:
                    await self.queue_client.subscribe(
                        self.router.consume_queue(media_class, step), self._on_stage_message
                    )

        if self.config.temp_sweep_interval_seconds > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

        self._started_at = time.time()
        self._running = True
        logger.info(
            "Media processor started (%s mode, ceilings %s)",
            self.config.deployment_mode,
            {c.value: self.admission.state(c).max_concurrent for c in MediaClass},
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.admission.detach_all()
        if self.staged:
            for media_class in MediaClass:
                for step in PipelineStep:
                    await self.queue_client.unsubscribe(self.router.consume_queue(media_class, step))

        if self._tasks:
            logger.info("Waiting for %d in-flight jobs", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await self.queue_client.close()
        await self.status_reporter.close()
        logger.info("Media processor stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _on_request(self, message: IQueueMessage) -> None:
        try:
            job = parse_request(message.body)
        except RequestParseError as e:
            # nothing to process or report against; drop it
            logger.error("Discarding malformed request (media %s): %s", e.media_id, e.message)
            await message.ack()
            return

        if self.admission.is_active(job.job_id, job.media_class):
            logger.warning(
                "Dropping duplicate request for active job %s (media %s)",
                job.job_id,
                job.media_id,
            )
            await message.ack()
            return

        if not await self.admission.on_job_start(job.job_id, job.media_class):
            await message.requeue()
            return

        await message.ack()
        logger.info(
            "Accepted %s job %s for media %s (%s)",
            job.media_class.value,
            job.job_id,
            job.media_id,
            job.source_key,
        )
        self._spawn(self._run_job(job))

    async def _run_job(self, job: ProcessingJob) -> None:
        envelope = StageEnvelope.start(job)
        try:
            if self.staged:
                envelope = await self.dispatcher.handoff(envelope)
            else:
                envelope = await self.dispatcher.run(job)
        except Exception as e:
            logger.exception("Unhandled error in job %s", job.job_id)
            envelope = await self._abort(envelope, e)
        finally:
            if envelope.stage.is_terminal:
                await self.admission.on_job_finish(job.job_id, job.media_class)

    async def _on_stage_message(self, message: IQueueMessage) -> None:
        await message.ack()
        try:
            envelope = StageEnvelope.model_validate_json(message.body)
        except ValidationError as e:
            logger.error("Discarding malformed stage message: %s", e)
            return
        self._spawn(self._run_stage(envelope))

    async def _run_stage(self, envelope: StageEnvelope) -> None:
        try:
            envelope = await self.dispatcher.step(envelope)
        except Exception as e:
            logger.exception("Unhandled error in job %s", envelope.job_id)
            envelope = await self._abort(envelope, e)
        finally:
            if envelope.stage.is_terminal:
                await self.admission.on_job_finish(envelope.job_id, envelope.job.media_class)

    async def _abort(self, envelope: StageEnvelope, error: Exception) -> StageEnvelope:
        failed = envelope.advance(Stage.FAILED, error=str(error) or type(error).__name__)
        return await self.dispatcher.finalize(failed)

    async def _sweep_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.config.temp_sweep_interval_seconds)
            try:
                await loop.run_in_executor(
                    None, self.tracker.sweep_older_than, self.config.temp_retention_seconds
                )
            except OSError as e:
                logger.warning("Temp sweep failed: %s", e)

    def health(self) -> Dict[str, Any]:
        connected = self.queue_client.is_connected
        snapshot = self.admission.snapshot()
        return {
            "status": "healthy" if connected else "degraded",
            "service": self.config.service_name,
            "uptime": self.uptime,
            "queueConnected": connected,
            "activeJobs": {c: s["active"] for c, s in snapshot.items()},
            "subscribed": {c: s["subscribed"] for c, s in snapshot.items()},
            "metrics": {
                "inFlight": self.in_flight,
                "counters": self.metrics_collector.counters,
                "tempFiles": self.tracker.summary(),
            },
        }

    def info(self) -> Dict[str, Any]:
        topology = self.topology.describe(include_stages=self.staged)
        return {
            "service": self.config.service_name,
            "version": self.config.service_version,
            "port": self.config.port,
            "deploymentMode": self.config.deployment_mode,
            "rabbitmq": {
                "url": mask_url(self.config.rabbitmq_url),
                "namespace": self.topology.namespace,
            },
            "ceilings": {c.value: self.admission.state(c).max_concurrent for c in MediaClass},
            "storage": {
                "region": self.config.idrive_region,
                "bucket": self.config.idrive_bucket_name,
            },
            "tempDir": str(self.tracker.root),
            "queues": topology,
        }
