"""
Download, transform and upload stage handlers.

Each handler owns the envelope it is given, does its one stage of work, and
returns the envelope for the next stage or raises ProcessingError. None of
them decide what runs next.
"""

import asyncio
import functools
import logging
import os
from abc import abstractmethod
from typing import Any, Dict, List, Optional

from media_processor.core.exceptions import (
    FileValidationError,
    MediaProcessingError,
    NoOutputsError,
    ProcessingError,
    UploadError,
)
from media_processor.core.metrics import MetricsCollector, ProcessingStage
from media_processor.interfaces.stage import IStageHandler, StageHandlerStatus
from media_processor.interfaces.storage import IObjectStore
from media_processor.models.job import (
    MediaClass,
    ProcessingOutput,
    Stage,
    StageEnvelope,
    TempFileRole,
    VideoMetadata,
)
from media_processor.services.pipelines.archive_pipeline import ArchivePipeline
from media_processor.services.processors.image_transformer import ImageTransformer
from media_processor.services.processors.keys import ImageOutputKeys, VideoOutputKeys
from media_processor.services.processors.video_transformer import VideoTransformer
from media_processor.services.publisher import ProgressPublisher
from media_processor.services.temp_files import TempFileTracker
from media_processor.services.validation.file_validator import FileValidator


class BaseStageHandler(IStageHandler):
    """
    Common status, metrics and error wrapping for stage handlers.

    Subclasses implement _execute_impl().
    """

    metrics_stage: ProcessingStage

    def __init__(
        self,
        name: str,
        tracker: TempFileTracker,
        publisher: ProgressPublisher,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self._name = name
        self._status = StageHandlerStatus.PENDING
        self.tracker = tracker
        self.publisher = publisher
        self.metrics_collector = metrics_collector or MetricsCollector()
        self.logger = logging.getLogger(f"Pipeline.{name}")

    @property
    def name(self) -> str:
        return self._name

    @property
    def status(self) -> StageHandlerStatus:
        return self._status

    @status.setter
    def status(self, value: StageHandlerStatus) -> None:
        self._status = value
        self.logger.debug("Stage status changed to %s", value)

    async def execute(self, envelope: StageEnvelope) -> StageEnvelope:
        """
        Run the stage with status and metrics bookkeeping.

        Raises:
            ProcessingError: wrapping whatever went wrong in this stage
        """
        self.status = StageHandlerStatus.RUNNING
        metric = self.metrics_collector.start_stage(self.metrics_stage, envelope.job_id)
        self.logger.info(
            "Starting %s for job %s (media %s)",
            self.name,
            envelope.job_id,
            envelope.media_id,
        )
        try:
            result = await self._execute_impl(envelope)
        except Exception as e:
            self.status = StageHandlerStatus.FAILED
            message = e.message if isinstance(e, MediaProcessingError) else str(e)
            self.metrics_collector.end_stage(metric, success=False, error_message=message)
            self.logger.error(
                "Stage '%s' failed for job %s: %s",
                self.name,
                envelope.job_id,
                message,
                exc_info=not isinstance(e, MediaProcessingError),
            )
            raise ProcessingError(
                message or type(e).__name__,
                error_code=getattr(e, "error_code", None),
                stage=self.name,
            ) from e

        self.status = StageHandlerStatus.COMPLETED
        self.metrics_collector.end_stage(metric, items_processed=len(result.outputs))
        return result

    @abstractmethod
    async def _execute_impl(self, envelope: StageEnvelope) -> StageEnvelope:
        """Stage-specific work"""

    @staticmethod
    async def run_blocking(func, *args, **kwargs):
        """Run CPU or subprocess heavy work off the event loop"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


class DownloadStage(BaseStageHandler):
    """Fetches the source object and extracts minimal metadata"""

    metrics_stage = ProcessingStage.DOWNLOAD

    def __init__(
        self,
        store: IObjectStore,
        tracker: TempFileTracker,
        publisher: ProgressPublisher,
        validator: FileValidator,
        image_transformer: ImageTransformer,
        video_transformer: VideoTransformer,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        super().__init__("download", tracker, publisher, metrics_collector)
        self.store = store
        self.validator = validator
        self.image_transformer = image_transformer
        self.video_transformer = video_transformer

    async def _execute_impl(self, envelope: StageEnvelope) -> StageEnvelope:
        job = envelope.job
        await self.publisher.progress(job, 0, "download_started")

        extension = os.path.splitext(job.original_filename or job.source_key)[1].lower()
        local_path = str(self.tracker.job_dir(job.job_id) / f"{job.job_id}_source{extension}")
        self.tracker.track(job.job_id, local_path, self.name, TempFileRole.INPUT)

        try:
            await self.store.get(job.source_key, local_path)
            metadata = await self._extract_metadata(envelope, local_path)
        except Exception:
            # partial or unusable input goes now, not at job end
            self.tracker.remove_file(job.job_id, local_path)
            raise

        await self.publisher.progress(job, 20, "downloaded")
        return envelope.advance(Stage.DOWNLOADED, local_path=local_path, metadata=metadata)

    async def _extract_metadata(self, envelope: StageEnvelope, path: str) -> Dict[str, Any]:
        media_class = envelope.job.media_class
        if media_class == MediaClass.ARCHIVE:
            return {"fileSize": os.path.getsize(path), "mimeType": "application/zip"}

        info = self.validator.validate(path, envelope.job.original_filename)
        if not info.is_valid:
            raise FileValidationError(info.error or "Invalid file", info.filename)
        if info.media_class != media_class:
            raise FileValidationError(
                f"File content is {info.mime_type}, expected {media_class.value.lower()}",
                info.filename,
            )

        if media_class == MediaClass.IMAGE:
            metadata = await self.run_blocking(self.image_transformer.probe, path)
        else:
            metadata = await self.run_blocking(self.video_transformer.probe, path)
            metadata = metadata.model_copy(update={"mime_type": info.mime_type})
        return metadata.to_wire()


class TransformStage(BaseStageHandler):
    """Dispatches to the image, video or archive transformer"""

    metrics_stage = ProcessingStage.TRANSFORM

    def __init__(
        self,
        tracker: TempFileTracker,
        publisher: ProgressPublisher,
        image_transformer: ImageTransformer,
        video_transformer: VideoTransformer,
        archive_pipeline: ArchivePipeline,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        super().__init__("processing", tracker, publisher, metrics_collector)
        self.image_transformer = image_transformer
        self.video_transformer = video_transformer
        self.archive_pipeline = archive_pipeline

    async def _execute_impl(self, envelope: StageEnvelope) -> StageEnvelope:
        job = envelope.job
        if not envelope.local_path:
            raise ProcessingError("Envelope has no local input", stage=self.name)

        await self.publisher.progress(job, 30, "processing")
        output_dir = str(self.tracker.job_dir(job.job_id) / "outputs")

        def track(path: str, role: TempFileRole) -> None:
            self.tracker.track(job.job_id, path, self.name, role)

        if job.media_class == MediaClass.IMAGE:
            result = await self.run_blocking(
                self.image_transformer.transform,
                envelope.local_path,
                output_dir,
                ImageOutputKeys(job.media_id),
                track,
            )
        elif job.media_class == MediaClass.VIDEO:
            result = await self.run_blocking(
                self.video_transformer.transform,
                envelope.local_path,
                VideoMetadata.model_validate(envelope.metadata),
                output_dir,
                VideoOutputKeys(job.media_id),
                track,
            )
        else:
            result = await self.archive_pipeline.process(
                envelope,
                output_dir,
                track,
                lambda path: self.tracker.remove_file(job.job_id, path),
            )

        if not result.outputs:
            raise NoOutputsError("No outputs generated")

        await self.publisher.progress(job, 70, "processed")
        return envelope.advance(
            Stage.PROCESSED, outputs=result.outputs, metadata=result.metadata
        )


class UploadStage(BaseStageHandler):
    """Uploads every output, deleting each local file as soon as it is stored"""

    metrics_stage = ProcessingStage.UPLOAD

    def __init__(
        self,
        store: IObjectStore,
        tracker: TempFileTracker,
        publisher: ProgressPublisher,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        super().__init__("upload", tracker, publisher, metrics_collector)
        self.store = store

    async def _execute_impl(self, envelope: StageEnvelope) -> StageEnvelope:
        job = envelope.job
        envelope = envelope.advance(Stage.UPLOADING)
        await self.publisher.progress(job, 80, "uploading")

        uploaded: List[ProcessingOutput] = []
        total = len(envelope.outputs)
        for index, output in enumerate(envelope.outputs, start=1):
            if not output.local_path or not os.path.isfile(output.local_path):
                self.logger.error(
                    "Output %s for job %s has no local file", output.destination_key, job.job_id
                )
                continue
            try:
                await self.store.put(output.local_path, output.destination_key, output.mime_type)
            except Exception as e:
                self.logger.error(
                    "Upload %d/%d failed for job %s (%s): %s",
                    index,
                    total,
                    job.job_id,
                    output.destination_key,
                    e,
                )
                continue

            self.tracker.remove_file(job.job_id, output.local_path)
            uploaded.append(output.model_copy(update={"local_path": None}))

        if not uploaded:
            raise UploadError("No outputs were uploaded")
        if len(uploaded) < total:
            self.logger.warning(
                "Job %s uploaded %d of %d outputs", job.job_id, len(uploaded), total
            )

        await self.publisher.progress(job, 100, "uploaded")
        return envelope.advance(Stage.COMPLETED, outputs=uploaded)
