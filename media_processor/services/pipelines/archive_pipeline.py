"""
Archive pipeline: extract, classify each entry by content, and run the image
or video transformer per entry. One bad entry never fails the batch.
"""

import asyncio
import functools
import logging
import os
from typing import Any, Dict, List

from media_processor.models.job import MediaClass, StageEnvelope, TempFileRole
from media_processor.services.processors.archive_extractor import ArchiveExtractor
from media_processor.services.processors.base import (
    RemoveFn,
    TrackFn,
    TransformResult,
    remove_local,
)
from media_processor.services.processors.image_transformer import ImageTransformer
from media_processor.services.processors.keys import ArchiveEntryKeys
from media_processor.services.processors.video_transformer import VideoTransformer
from media_processor.services.publisher import ProgressPublisher
from media_processor.services.validation.file_validator import FileValidator

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TYPES = ("IMAGE", "VIDEO")

# progress band of the processing stage
PROGRESS_START = 30
PROGRESS_SPAN = 40


class ArchivePipeline:
    def __init__(
        self,
        extractor: ArchiveExtractor,
        validator: FileValidator,
        image_transformer: ImageTransformer,
        video_transformer: VideoTransformer,
        publisher: ProgressPublisher,
    ):
        self.extractor = extractor
        self.validator = validator
        self.image_transformer = image_transformer
        self.video_transformer = video_transformer
        self.publisher = publisher

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def process(
        self,
        envelope: StageEnvelope,
        output_dir: str,
        track: TrackFn,
        remove: RemoveFn = remove_local,
    ) -> TransformResult:
        """
        Raises:
            ArchiveValidationError: archive unreadable or has no valid entries
        """
        job = envelope.job
        extract_dir = os.path.join(os.path.dirname(output_dir), "extracted")
        entries = await self._run(
            self.extractor.extract, envelope.local_path, extract_dir, track, remove
        )

        allowed = {
            str(t).upper() for t in job.options.get("allowedTypes", DEFAULT_ALLOWED_TYPES)
        }
        result = TransformResult(metadata={})
        succeeded: List[Dict[str, Any]] = []
        skipped: List[Dict[str, str]] = []
        failed: List[Dict[str, str]] = []

        for index, entry in enumerate(entries):
            info = self.validator.validate(entry.local_path, entry.original_path)
            if not info.is_valid or info.media_class.value not in allowed:
                reason = info.error or f"{info.media_class.value} not allowed"
                logger.info("Skipping archive entry %s: %s", entry.original_path, reason)
                skipped.append({"originalPath": entry.original_path, "reason": reason})
            else:
                try:
                    entry_result = await self._transform_entry(
                        info.media_class, entry.local_path, entry.original_path,
                        job.source_key, output_dir, index, track,
                    )
                except Exception as e:
                    logger.warning(
                        "Archive entry %s failed for job %s: %s",
                        entry.original_path,
                        job.job_id,
                        e,
                    )
                    failed.append({"originalPath": entry.original_path, "error": str(e)})
                else:
                    for output in entry_result.outputs:
                        result.outputs.append(
                            output.model_copy(update={"source_path": entry.original_path})
                        )
                    succeeded.append(
                        {
                            "originalPath": entry.original_path,
                            "mediaClass": info.media_class.value,
                            "mimeType": info.mime_type,
                            "outputs": len(entry_result.outputs),
                            "metadata": entry_result.metadata,
                        }
                    )

            # the extracted copy is not needed once its outputs exist
            # (an mp4 entry is its own "original" output and stays until upload)
            if not any(o.local_path == entry.local_path for o in result.outputs):
                remove(entry.local_path)

            await self.publisher.progress(
                job,
                PROGRESS_START + int((index + 1) / len(entries) * PROGRESS_SPAN),
                f"archive_entry_{index + 1}_of_{len(entries)}",
            )

        result.metadata = {
            "totalEntries": len(entries),
            "processedEntries": len(succeeded),
            "skippedEntries": len(skipped),
            "failedEntries": len(failed),
            "entries": succeeded,
            "skipped": skipped,
            "failed": failed,
        }
        logger.info(
            "Archive job %s: %d processed, %d skipped, %d failed, %d outputs",
            job.job_id,
            len(succeeded),
            len(skipped),
            len(failed),
            len(result.outputs),
        )
        return result

    async def _transform_entry(
        self,
        media_class: MediaClass,
        path: str,
        original_path: str,
        archive_key: str,
        output_dir: str,
        index: int,
        track: TrackFn,
    ) -> TransformResult:
        keys = ArchiveEntryKeys(archive_key, original_path)
        prefix = f"{index:04d}_"
        if media_class == MediaClass.IMAGE:
            return await self._run(
                self.image_transformer.transform, path, output_dir, keys, track, prefix
            )
        metadata = await self._run(self.video_transformer.probe, path)
        return await self._run(
            self.video_transformer.transform, path, metadata, output_dir, keys, track, prefix
        )
