"""
Metrics collection and processing stage tracking for the media pipeline.
"""

from enum import Enum
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import time
import logging
from collections import defaultdict, deque

logger = logging.getLogger(__name__)


class ProcessingStage(Enum):
    """Enumeration of processing stages"""

    DOWNLOAD = "download"
    TRANSFORM = "transform"
    UPLOAD = "upload"
    CLEANUP = "cleanup"


@dataclass
class ProcessingMetrics:
    """Metrics for processing operations"""

    stage: ProcessingStage
    start_time: float
    job_id: Optional[str] = None
    end_time: Optional[float] = None
    success: bool = True
    error_message: Optional[str] = None
    items_processed: int = 0

    @property
    def duration(self) -> float:
        """Get processing duration in seconds"""
        if self.end_time is None:
            return time.time() - self.start_time
        return self.end_time - self.start_time


class MetricsCollector:
    """Collects and manages processing metrics"""

    def __init__(self, history_size: int = 500):
        # A long-running worker only keeps the most recent stage records
        self.metrics: deque = deque(maxlen=history_size)
        self._counters: Dict[str, int] = defaultdict(int)

    def start_stage(
        self, stage: ProcessingStage, job_id: Optional[str] = None
    ) -> ProcessingMetrics:
        """Start tracking a processing stage"""
        metric = ProcessingMetrics(stage=stage, start_time=time.time(), job_id=job_id)
        self.metrics.append(metric)
        return metric

    def increment_counter(self, name: str, value: int = 1) -> None:
        """Increment a counter metric.

        Args:
            name: Name of the counter to increment
            value: Amount to increment the counter by (default: 1)
        """
        self._counters[name] += value
        logger.debug("Counter '%s' incremented to %d", name, self._counters[name])

    def end_stage(
        self,
        metric: ProcessingMetrics,
        success: bool = True,
        error_message: Optional[str] = None,
        items_processed: int = 0,
    ) -> None:
        """End tracking a processing stage"""
        metric.end_time = time.time()
        metric.success = success
        metric.error_message = error_message
        metric.items_processed = items_processed

        status = "succeeded" if success else "failed"
        self.increment_counter(f"{metric.stage.value}_{status}")

        logger.info(
            "Stage %s completed in %.2fs (job: %s, success: %s, items: %d)",
            metric.stage.value,
            metric.duration,
            metric.job_id,
            success,
            items_processed,
        )

    @property
    def counters(self) -> Dict[str, int]:
        return dict(self._counters)

    def get_summary(self) -> Dict[str, Any]:
        """Get processing summary"""
        recent: List[ProcessingMetrics] = [m for m in self.metrics if m.end_time]
        by_stage: Dict[str, List[float]] = defaultdict(list)
        for m in recent:
            by_stage[m.stage.value].append(m.duration)

        return {
            "counters": self.counters,
            "average_stage_duration": {
                stage: sum(durations) / len(durations)
                for stage, durations in by_stage.items()
            },
            "failed_stages": [
                {"stage": m.stage.value, "job_id": m.job_id, "error": m.error_message}
                for m in recent
                if not m.success
            ][-10:],
        }
