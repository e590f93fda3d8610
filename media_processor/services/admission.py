"""
Admission control: per media class concurrency ceilings enforced by pausing
and resuming queue consumption.
"""

import asyncio
import logging
from typing import Dict, List, Tuple

from media_processor.interfaces.queue import IQueueClient, MessageHandler
from media_processor.models.job import AdmissionState, MediaClass

logger = logging.getLogger(__name__)


class AdmissionController:
    """
    Tracks active jobs per media class and keeps the class's input queues
    subscribed exactly while it has spare capacity.

    Classes never share state: each has its own ``AdmissionState`` and its own
    lock, so a saturated video class never delays image admission.

    Example:
        admission = AdmissionController(queue_client, {MediaClass.VIDEO: 2})
        await admission.attach(MediaClass.VIDEO, "prod.media.videos.requests", handler)
        if await admission.on_job_start(job.job_id, MediaClass.VIDEO):
            ...
        await admission.on_job_finish(job.job_id, MediaClass.VIDEO)
    """

    def __init__(self, queue_client: IQueueClient, ceilings: Dict[MediaClass, int]):
        self.queue_client = queue_client
        self._states: Dict[MediaClass, AdmissionState] = {}
        self._locks: Dict[MediaClass, asyncio.Lock] = {}
        self._bindings: Dict[MediaClass, List[Tuple[str, MessageHandler]]] = {}
        for media_class in MediaClass:
            ceiling = ceilings.get(media_class, 1)
            if ceiling < 1:
                raise ValueError(f"Ceiling for {media_class.value} must be >= 1")
            self._states[media_class] = AdmissionState(media_class, ceiling, subscribed=True)
            self._bindings[media_class] = []

    def _lock(self, media_class: MediaClass) -> asyncio.Lock:
        # created lazily so the controller can be built outside a running loop
        lock = self._locks.get(media_class)
        if lock is None:
            lock = self._locks[media_class] = asyncio.Lock()
        return lock

    def state(self, media_class: MediaClass) -> AdmissionState:
        return self._states[media_class]

    def is_active(self, job_id: str, media_class: MediaClass) -> bool:
        return job_id in self._states[media_class].active_job_ids

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {
            media_class.value: {
                "active": state.active_count,
                "max": state.max_concurrent,
                "subscribed": state.subscribed,
            }
            for media_class, state in self._states.items()
        }

    async def attach(
        self, media_class: MediaClass, queue: str, handler: MessageHandler
    ) -> None:
        """Bind an input queue to a class and subscribe if there is capacity"""
        async with self._lock(media_class):
            self._bindings[media_class].append((queue, handler))
            if self._states[media_class].subscribed:
                await self.queue_client.subscribe(queue, handler)

    async def detach_all(self) -> None:
        """Stop consuming every input queue (used on shutdown)"""
        for media_class, state in self._states.items():
            async with self._lock(media_class):
                for queue, _ in self._bindings[media_class]:
                    await self.queue_client.unsubscribe(queue)
                self._bindings[media_class] = []
                # next attach subscribes again when there is capacity
                state.subscribed = state.has_capacity

    async def on_job_start(self, job_id: str, media_class: MediaClass) -> bool:
        """Admit a job.

        Returns False when the class is already at its ceiling; that happens
        only for a message the broker delivered before the consumer cancel
        took effect, and the caller must hand it back to the broker. Also
        returns False for a job id that is already active.
        """
        async with self._lock(media_class):
            state = self._states[media_class]
            if job_id in state.active_job_ids:
                logger.warning("Job %s is already active; not admitting it twice", job_id)
                return False
            if not state.has_capacity:
                logger.warning(
                    "Rejecting job %s: %s at ceiling (%d/%d)",
                    job_id,
                    media_class.value,
                    state.active_count,
                    state.max_concurrent,
                )
                return False
            state.active_job_ids.add(job_id)
            logger.info(
                "Job %s started (%s %d/%d)",
                job_id,
                media_class.value,
                state.active_count,
                state.max_concurrent,
            )
            await self._reevaluate(state)
            return True

    async def on_job_finish(self, job_id: str, media_class: MediaClass) -> None:
        async with self._lock(media_class):
            state = self._states[media_class]
            state.active_job_ids.discard(job_id)
            logger.info(
                "Job %s finished (%s %d/%d)",
                job_id,
                media_class.value,
                state.active_count,
                state.max_concurrent,
            )
            await self._reevaluate(state)

    async def _reevaluate(self, state: AdmissionState) -> None:
        bindings = self._bindings[state.media_class]
        if not state.has_capacity and state.subscribed:
            for queue, _ in bindings:
                await self.queue_client.unsubscribe(queue)
            state.subscribed = False
            logger.info(
                "Paused %s consumption at %d active jobs",
                state.media_class.value,
                state.active_count,
            )
        elif state.has_capacity and not state.subscribed:
            for queue, handler in bindings:
                await self.queue_client.subscribe(queue, handler)
            state.subscribed = True
            logger.info(
                "Resumed %s consumption (%d/%d active)",
                state.media_class.value,
                state.active_count,
                state.max_concurrent,
            )

