import asyncio
import json

from media_processor.models.job import MediaClass, Stage, StageEnvelope
from media_processor.services.admission import AdmissionController
from media_processor.services.coordinator import PipelineCoordinator

from fakes import FakeMessage, FakeQueueClient, settle


async def _noop_handler(message):
    await message.ack()


def _assert_invariant(admission, queue_client, queues):
    for media_class in MediaClass:
        state = admission.state(media_class)
        assert state.active_count <= state.max_concurrent
        assert state.subscribed == (state.active_count < state.max_concurrent)
        if media_class in queues:
            assert queue_client.is_subscribed(queues[media_class]) == state.subscribed


class TestAdmissionController:
    def test_pauses_at_ceiling_and_resumes_below(self):
        async def scenario():
            client = FakeQueueClient()
            admission = AdmissionController(client, {MediaClass.VIDEO: 2})
            queues = {MediaClass.VIDEO: "videos"}
            await admission.attach(MediaClass.VIDEO, "videos", _noop_handler)
            assert client.is_subscribed("videos")

            assert await admission.on_job_start("v1", MediaClass.VIDEO)
            _assert_invariant(admission, client, queues)
            assert client.is_subscribed("videos")

            assert await admission.on_job_start("v2", MediaClass.VIDEO)
            _assert_invariant(admission, client, queues)
            assert not client.is_subscribed("videos")

            await admission.on_job_finish("v1", MediaClass.VIDEO)
            _assert_invariant(admission, client, queues)
            assert client.is_subscribed("videos")
            return client.calls

        calls = asyncio.run(scenario())
        assert calls == [
            ("subscribe", "videos"),
            ("unsubscribe", "videos"),
            ("subscribe", "videos"),
        ]

    def test_classes_are_independent(self):
        async def scenario():
            client = FakeQueueClient()
            admission = AdmissionController(
                client, {MediaClass.IMAGE: 3, MediaClass.VIDEO: 1}
            )
            await admission.attach(MediaClass.IMAGE, "images", _noop_handler)
            await admission.attach(MediaClass.VIDEO, "videos", _noop_handler)

            await admission.on_job_start("v1", MediaClass.VIDEO)
            assert not client.is_subscribed("videos")
            assert client.is_subscribed("images")

            assert await admission.on_job_start("i1", MediaClass.IMAGE)
            assert await admission.on_job_start("i2", MediaClass.IMAGE)
            assert client.is_subscribed("images")
            _assert_invariant(
                admission, client, {MediaClass.IMAGE: "images", MediaClass.VIDEO: "videos"}
            )

        asyncio.run(scenario())

    def test_unbound_classes_report_capacity(self):
        async def scenario():
            client = FakeQueueClient()
            admission = AdmissionController(client, {MediaClass.IMAGE: 1})
            _assert_invariant(admission, client, {})
            assert admission.snapshot()["VIDEO"]["subscribed"] is True

            assert await admission.on_job_start("i1", MediaClass.IMAGE)
            _assert_invariant(admission, client, {})
            assert admission.snapshot()["IMAGE"]["subscribed"] is False
            assert client.calls == []

        asyncio.run(scenario())

    def test_same_job_id_is_not_admitted_twice(self):
        async def scenario():
            client = FakeQueueClient()
            admission = AdmissionController(client, {MediaClass.IMAGE: 2})
            await admission.attach(MediaClass.IMAGE, "images", _noop_handler)
            assert await admission.on_job_start("a", MediaClass.IMAGE)
            assert not await admission.on_job_start("a", MediaClass.IMAGE)
            assert admission.is_active("a", MediaClass.IMAGE)
            assert admission.state(MediaClass.IMAGE).active_count == 1
            assert client.is_subscribed("images")

        asyncio.run(scenario())

    def test_reattach_after_detach_subscribes_again(self):
        async def scenario():
            client = FakeQueueClient()
            admission = AdmissionController(client, {MediaClass.ARCHIVE: 1})
            await admission.attach(MediaClass.ARCHIVE, "archives", _noop_handler)
            await admission.detach_all()
            assert not client.is_subscribed("archives")

            await admission.attach(MediaClass.ARCHIVE, "archives", _noop_handler)
            assert client.is_subscribed("archives")
            _assert_invariant(admission, client, {MediaClass.ARCHIVE: "archives"})

        asyncio.run(scenario())

    def test_rejects_job_when_saturated(self):
        async def scenario():
            client = FakeQueueClient()
            admission = AdmissionController(client, {MediaClass.IMAGE: 1})
            await admission.attach(MediaClass.IMAGE, "images", _noop_handler)
            assert await admission.on_job_start("a", MediaClass.IMAGE)
            # delivered before the cancel reached the broker
            assert not await admission.on_job_start("b", MediaClass.IMAGE)
            assert admission.state(MediaClass.IMAGE).active_job_ids == {"a"}

        asyncio.run(scenario())

    def test_finish_of_unknown_job_is_harmless(self):
        async def scenario():
            client = FakeQueueClient()
            admission = AdmissionController(client, {MediaClass.ARCHIVE: 1})
            await admission.attach(MediaClass.ARCHIVE, "archives", _noop_handler)
            await admission.on_job_finish("ghost", MediaClass.ARCHIVE)
            assert admission.state(MediaClass.ARCHIVE).subscribed
            assert client.calls == [("subscribe", "archives")]

        asyncio.run(scenario())

    def test_invariant_holds_under_concurrent_churn(self):
        async def scenario():
            client = FakeQueueClient()
            admission = AdmissionController(client, {MediaClass.IMAGE: 3})
            await admission.attach(MediaClass.IMAGE, "images", _noop_handler)

            async def job(n):
                if await admission.on_job_start(f"j{n}", MediaClass.IMAGE):
                    _assert_invariant(admission, client, {MediaClass.IMAGE: "images"})
                    await asyncio.sleep(0)
                    await admission.on_job_finish(f"j{n}", MediaClass.IMAGE)
                    _assert_invariant(admission, client, {MediaClass.IMAGE: "images"})

            await asyncio.gather(*(job(n) for n in range(20)))
            assert admission.state(MediaClass.IMAGE).active_count == 0
            assert client.is_subscribed("images")

        asyncio.run(scenario())


def test_third_video_waits_in_broker_until_a_slot_frees(worker_settings, topology):
    async def scenario():
        client = FakeQueueClient(topology)
        coordinator = PipelineCoordinator(
            client, object_store=None, config=worker_settings, topology=topology
        )
        release = asyncio.Queue()
        started = []

        async def blocking_run(job):
            started.append(job.job_id)
            await release.get()
            return StageEnvelope.start(job).advance(Stage.COMPLETED)

        coordinator.dispatcher.run = blocking_run
        await coordinator.start()
        queue = topology.request_queue(MediaClass.VIDEO)

        for n in range(3):
            await client.deliver(
                queue,
                {
                    "jobId": f"video-{n}",
                    "mediaId": f"m{n}",
                    "userId": "u1",
                    "mediaType": "VIDEO",
                    "s3Key": f"uploads/{n}.mp4",
                },
            )
        await settle()

        state = coordinator.admission.state(MediaClass.VIDEO)
        assert state.active_job_ids == {"video-0", "video-1"}
        assert not client.is_subscribed(queue)
        assert len(client.buffers[queue]) == 1
        assert started == ["video-0", "video-1"]
        assert all(m.acked for m in client.delivered[queue])

        release.put_nowait(None)
        await settle()

        assert started == ["video-0", "video-1", "video-2"]
        assert len(client.buffers[queue]) == 0
        assert state.active_count == 2
        assert not client.is_subscribed(queue)

        release.put_nowait(None)
        release.put_nowait(None)
        await settle()
        assert state.active_count == 0
        assert client.is_subscribed(queue)

        await coordinator.stop()

    asyncio.run(scenario())


def test_duplicate_request_for_active_job_is_dropped(worker_settings, topology):
    async def scenario():
        client = FakeQueueClient(topology)
        config = worker_settings.model_copy(update={"max_concurrent_video_jobs": 1})
        coordinator = PipelineCoordinator(
            client, object_store=None, config=config, topology=topology
        )
        release = asyncio.Queue()
        started = []

        async def blocking_run(job):
            started.append(job.job_id)
            await release.get()
            return StageEnvelope.start(job).advance(Stage.COMPLETED)

        coordinator.dispatcher.run = blocking_run
        await coordinator.start()
        queue = topology.request_queue(MediaClass.VIDEO)
        request = {
            "jobId": "dup",
            "mediaId": "m1",
            "userId": "u1",
            "mediaType": "VIDEO",
            "s3Key": "uploads/dup.mp4",
        }

        await client.deliver(queue, request)
        await settle()
        # a second copy that was already in flight when the consumer paused
        duplicate = FakeMessage(json.dumps(request).encode("utf-8"))
        await coordinator._on_request(duplicate)
        await settle()

        assert duplicate.acked and not duplicate.requeued

        assert started == ["dup"]
        assert coordinator.in_flight == 1
        assert coordinator.admission.state(MediaClass.VIDEO).active_job_ids == {"dup"}

        release.put_nowait(None)
        await settle()
        assert coordinator.in_flight == 0
        assert client.is_subscribed(queue)
        await coordinator.stop()

    asyncio.run(scenario())
