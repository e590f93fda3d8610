import pytest

from media_processor.config.settings import Settings
from media_processor.models.job import MediaClass, Stage
from media_processor.services.queue.topology import PipelineStep, QueueTopology, StageRouter


@pytest.fixture
def router(topology):
    return StageRouter(topology)


@pytest.mark.parametrize(
    "stage,step",
    [
        (Stage.PENDING, PipelineStep.DOWNLOAD),
        (Stage.DOWNLOADED, PipelineStep.PROCESSING),
        (Stage.PROCESSED, PipelineStep.UPLOAD),
        (Stage.COMPLETED, None),
        (Stage.FAILED, None),
    ],
)
def test_next_step(router, stage, step):
    assert router.next_step(stage) == step


def test_uploading_is_not_routable(router):
    with pytest.raises(ValueError):
        router.next_step(Stage.UPLOADING)


def test_publish_target_uses_class_and_step(router, topology):
    assert router.publish_target(MediaClass.VIDEO, Stage.DOWNLOADED) == (
        "test.media.processing",
        "videos.processing",
    )
    assert router.publish_target(MediaClass.ARCHIVE, Stage.PENDING) == (
        topology.processing_exchange,
        "archives.download",
    )
    assert router.publish_target(MediaClass.IMAGE, Stage.COMPLETED) is None


def test_queue_names_are_namespaced(topology):
    assert topology.request_queue(MediaClass.IMAGE) == "test.media.images.requests"
    assert topology.updates_queue == "test.media.processing.updates"
    assert topology.stage_queue(MediaClass.VIDEO, PipelineStep.UPLOAD) == "test.media.videos.upload"
    assert topology.exchanges == [
        "test.media.requests",
        "test.media.processing",
        "test.media.updates",
    ]


def test_bindings_with_and_without_stage_queues(topology):
    plain = topology.bindings()
    assert len(plain) == 4
    assert {b.routing_key for b in plain} == {"images", "videos", "archives", "updates"}

    staged = topology.bindings(include_stages=True)
    assert len(staged) == 4 + 9
    assert all(
        b.exchange == "test.media.processing" for b in staged if b.routing_key.count(".") == 1
    )


def test_topology_from_settings():
    topology = QueueTopology.from_settings(Settings(system_name="prod"))
    assert topology.requests_exchange == "prod.media.requests"
    assert topology.describe()["queues"][0] == "prod.media.images.requests"
