import asyncio
import io
import json
import os
import zipfile
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import jpeg_bytes
from media_processor.core.exceptions import ArchiveValidationError, NoValidEntriesError
from media_processor.models.job import MediaClass, Stage, StageEnvelope
from media_processor.models.messages import parse_request
from media_processor.services.coordinator import PipelineCoordinator
from media_processor.services.pipelines.archive_pipeline import ArchivePipeline
from media_processor.services.processors.archive_extractor import (
    ArchiveExtractor,
    has_path_traversal,
    is_system_file,
)
from media_processor.services.processors.image_transformer import ImageTransformer
from media_processor.services.processors.keys import ArchiveEntryKeys, sanitize_entry_path
from media_processor.services.processors.video_transformer import VideoTransformer
from media_processor.services.temp_files import TempFileTracker
from media_processor.services.validation.file_validator import FileValidator

from fakes import FakeQueueClient, InMemoryObjectStore, wait_for_results

MB = 1024 * 1024


def _zip_bytes(entries, compression=zipfile.ZIP_DEFLATED) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression) as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buf.getvalue()


def _write_zip(tmp_path, entries, name="upload.zip", compression=zipfile.ZIP_DEFLATED):
    path = tmp_path / name
    path.write_bytes(_zip_bytes(entries, compression))
    return str(path)


@pytest.mark.parametrize(
    "name",
    ["../../etc/passwd", "a/../../b.jpg", "..\\windows\\x.jpg", "/etc/shadow", "C:/x.jpg", "%2e%2e%2fx"],
)
def test_traversal_names_are_detected(name):
    assert has_path_traversal(name)


@pytest.mark.parametrize("name", ["photo.jpg", "album/2024/photo..jpg", "a..b/c.jpg"])
def test_ordinary_names_pass(name):
    assert not has_path_traversal(name)


@pytest.mark.parametrize(
    "name,expected",
    [
        ("__MACOSX/._photo.jpg", True),
        ("album/__MACOSX/x.jpg", True),
        (".DS_Store", True),
        ("album/Thumbs.db", True),
        ("album/.hidden.jpg", True),
        ("album/photo.jpg", False),
    ],
)
def test_system_files(name, expected):
    assert is_system_file(name) is expected


def test_entry_keys_are_deterministic():
    keys = ArchiveEntryKeys("uploads/u1/batch.zip", "album 1/photo (2).jpg")
    assert sanitize_entry_path("album 1/photo (2).jpg") == "album_1_photo__2_.jpg"
    assert keys.thumbnail() == "uploads/u1/batch.zip.album_1_photo__2_.jpg_thumbnail.jpg"
    assert keys.thumbnail(2) == "uploads/u1/batch.zip.album_1_photo__2_.jpg_thumbnail_2.jpg"
    assert keys.variant("720p", "mp4") == "uploads/u1/batch.zip.album_1_photo__2_.jpg_720p.mp4"
    assert ArchiveEntryKeys("uploads/u1/batch.zip", "album 1/photo (2).jpg").variant(
        "360p"
    ) == keys.variant("360p")


class TestArchiveExtractor:
    def test_filters_junk_and_traversal(self, tmp_path):
        archive = _write_zip(
            tmp_path,
            [
                ("photos/a.jpg", jpeg_bytes(50, 40)),
                ("../../etc/passwd", b"root:x:0:0"),
                ("__MACOSX/photos/._a.jpg", b"\x00\x05\x16\x07"),
                (".DS_Store", b"\x00\x00\x00\x01Bud1"),
                ("photos/b.jpg", jpeg_bytes(50, 40, seed=1)),
            ],
        )
        out = tmp_path / "extracted"

        entries = ArchiveExtractor(100 * MB, 100 * MB).extract(archive, str(out))

        assert [e.original_path for e in entries] == ["photos/a.jpg", "photos/b.jpg"]
        assert sorted(os.listdir(out)) == ["0000_a.jpg", "0004_b.jpg"]
        assert not (tmp_path / "etc").exists()
        for entry in entries:
            assert os.path.dirname(entry.local_path) == str(out)

    def test_only_junk_raises_no_valid_entries(self, tmp_path):
        archive = _write_zip(
            tmp_path, [("__MACOSX/._x", b"x"), ("../evil.jpg", b"x"), ("Thumbs.db", b"x")]
        )
        with pytest.raises(NoValidEntriesError, match="No valid files found in zip file"):
            ArchiveExtractor(100 * MB, 100 * MB).extract(archive, str(tmp_path / "out"))

    def test_not_a_zip(self, tmp_path):
        path = tmp_path / "fake.zip"
        path.write_bytes(b"this is plain text, not an archive")
        with pytest.raises(ArchiveValidationError, match="Invalid zip file"):
            ArchiveExtractor(100 * MB, 100 * MB).validate(str(path))

    def test_archive_too_large(self, tmp_path):
        archive = _write_zip(tmp_path, [("a.jpg", jpeg_bytes(50, 40))])
        with pytest.raises(ArchiveValidationError, match="Zip file too large"):
            ArchiveExtractor(16, 100 * MB).validate(archive)

    def test_oversized_entry_is_skipped(self, tmp_path):
        archive = _write_zip(
            tmp_path, [("small.jpg", jpeg_bytes(20, 20)), ("big.bin", b"\x00" * 65536)]
        )
        entries = ArchiveExtractor(100 * MB, 32768).extract(archive, str(tmp_path / "out"))
        assert [e.original_path for e in entries] == ["small.jpg"]

    def test_corrupt_entry_is_skipped(self, tmp_path):
        marker = b"CORRUPT-ME-" * 20
        data = bytearray(
            _zip_bytes(
                [("good.jpg", jpeg_bytes(30, 30)), ("bad.bin", marker)],
                compression=zipfile.ZIP_STORED,
            )
        )
        offset = data.find(marker)
        data[offset] ^= 0xFF  # CRC no longer matches
        archive = tmp_path / "damaged.zip"
        archive.write_bytes(bytes(data))
        out = tmp_path / "out"

        entries = ArchiveExtractor(100 * MB, 100 * MB).extract(str(archive), str(out))

        assert [e.original_path for e in entries] == ["good.jpg"]
        assert os.listdir(out) == ["0000_good.jpg"]

    def test_skipped_entry_leaves_no_stale_record(self, tmp_path):
        marker = b"CORRUPT-ME-" * 20
        data = bytearray(
            _zip_bytes(
                [("good.jpg", jpeg_bytes(30, 30)), ("bad.bin", marker)],
                compression=zipfile.ZIP_STORED,
            )
        )
        data[data.find(marker)] ^= 0xFF
        archive = tmp_path / "damaged.zip"
        archive.write_bytes(bytes(data))
        tracker = TempFileTracker(tmp_path / "work")
        out = tracker.job_dir("zip-1") / "extracted"

        ArchiveExtractor(100 * MB, 100 * MB).extract(
            str(archive),
            str(out),
            lambda path, role: tracker.track("zip-1", path, "processing", role),
            lambda path: tracker.remove_file("zip-1", path),
        )

        assert [r.path for r in tracker.records("zip-1")] == [str(out / "0000_good.jpg")]

    def test_tracks_extracted_entries(self, tmp_path):
        archive = _write_zip(tmp_path, [("a.jpg", jpeg_bytes(20, 20))])
        tracked = []
        ArchiveExtractor(100 * MB, 100 * MB).extract(
            archive, str(tmp_path / "out"), lambda path, role: tracked.append(path)
        )
        assert tracked == [str(tmp_path / "out" / "0000_a.jpg")]


def _archive_request(job_id, key, **extra):
    payload = {
        "jobId": job_id,
        "mediaId": f"media-{job_id}",
        "userId": "u1",
        "mediaType": "ZIP",
        "s3Key": key,
        "originalFilename": "batch.zip",
    }
    payload.update(extra)
    return payload


def test_archive_with_corrupt_entry_completes(worker_settings, topology):
    entries = [(f"photos/img_{n}.jpg", jpeg_bytes(150, 100, seed=n)) for n in range(10)]
    entries.append(("photos/broken.jpg", b"\xff\xd8\xff\xe0" + b"\x00garbage" * 32))
    entries.append(("__MACOSX/photos/._img_0.jpg", b"\x00\x05\x16\x07"))
    entries.append(("photos/notes.txt", b"shopping list"))
    store = InMemoryObjectStore({"uploads/u1/batch.zip": _zip_bytes(entries)})

    async def scenario():
        client = FakeQueueClient(topology)
        coordinator = PipelineCoordinator(
            client, store, config=worker_settings, topology=topology
        )
        await coordinator.start()
        await client.deliver(
            topology.request_queue(MediaClass.ARCHIVE),
            _archive_request("zip-1", "uploads/u1/batch.zip"),
        )
        results = await wait_for_results(client)
        progress = [e["progress"] for e in client.events("progress")]
        await coordinator.stop()
        return results, progress

    results, progress = asyncio.run(scenario())

    result = results[0]
    assert result["status"] == "COMPLETED"
    assert len(result["outputs"]) == 10
    assert {o["sourcePath"] for o in result["outputs"]} == {
        f"photos/img_{n}.jpg" for n in range(10)
    }
    assert result["outputs"][0]["destinationKey"] == (
        "uploads/u1/batch.zip.photos_img_0.jpg_thumbnail.jpg"
    )
    metadata = result["metadata"]
    assert metadata["totalEntries"] == 12
    assert metadata["processedEntries"] == 10
    assert metadata["failedEntries"] == 1
    assert metadata["failed"][0]["originalPath"] == "photos/broken.jpg"
    assert metadata["skippedEntries"] == 1
    assert metadata["skipped"][0]["originalPath"] == "photos/notes.txt"

    assert progress == sorted(progress)
    assert all(30 <= p <= 70 for p in progress[3:-3])
    assert os.listdir(worker_settings.temp_dir) == []


def test_archive_allowed_types_option_skips_other_classes(worker_settings, topology):
    entries = [("a.jpg", jpeg_bytes(150, 100)), ("b.jpg", jpeg_bytes(150, 100, seed=2))]
    store = InMemoryObjectStore({"uploads/only-video.zip": _zip_bytes(entries)})

    async def scenario():
        client = FakeQueueClient(topology)
        coordinator = PipelineCoordinator(
            client, store, config=worker_settings, topology=topology
        )
        await coordinator.start()
        await client.deliver(
            topology.request_queue(MediaClass.ARCHIVE),
            _archive_request(
                "zip-2", "uploads/only-video.zip", options={"allowedTypes": ["VIDEO"]}
            ),
        )
        results = await wait_for_results(client)
        await coordinator.stop()
        return results[0]

    result = asyncio.run(scenario())
    assert result["status"] == "FAILED"
    assert result["error"] == "No outputs generated"
    assert os.listdir(worker_settings.temp_dir) == []


def test_invalid_archive_fails_job(worker_settings, topology):
    store = InMemoryObjectStore({"uploads/bad.zip": b"definitely not a zip"})

    async def scenario():
        client = FakeQueueClient(topology)
        coordinator = PipelineCoordinator(
            client, store, config=worker_settings, topology=topology
        )
        await coordinator.start()
        await client.deliver(
            topology.request_queue(MediaClass.ARCHIVE),
            _archive_request("zip-3", "uploads/bad.zip"),
        )
        results = await wait_for_results(client)
        state = coordinator.admission.state(MediaClass.ARCHIVE)
        await coordinator.stop()
        return results[0], state

    result, state = asyncio.run(scenario())
    assert result["status"] == "FAILED"
    assert result["error"] == "Invalid zip file"
    assert state.active_count == 0
    assert os.listdir(worker_settings.temp_dir) == []


def test_consumed_entries_are_released_from_the_tracker(worker_settings, tmp_path):
    archive = _write_zip(
        tmp_path,
        [
            ("a.jpg", jpeg_bytes(150, 100)),
            ("b.jpg", jpeg_bytes(150, 100, seed=3)),
            ("notes.txt", b"not media"),
        ],
    )
    job = parse_request(
        json.dumps(_archive_request("zip-9", "uploads/u1/batch.zip")).encode("utf-8")
    )
    envelope = StageEnvelope.start(job).advance(Stage.DOWNLOADED, local_path=archive)
    tracker = TempFileTracker(tmp_path / "work")
    output_dir = str(tracker.job_dir(job.job_id) / "outputs")
    publisher = MagicMock()
    publisher.progress = AsyncMock()
    pipeline = ArchivePipeline(
        ArchiveExtractor(100 * MB, 100 * MB),
        FileValidator.from_settings(worker_settings),
        ImageTransformer(),
        VideoTransformer(),
        publisher,
    )

    result = asyncio.run(
        pipeline.process(
            envelope,
            output_dir,
            lambda path, role: tracker.track(job.job_id, path, "processing", role),
            lambda path: tracker.remove_file(job.job_id, path),
        )
    )

    assert len(result.outputs) == 2
    recorded = {r.path for r in tracker.records(job.job_id)}
    assert recorded == {o.local_path for o in result.outputs}
    assert all(os.path.exists(path) for path in recorded)
