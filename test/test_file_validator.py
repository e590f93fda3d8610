import pytest

from conftest import jpeg_bytes
from media_processor.config.settings import Settings
from media_processor.models.job import MediaClass
from media_processor.services.validation.file_validator import FileValidator


@pytest.fixture
def validator():
    return FileValidator(
        ["image/jpeg", "image/png", "image/webp"],
        ["video/mp4", "video/quicktime"],
        max_file_size=1024 * 1024,
    )


def test_jpeg_content_is_image_whatever_the_extension(validator, tmp_path):
    path = tmp_path / "upload.mp4"
    path.write_bytes(jpeg_bytes(40, 30))
    info = validator.validate(str(path), "album/upload.mp4")
    assert info.is_valid
    assert info.media_class == MediaClass.IMAGE
    assert info.mime_type == "image/jpeg"
    assert info.filename == "upload.mp4"
    assert info.original_path == "album/upload.mp4"


def test_mp4_content_is_video(validator, tmp_path):
    path = tmp_path / "clip.bin"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom" + b"\x00" * 64)
    info = validator.validate(str(path))
    assert info.is_valid
    assert info.media_class == MediaClass.VIDEO
    assert info.mime_type == "video/mp4"


def test_unknown_content(validator, tmp_path):
    path = tmp_path / "notes.jpg"
    path.write_text("just text")
    info = validator.validate(str(path))
    assert not info.is_valid
    assert info.error == "Unable to determine file type"


def test_disallowed_type(validator, tmp_path):
    path = tmp_path / "anim.gif"
    path.write_bytes(b"GIF89a" + b"\x00" * 32)
    info = validator.validate(str(path))
    assert not info.is_valid
    assert info.error == "Unsupported file type: image/gif"


def test_empty_and_oversized(validator, tmp_path):
    empty = tmp_path / "empty.jpg"
    empty.write_bytes(b"")
    assert validator.validate(str(empty)).error == "File is empty"

    big = tmp_path / "big.jpg"
    big.write_bytes(b"\xff\xd8\xff" + b"\x00" * (1024 * 1024))
    assert validator.validate(str(big)).error.startswith("File too large")


def test_missing_file(validator, tmp_path):
    info = validator.validate(str(tmp_path / "nope.jpg"))
    assert not info.is_valid
    assert info.error.startswith("File not readable")


def test_allow_lists_from_comma_separated_settings():
    settings = Settings(allowed_image_types="image/jpeg, image/png", allowed_video_types="video/mp4")
    validator = FileValidator.from_settings(settings)
    assert validator.classify_mime("IMAGE/PNG") == MediaClass.IMAGE
    assert validator.classify_mime("video/mp4") == MediaClass.VIDEO
    assert validator.classify_mime("image/webp") is None
    assert validator.classify_mime(None) is None
