"""
Object store key schemes for derived outputs
"""

import re


def sanitize_entry_path(original_path: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", original_path)


class ImageOutputKeys:
    def __init__(self, media_id: str):
        self.media_id = media_id

    def thumbnail(self, index: int = 0) -> str:
        return f"processed/images/{self.media_id}/thumbnail.jpg"

    def variant(self, quality: str, extension: str = "jpg") -> str:
        return f"processed/images/{self.media_id}/{quality}.{extension}"


class VideoOutputKeys:
    def __init__(self, media_id: str):
        self.media_id = media_id

    def thumbnail(self, index: int = 0) -> str:
        return f"thumbnails/{self.media_id}_{index}.jpg"

    def variant(self, quality: str, extension: str = "mp4") -> str:
        return f"videos/{self.media_id}_{quality}.{extension}"


class ArchiveEntryKeys:
    """Keys derived from the archive's own key plus the entry path.

    Re-processing the same archive produces the same keys.
    """

    def __init__(self, archive_key: str, original_path: str):
        self.entry_key = f"{archive_key}.{sanitize_entry_path(original_path)}"

    def thumbnail(self, index: int = 0) -> str:
        suffix = "thumbnail" if index == 0 else f"thumbnail_{index}"
        return f"{self.entry_key}_{suffix}.jpg"

    def variant(self, quality: str, extension: str = "jpg") -> str:
        return f"{self.entry_key}_{quality}.{extension}"
