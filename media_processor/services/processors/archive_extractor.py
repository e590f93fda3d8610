"""
Archive extraction with path-traversal and junk-file filtering
"""

import logging
import os
import posixpath
import shutil
import zipfile
import zlib
from dataclasses import dataclass
from typing import List

from media_processor.core.exceptions import ArchiveValidationError, NoValidEntriesError
from media_processor.models.job import TempFileRole
from media_processor.services.processors.base import (
    RemoveFn,
    TrackFn,
    no_tracking,
    remove_local,
)
from media_processor.services.processors.keys import sanitize_entry_path

logger = logging.getLogger(__name__)

SYSTEM_FILES = frozenset(
    {
        ".DS_Store",
        "Thumbs.db",
        "desktop.ini",
        ".Spotlight-V100",
        ".Trashes",
        "._.DS_Store",
        ".fseventsd",
        ".TemporaryItems",
    }
)

TRAVERSAL_PATTERNS = ("../", "..\\", "..%2f", "..%5c", "%2e%2e%2f", "%2e%2e%5c")


@dataclass
class ExtractedEntry:
    original_path: str
    local_path: str
    size: int


def is_system_file(name: str) -> bool:
    normalized = name.replace("\\", "/")
    if normalized.startswith("__MACOSX/") or "/__MACOSX/" in normalized:
        return True
    basename = posixpath.basename(normalized.rstrip("/"))
    return basename in SYSTEM_FILES or basename.startswith(".")


def has_path_traversal(name: str) -> bool:
    lowered = name.lower()
    if any(pattern in lowered for pattern in TRAVERSAL_PATTERNS):
        return True
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or (len(name) > 1 and name[1] == ":"):
        return True
    return ".." in normalized.split("/")


def _inside(root: str, path: str) -> bool:
    root = os.path.realpath(root)
    return os.path.commonpath([root, os.path.realpath(path)]) == root


class ArchiveExtractor:
    """
    Streams zip entries to disk one at a time.

    Entries are written flat into the extraction root under an index-prefixed,
    sanitized name; the original in-archive path is kept only as data.
    """

    def __init__(self, max_archive_size: int, max_entry_size: int):
        self.max_archive_size = max_archive_size
        self.max_entry_size = max_entry_size

    def validate(self, archive_path: str) -> None:
        """
        Raises:
            ArchiveValidationError: too large or not a zip archive
        """
        size = os.path.getsize(archive_path)
        if size > self.max_archive_size:
            raise ArchiveValidationError(
                f"Zip file too large: {size} bytes (max {self.max_archive_size} bytes)",
                file_name=os.path.basename(archive_path),
            )
        if not zipfile.is_zipfile(archive_path):
            raise ArchiveValidationError(
                "Invalid zip file", file_name=os.path.basename(archive_path)
            )

    def extract(
        self,
        archive_path: str,
        destination: str,
        track: TrackFn = no_tracking,
        remove: RemoveFn = remove_local,
    ) -> List[ExtractedEntry]:
        """
        Raises:
            ArchiveValidationError: archive invalid
            NoValidEntriesError: nothing usable inside
        """
        self.validate(archive_path)
        os.makedirs(destination, exist_ok=True)
        entries: List[ExtractedEntry] = []

        try:
            archive = zipfile.ZipFile(archive_path)
        except zipfile.BadZipFile as e:
            raise ArchiveValidationError(f"Invalid zip file: {e}") from e

        with archive:
            for index, info in enumerate(archive.infolist()):
                name = info.filename
                if info.is_dir():
                    continue
                if is_system_file(name):
                    logger.debug("Skipping system file: %s", name)
                    continue
                if has_path_traversal(name):
                    logger.warning("Rejected entry with path traversal: %s", name)
                    continue
                if info.file_size > self.max_entry_size:
                    logger.warning(
                        "Skipping oversized entry %s (%d bytes)", name, info.file_size
                    )
                    continue

                basename = sanitize_entry_path(posixpath.basename(name))
                target = os.path.join(destination, f"{index:04d}_{basename}")
                if not _inside(destination, target):
                    logger.warning("Rejected entry resolving outside root: %s", name)
                    continue

                track(target, TempFileRole.INTERMEDIATE)
                try:
                    with archive.open(info) as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst, 1024 * 1024)
                except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as e:
                    logger.warning("Skipping unreadable entry %s: %s", name, e)
                    remove(target)
                    continue

                entries.append(ExtractedEntry(name, target, os.path.getsize(target)))

        if not entries:
            raise NoValidEntriesError()

        logger.info("Extracted %d entries from %s", len(entries), os.path.basename(archive_path))
        return entries
