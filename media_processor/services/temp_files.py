"""
Temp file tracking and cleanup for pipeline jobs
"""

import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Dict, List, Tuple, Union

from media_processor.models.job import TempFileRecord, TempFileRole

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _file_size(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def _remove_path(path: str) -> int:
    """Delete a file if it exists and return the bytes freed"""
    if not os.path.isfile(path):
        return 0
    size = _file_size(path)
    os.remove(path)
    return size


class TempFileTracker:
    """Records every local file a job writes and removes them when the job ends.

    All job files live under ``{root}/{job_id}/``. The registry is shared by
    every running job, so inserts and removals go through one lock; a job's
    own records are only touched by that job's stage handlers.
    """

    def __init__(self, root: PathLike):
        self.root = Path(root)
        self._records: Dict[str, Dict[str, TempFileRecord]] = {}
        self._lock = threading.Lock()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def job_dir(self, job_id: str) -> Path:
        """Create the job's directory and register the job as live"""
        path = self.root / job_id
        with self._lock:
            self._records.setdefault(job_id, {})
            path.mkdir(parents=True, exist_ok=True)
        return path

    def track(
        self,
        job_id: str,
        path: PathLike,
        stage: str,
        role: TempFileRole = TempFileRole.INTERMEDIATE,
    ) -> TempFileRecord:
        """Register a path; safe to call before the file is written"""
        key = str(path)
        record = TempFileRecord(
            path=key, job_id=job_id, stage=stage, role=role, byte_size=_file_size(key)
        )
        with self._lock:
            self._records.setdefault(job_id, {})[key] = record
        logger.debug("Tracking %s file for job %s: %s", role.value, job_id, key)
        return record

    def records(self, job_id: str) -> List[TempFileRecord]:
        with self._lock:
            return list(self._records.get(job_id, {}).values())

    def tracked_job_ids(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def job_size(self, job_id: str) -> int:
        return sum(_file_size(r.path) for r in self.records(job_id))

    def remove_file(self, job_id: str, path: PathLike) -> int:
        """Delete one tracked file now (e.g. right after its upload)"""
        key = str(path)
        with self._lock:
            job_records = self._records.get(job_id)
            if job_records is not None:
                job_records.pop(key, None)
        try:
            return _remove_path(key)
        except OSError as e:
            logger.warning("Failed to remove %s for job %s: %s", key, job_id, e)
            return 0

    def cleanup_job(self, job_id: str) -> Tuple[int, int]:
        """Remove every file of a job. Best effort; never raises.

        Returns:
            (files_removed, bytes_freed)
        """
        with self._lock:
            job_records = self._records.pop(job_id, {})

        files_removed = 0
        bytes_freed = 0
        for record in job_records.values():
            try:
                if os.path.isfile(record.path):
                    bytes_freed += _remove_path(record.path)
                    files_removed += 1
            except OSError as e:
                logger.warning("Failed to remove temp file %s: %s", record.path, e)

        # Anything written under the job directory without a record
        job_dir = self.root / job_id
        if job_dir.is_dir():
            for dirpath, _, filenames in os.walk(job_dir):
                for filename in filenames:
                    leftover = os.path.join(dirpath, filename)
                    try:
                        bytes_freed += _remove_path(leftover)
                        files_removed += 1
                        logger.warning("Removed untracked file for job %s: %s", job_id, leftover)
                    except OSError as e:
                        logger.warning("Failed to remove temp file %s: %s", leftover, e)
            shutil.rmtree(job_dir, ignore_errors=True)

        logger.info(
            "Cleaned up job %s: %d files, %.2f MB",
            job_id,
            files_removed,
            bytes_freed / (1024 * 1024),
        )
        return files_removed, bytes_freed

    def sweep_older_than(self, max_age_seconds: float) -> Tuple[int, int]:
        """Remove untracked files older than ``max_age_seconds``.

        Repairs the state left behind by a crashed process. Files that still
        belong to a live job are never touched.
        """
        if not self.root.is_dir():
            return 0, 0

        cutoff = time.time() - max_age_seconds
        with self._lock:
            live_paths = {p for records in self._records.values() for p in records}
            live_jobs = set(self._records)

        files_removed = 0
        bytes_freed = 0
        for dirpath, dirnames, filenames in os.walk(self.root, topdown=True):
            rel = Path(dirpath).relative_to(self.root)
            if rel.parts and rel.parts[0] in live_jobs:
                dirnames[:] = []
                continue
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                if path in live_paths:
                    continue
                try:
                    if os.path.getmtime(path) < cutoff:
                        bytes_freed += _remove_path(path)
                        files_removed += 1
                except OSError as e:
                    logger.warning("Sweep could not remove %s: %s", path, e)

        self._remove_empty_dirs()
        if files_removed:
            logger.info(
                "Swept %d orphaned files (%.2f MB) older than %.1fh",
                files_removed,
                bytes_freed / (1024 * 1024),
                max_age_seconds / 3600,
            )
        return files_removed, bytes_freed

    def emergency_cleanup(self) -> Tuple[int, int]:
        """Remove everything in the working directory, tracked or not"""
        with self._lock:
            self._records.clear()

        files_removed = 0
        bytes_freed = 0
        if not self.root.is_dir():
            return 0, 0
        for dirpath, _, filenames in os.walk(self.root):
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                try:
                    bytes_freed += _remove_path(path)
                    files_removed += 1
                except OSError as e:
                    logger.warning("Emergency cleanup could not remove %s: %s", path, e)
        for child in self.root.iterdir():
            if child.is_dir():
                shutil.rmtree(child, ignore_errors=True)

        logger.warning(
            "Emergency cleanup removed %d files (%.2f MB) from %s",
            files_removed,
            bytes_freed / (1024 * 1024),
            self.root,
        )
        return files_removed, bytes_freed

    def find_orphaned_files(self) -> List[str]:
        """Files on disk under the root that no record points at"""
        if not self.root.is_dir():
            return []
        with self._lock:
            live_paths = {p for records in self._records.values() for p in records}
        orphans = []
        for dirpath, _, filenames in os.walk(self.root):
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                if path not in live_paths:
                    orphans.append(path)
        return orphans

    def summary(self) -> Dict[str, object]:
        with self._lock:
            snapshot = {job: list(records.values()) for job, records in self._records.items()}

        by_stage: Dict[str, int] = {}
        total_files = 0
        for records in snapshot.values():
            for record in records:
                by_stage[record.stage] = by_stage.get(record.stage, 0) + 1
                total_files += 1
        return {
            "jobs": len(snapshot),
            "files": total_files,
            "bytes": sum(_file_size(r.path) for rs in snapshot.values() for r in rs),
            "by_stage": by_stage,
        }

    def _remove_empty_dirs(self) -> None:
        for child in self.root.iterdir():
            if not child.is_dir():
                continue
            # under the lock so job_dir cannot recreate it mid-removal
            with self._lock:
                if child.name in self._records:
                    continue
                try:
                    # deepest first, only empty directories go
                    for dirpath, _, _ in sorted(os.walk(child), reverse=True):
                        if not os.listdir(dirpath):
                            os.rmdir(dirpath)
                except OSError as e:
                    logger.debug("Left directory %s in place: %s", child, e)
