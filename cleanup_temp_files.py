#!/usr/bin/env python3
"""
Operator cleanup for the worker's temp directory
"""

import argparse
import logging
import sys

from media_processor.config.settings import settings
from media_processor.services.temp_files import TempFileTracker

logging.basicConfig(
    level=logging.INFO, format=settings.log_format, datefmt=settings.log_date_format
)
logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--temp-dir", default=settings.temp_dir)
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--max-age-hours",
        type=float,
        default=settings.temp_retention_hours,
        help="remove files older than this (default: retention setting)",
    )
    group.add_argument(
        "--emergency",
        action="store_true",
        help="remove every file in the temp directory; only with the worker stopped",
    )
    group.add_argument(
        "--summary", action="store_true", help="list files without deleting"
    )
    args = parser.parse_args(argv)

    tracker = TempFileTracker(args.temp_dir)

    if args.summary:
        orphans = tracker.find_orphaned_files()
        print(f"{len(orphans)} files in {args.temp_dir}")
        for path in orphans:
            print(f"  {path}")
        return 0

    if args.emergency:
        files, freed = tracker.emergency_cleanup()
    else:
        files, freed = tracker.sweep_older_than(args.max_age_hours * 3600)

    print(f"Removed {files} files, freed {freed / (1024 * 1024):.2f} MB")
    return 0


if __name__ == "__main__":
    sys.exit(main())
