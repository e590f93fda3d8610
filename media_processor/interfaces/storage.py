"""
Object store interface.
"""

from pathlib import Path
from typing import Protocol, Union, runtime_checkable


@runtime_checkable
class IObjectStore(Protocol):
    """Durable blob storage used by the download and upload stages."""

    async def get(self, key: str, destination: Union[str, Path]) -> int:
        """Fetch an object into a local file.

        Args:
            key: Object key
            destination: Local file path to write

        Returns:
            Number of bytes written
        """

    async def put(
        self, local_path: Union[str, Path], key: str, content_type: str
    ) -> str:
        """Store a local file under ``key`` and return the key."""
