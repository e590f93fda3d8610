"""
S3ObjectStore: object store client for S3-compatible storage (iDrive e2).

- boto3 calls run in the default thread pool so the event loop never blocks
- Bounded connect/read timeouts from settings
- Downloads stream to disk first and fall back to a buffered get_object read
- Transient failures are retried a fixed number of times at the call site
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, Union

import aiofiles
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from media_processor.core.exceptions import (
    ConfigurationError,
    DownloadError,
    UploadError,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class S3ObjectStore:
    """
    Object store client.

    Example:
        store = S3ObjectStore.from_settings(settings)
        await store.get("uploads/abc.jpg", "/tmp/job/abc.jpg")
        await store.put("/tmp/job/thumb.jpg", "processed/images/1/thumbnail.jpg", "image/jpeg")
    """

    def __init__(
        self,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        region: str = "us-east-1",
        endpoint: Optional[str] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 120.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        if not bucket or not access_key_id or not secret_access_key:
            raise ConfigurationError(
                "Object store credentials are missing: set IDRIVE_ACCESS_KEY_ID, "
                "IDRIVE_SECRET_ACCESS_KEY and IDRIVE_BUCKET_NAME"
            )
        self.bucket = bucket
        self.region = region
        self.endpoint = endpoint or None
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._client = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=self.endpoint,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": 1},
            ),
        )

    @classmethod
    def from_settings(cls, settings) -> "S3ObjectStore":
        return cls(
            bucket=settings.idrive_bucket_name,
            access_key_id=settings.idrive_access_key_id,
            secret_access_key=settings.idrive_secret_access_key,
            region=settings.idrive_region,
            endpoint=settings.idrive_endpoint,
            connect_timeout=settings.storage_connect_timeout,
            read_timeout=settings.storage_read_timeout,
            retry_attempts=settings.storage_retry_attempts,
            retry_delay=settings.storage_retry_delay,
        )

    async def get(self, key: str, destination: Union[str, Path]) -> int:
        """Download ``key`` to ``destination``.

        Raises:
            DownloadError: object missing, or every attempt failed
        """
        destination = str(destination)
        os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
        loop = asyncio.get_running_loop()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                await loop.run_in_executor(
                    None, self._client.download_file, self.bucket, key, destination
                )
                return os.path.getsize(destination)
            except ClientError as e:
                if _is_not_found(e):
                    raise DownloadError(f"Object not found: {key}", key=key) from e
                last_error = e
            except (BotoCoreError, OSError) as e:
                last_error = e

            logger.warning(
                "Streaming download of %s failed (attempt %d/%d): %s; trying buffered read",
                key,
                attempt,
                self.retry_attempts,
                last_error,
            )
            try:
                return await self._get_buffered(key, destination)
            except ClientError as e:
                if _is_not_found(e):
                    raise DownloadError(f"Object not found: {key}", key=key) from e
                last_error = e
            except (BotoCoreError, OSError) as e:
                last_error = e

            if attempt < self.retry_attempts:
                await asyncio.sleep(self.retry_delay * attempt)

        raise DownloadError(
            f"Failed to download {key} after {self.retry_attempts} attempts: {last_error}",
            key=key,
        ) from last_error

    async def _get_buffered(self, key: str, destination: str) -> int:
        loop = asyncio.get_running_loop()

        def read_object() -> bytes:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        data = await loop.run_in_executor(None, read_object)
        async with aiofiles.open(destination, "wb") as f:
            await f.write(data)
        return len(data)

    async def put(
        self, local_path: Union[str, Path], key: str, content_type: str
    ) -> str:
        """Upload a local file under ``key``.

        Raises:
            UploadError: every attempt failed
        """
        local_path = str(local_path)
        loop = asyncio.get_running_loop()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                await loop.run_in_executor(
                    None,
                    lambda: self._client.upload_file(
                        local_path,
                        self.bucket,
                        key,
                        ExtraArgs={"ContentType": content_type},
                    ),
                )
                logger.debug("Uploaded %s to s3://%s/%s", local_path, self.bucket, key)
                return key
            except (ClientError, BotoCoreError, OSError) as e:
                last_error = e
                logger.warning(
                    "Upload of %s failed (attempt %d/%d): %s",
                    key,
                    attempt,
                    self.retry_attempts,
                    e,
                )
                if isinstance(e, FileNotFoundError):
                    break
                if attempt < self.retry_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)

        raise UploadError(f"Failed to upload {key}: {last_error}", key=key) from last_error


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in _NOT_FOUND_CODES
