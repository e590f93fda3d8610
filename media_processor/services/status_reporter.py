"""
Status reporter: pushes terminal job state to the serving application over HTTP
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


class StatusReporter:
    """PATCH {base_url}/media/{media_id} with the terminal job state.

    Only used when a base URL is configured; the updates queue stays the
    primary channel, so failures here are logged and never propagated.
    """

    def __init__(self, base_url: str, webhook_secret: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def session(self) -> aiohttp.ClientSession:
        """Lazy initialization of the aiohttp session"""
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def report(self, media_id: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False

        url = f"{self.base_url}/media/{media_id}"
        headers = {
            "Content-Type": "application/json",
            "X-Processing-Service": "media-processor",
        }
        if self.webhook_secret:
            headers["X-Webhook-Secret"] = self.webhook_secret

        try:
            session = await self.session()
            async with session.patch(url, json=payload, headers=headers) as response:
                if response.status >= 400:
                    logger.warning(
                        "Status update for media %s returned %d", media_id, response.status
                    )
                    return False
            logger.info("Status update sent for media %s", media_id)
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Failed to send status update for media %s: %s", media_id, e)
            return False
