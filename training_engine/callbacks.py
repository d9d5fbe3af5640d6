"""
Training Engine - Completion Callbacks.

============================================================
PURPOSE
============================================================
Best-effort HTTP POST of a finished job to the callback URL
given at submission.

- A failed callback is logged and never changes the job
- One shared aiohttp session, created lazily

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp


logger = logging.getLogger(__name__)


class CallbackDispatcher:
    """Posts job payloads to callback URLs."""

    def __init__(self, timeout_seconds: float = 10.0, enabled: bool = True):
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._enabled = enabled
        self._session: Optional[aiohttp.ClientSession] = None
        self._sent = 0
        self._failed = 0

    @property
    def stats(self) -> Dict[str, int]:
        return {"sent": self._sent, "failed": self._failed}

    async def dispatch(self, url: str, payload: Dict[str, Any]) -> bool:
        """
        POST payload as JSON.

        Returns:
            Whether the endpoint answered with a 2xx status
        """
        if not self._enabled:
            logger.debug(f"Callbacks disabled, skipping {url}")
            return False

        try:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self._timeout)

            async with self._session.post(url, json=payload) as response:
                if 200 <= response.status < 300:
                    self._sent += 1
                    logger.info(f"Callback delivered to {url} ({response.status})")
                    return True

                body = await response.text()
                self._failed += 1
                logger.error(f"Callback to {url} failed with {response.status}: {body[:200]}")
                return False

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._failed += 1
            logger.error(f"Callback to {url} failed: {type(e).__name__}: {e}")
            return False

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None


__all__ = ["CallbackDispatcher"]
