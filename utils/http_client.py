"""aiohttp JSON fetcher for off-chain price feeds."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)

USER_AGENT = "launchwatch/0.1"


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class FeedStats:
    requests: int = 0
    ok: int = 0
    failed: int = 0
    rate_limited: int = 0
    retries: int = 0


def retry_delay(attempt: int, retry_after: float = 0.0) -> float:
    """Exponential backoff from HTTP_BACKOFF_BASE_SECONDS, capped, plus jitter. Retry-After wins."""
    if retry_after > 0:
        return min(float(config.HTTP_BACKOFF_MAX_SECONDS), retry_after)
    base = float(config.HTTP_BACKOFF_BASE_SECONDS)
    delay = min(float(config.HTTP_BACKOFF_MAX_SECONDS), base * (2 ** max(0, attempt - 1)))
    return delay + random.uniform(0.0, float(config.HTTP_JITTER_SECONDS))


def _retry_after_seconds(response: aiohttp.ClientResponse) -> float:
    raw = str(response.headers.get("Retry-After", "") or "").strip()
    try:
        return max(0.0, float(raw)) if raw else 0.0
    except ValueError:
        return 0.0


class FeedHttpClient:
    """One lazily opened aiohttp session shared by every feed request.

    Requests to a feed are bounded by a semaphore. Status 429 and 5xx and
    network errors are retried up to HTTP_RETRY_ATTEMPTS times. Other
    statuses fail at once. Failures come back as HttpResult, never raised.
    """

    def __init__(self, timeout_seconds: float | None = None, concurrency: int | None = None) -> None:
        timeout = float(config.HTTP_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds)
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, timeout))
        self._limit = max(1, int(config.HTTP_DEFAULT_CONCURRENCY if concurrency is None else concurrency))
        self._semaphore: asyncio.Semaphore | None = None
        self._session: aiohttp.ClientSession | None = None
        self.stats: dict[str, FeedStats] = {}

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _session_for_request(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers={"User-Agent": USER_AGENT})
        return self._session

    async def _fetch_once(self, url: str, params: dict[str, Any] | None) -> tuple[HttpResult, float]:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._limit)
        async with self._semaphore:
            async with self._session_for_request().get(url, params=params) as response:
                status = int(response.status)
                if status == 200:
                    return HttpResult(ok=True, status=status, data=await response.json(content_type=None)), 0.0
                retry_after = _retry_after_seconds(response) if status == 429 else 0.0
                return HttpResult(ok=False, status=status, data=None, error=f"http_{status}"), retry_after

    async def get_json(
        self,
        url: str,
        *,
        source: str = "feed",
        params: dict[str, Any] | None = None,
    ) -> HttpResult:
        stats = self.stats.setdefault(source, FeedStats())
        attempts = max(1, int(config.HTTP_RETRY_ATTEMPTS))
        result = HttpResult(ok=False, status=0, data=None, error="not_attempted")
        for attempt in range(1, attempts + 1):
            stats.requests += 1
            retry_after = 0.0
            try:
                result, retry_after = await self._fetch_once(url, params)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                result = HttpResult(ok=False, status=0, data=None, error=f"{type(exc).__name__}: {exc}")
            if result.ok:
                stats.ok += 1
                return result
            if result.status == 429:
                stats.rate_limited += 1
            retryable = result.status == 0 or result.status == 429 or result.status >= 500
            if not retryable or attempt >= attempts:
                break
            stats.retries += 1
            delay = retry_delay(attempt, retry_after)
            logger.debug("HTTP_RETRY source=%s attempt=%s status=%s delay=%.2fs", source, attempt, result.status, delay)
            await asyncio.sleep(delay)
        stats.failed += 1
        logger.warning("HTTP_FAILED source=%s status=%s error=%s url=%s", source, result.status, result.error, url)
        return result
