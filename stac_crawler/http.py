"""
HTTP fetching for the crawler: per-domain pacing, retries with exponential
backoff and jitter, and tolerant JSON parsing.

Retried: transport failures (DNS, refused/reset connection, timeout) and 429.
Not retried: every other 4xx/5xx status, and URLs httpx cannot build.
"""

import asyncio
import json
import logging
import random
import time
from typing import Any, Callable, Optional

import httpx

from .errors import HttpStatusError, InvalidUrlError, RateLimitedError, SchemaValidationError, TransportError

logger = logging.getLogger("stac_crawler.http")

DEFAULT_JITTER_FACTOR = 0.5
MAX_RETRY_AFTER_SECONDS = 300.0


class DomainRateLimiter:
    """Spaces request starts to one domain by at least ``min_interval`` seconds."""

    def __init__(self, min_interval: float = 0.0, clock: Callable[[], float] = time.monotonic):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, rpm: int, domain_delay: float = 0.0) -> "DomainRateLimiter":
        interval = 60.0 / rpm if rpm > 0 else 0.0
        return cls(max(interval, domain_delay))

    async def wait(self) -> float:
        """Sleep until this caller may start a request; returns seconds waited."""
        if self.min_interval <= 0:
            return 0.0
        async with self._lock:
            now = self._clock()
            wait_s = max(0.0, self._next_slot - now)
            self._next_slot = max(now, self._next_slot) + self.min_interval
        if wait_s > 0:
            await asyncio.sleep(wait_s)
        return wait_s


def backoff_delay(attempt: int, base: float = 1.0, jitter_factor: float = DEFAULT_JITTER_FACTOR) -> float:
    """base * 2**attempt, scaled by a random factor in [1 - jitter, 1 + jitter]."""
    ideal = base * (2 ** attempt)
    return ideal * random.uniform(1.0 - jitter_factor, 1.0 + jitter_factor)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        # HTTP-date form is not worth parsing here
        return None
    return min(max(seconds, 0.0), MAX_RETRY_AFTER_SECONDS)


def parse_json_body(response: httpx.Response) -> Any:
    """Parse a body as JSON, falling back to a manual parse of the text."""
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        pass

    text = response.content.decode("utf-8", errors="replace").lstrip("\ufeff").strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise SchemaValidationError(f"Invalid JSON from {response.url}: {e}") from e


async def fetch_once(client: httpx.AsyncClient, url: str, timeout: Optional[float] = None) -> Any:
    try:
        response = await client.get(url, timeout=timeout, follow_redirects=True)
    except httpx.InvalidURL as e:
        raise InvalidUrlError(url, f"Invalid URL: {e}") from e
    except httpx.TimeoutException as e:
        raise TransportError(url, f"Timeout: {type(e).__name__}") from e
    except httpx.TransportError as e:
        raise TransportError(url, f"{type(e).__name__}: {e}") from e

    if response.status_code == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        raise RateLimitedError(url, "HTTP 429 Too Many Requests", retry_after=retry_after)
    if response.status_code >= 400:
        raise HttpStatusError(url, f"HTTP {response.status_code}", status_code=response.status_code)

    return parse_json_body(response)


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    limiter: Optional[DomainRateLimiter] = None,
    max_retries: int = 3,
    timeout: Optional[float] = None,
    backoff_base: float = 1.0,
) -> Any:
    """Fetch and decode a JSON document, retrying transient failures."""
    attempt = 0
    while True:
        if limiter is not None:
            await limiter.wait()
        try:
            return await fetch_once(client, url, timeout)
        except (TransportError, RateLimitedError) as e:
            if attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, backoff_base)
            if isinstance(e, RateLimitedError) and e.retry_after is not None:
                logger.warning(f"Rate limited by {url}, Retry-After {e.retry_after:.0f}s")
                delay = max(delay, e.retry_after)
            else:
                logger.debug(f"Retrying {url} in {delay:.1f}s after: {e}")
            attempt += 1
            await asyncio.sleep(delay)
