"""Liveness checks for collection source URLs."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import httpx

logger = logging.getLogger("stac_crawler.availability")

# Authoritative "gone" answers, never retried
GONE_STATUSES = (403, 404, 410)
# Servers that refuse HEAD get a one-byte GET instead
HEAD_UNSUPPORTED_STATUSES = (405, 501)


@dataclass
class AvailabilityResult:
    available: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class AvailabilityChecker:
    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 5.0,
        retry_count: int = 1,
        retry_backoff: float = 2.0,
        concurrency: int = 15,
    ):
        self.client = client
        self.timeout = timeout
        self.retry_count = retry_count
        self.retry_backoff = retry_backoff
        self.concurrency = max(1, concurrency)

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings) -> "AvailabilityChecker":
        return cls(
            client,
            timeout=settings.availability_timeout,
            retry_count=settings.availability_retry_count,
            retry_backoff=settings.availability_retry_backoff,
            concurrency=settings.availability_concurrency,
        )

    async def _ping(self, url: str) -> AvailabilityResult:
        try:
            response = await self.client.head(url, timeout=self.timeout, follow_redirects=True)
            if response.status_code in HEAD_UNSUPPORTED_STATUSES:
                response = await self.client.get(
                    url,
                    timeout=self.timeout,
                    follow_redirects=True,
                    headers={"Range": "bytes=0-0"},
                )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return AvailabilityResult(False, None, f"{type(e).__name__}: {e}")

        status = response.status_code
        if 200 <= status < 400:
            return AvailabilityResult(True, status)
        return AvailabilityResult(False, status, f"HTTP {status}")

    async def check(self, url: Optional[str]) -> AvailabilityResult:
        """Check one URL, retrying transient failures ``retry_count`` times."""
        if not url:
            return AvailabilityResult(True, None, "no source url")

        result = await self._ping(url)
        attempts = 0
        while not result.available and result.status_code not in GONE_STATUSES and attempts < self.retry_count:
            attempts += 1
            logger.debug(f"Availability check for {url} failed ({result.error}), retrying in {self.retry_backoff}s")
            await asyncio.sleep(self.retry_backoff)
            result = await self._ping(url)

        if not result.available:
            logger.info(f"Source unavailable: {url} ({result.error})")
        return result

    async def check_many(self, urls: Iterable[Optional[str]]) -> Dict[Optional[str], AvailabilityResult]:
        """
        Check distinct URLs with at most ``concurrency`` requests in flight.

        A check that raises marks only its own URL unavailable.
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        unique = list(dict.fromkeys(urls))

        async def bounded(url: Optional[str]) -> AvailabilityResult:
            async with semaphore:
                return await self.check(url)

        outcomes = await asyncio.gather(*(bounded(url) for url in unique), return_exceptions=True)

        results: Dict[Optional[str], AvailabilityResult] = {}
        for url, outcome in zip(unique, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.warning(f"Availability check for {url} raised {type(outcome).__name__}: {outcome}")
                outcome = AvailabilityResult(False, None, f"{type(outcome).__name__}: {outcome}")
            results[url] = outcome
        return results
