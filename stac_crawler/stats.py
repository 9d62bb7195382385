"""
Cycle-wide statistics shared by every running domain worker.

One GlobalStatistics object is created per crawl cycle and handed to each
worker. Increments happen on the event loop thread only, so plain ``+=`` is
safe without locks.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from .models import CrawlStats

logger = logging.getLogger("stac_crawler.stats")


class GlobalStatistics:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.interval_secs = 0
        self.reset()

    def reset(self) -> None:
        self.start_time: Optional[float] = None
        self.stats = CrawlStats()
        self.active_domains: Set[str] = set()
        self.completed_domains = 0
        self.total_domains = 0

    def start(self, total_domains: int = 0, interval_secs: int = 0) -> None:
        """Reset counters and optionally log a summary every ``interval_secs``."""
        self._cancel_task()
        self.reset()
        self.start_time = self._clock()
        self.total_domains = total_domains
        self.interval_secs = interval_secs

        if interval_secs and interval_secs > 0:
            self._task = asyncio.get_running_loop().create_task(self._periodic_log())

    def stop(self) -> None:
        self._cancel_task()
        self.log_statistics(final=True)

    def _cancel_task(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _periodic_log(self) -> None:
        while True:
            await asyncio.sleep(self.interval_secs)
            self.log_statistics()

    def domain_started(self, domain: str) -> None:
        self.active_domains.add(domain)

    def domain_completed(self, domain: str) -> None:
        self.active_domains.discard(domain)
        self.completed_domains += 1

    def increment(self, name: str, amount: int = 1) -> None:
        if hasattr(self.stats, name):
            setattr(self.stats, name, getattr(self.stats, name) + amount)

    def runtime_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        return self._clock() - self.start_time

    def requests_per_minute(self) -> int:
        minutes = self.runtime_seconds() / 60.0
        if minutes <= 0:
            return 0
        return round(self.stats.total_requests / minutes)

    def snapshot(self) -> Dict[str, Any]:
        return {
            **self.stats.as_dict(),
            "runtime_seconds": self.runtime_seconds(),
            "requests_per_minute": self.requests_per_minute(),
            "active_domains": len(self.active_domains),
            "completed_domains": self.completed_domains,
            "total_domains": self.total_domains,
        }

    def log_statistics(self, final: bool = False) -> None:
        prefix = "GlobalStatistics: Final" if final else "GlobalStatistics"
        summary = {
            "requests_per_minute": self.requests_per_minute(),
            "requests_total": self.stats.total_requests,
            "requests_successful": self.stats.successful_requests,
            "requests_failed": self.stats.failed_requests,
            "collections_found": self.stats.collections_found,
            "collections_saved": self.stats.collections_saved,
            "domains_active": len(self.active_domains),
            "domains_completed": self.completed_domains,
            "domains_total": self.total_domains,
            "runtime_secs": round(self.runtime_seconds()),
        }
        logger.info(f"{prefix}: {json.dumps(summary)}")
