"""
One crawl cycle: seeds -> domain partition -> parallel domain workers ->
aggregate stats -> stale collection deactivation.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .availability import AvailabilityChecker
from .config import DEFAULT_HEADERS, Settings
from .db_models import utcnow
from .errors import SeedFeedError, StoreConnectivityError
from .http import DomainRateLimiter
from .parallel import (
    aggregate_stats,
    calculate_rate_limits,
    create_domain_batches,
    execute_with_concurrency,
    group_by_domain,
    log_domain_stats,
)
from .seeds import fetch_seed_feed, register_seeds, select_seeds
from .stats import GlobalStatistics
from .store import CatalogStore
from .worker import DomainCrawler

logger = logging.getLogger("stac_crawler.crawler")


@dataclass
class CycleResult:
    success: bool
    stats: Dict[str, int] = field(default_factory=dict)
    elapsed_seconds: float = 0.0
    domains: int = 0
    deactivated: int = 0
    errors: List[str] = field(default_factory=list)


async def run_crawl_cycle(
    settings: Settings,
    store: CatalogStore,
    client: Optional[httpx.AsyncClient] = None,
    stop_event: Optional[asyncio.Event] = None,
    stats: Optional[GlobalStatistics] = None,
) -> CycleResult:
    """
    Run one full crawl against ``store``.

    Raises StoreConnectivityError when the store is unreachable, either at
    start-up or from inside any domain worker. Seed feed failures are reported
    in the result instead.
    """
    start = time.monotonic()
    cycle_started_at = utcnow()
    stats = stats or GlobalStatistics()

    logger.info("=" * 80)
    logger.info("Starting crawl cycle")
    logger.info("=" * 80)

    await store.init()

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(headers=DEFAULT_HEADERS, timeout=settings.timeout_seconds)

    try:
        try:
            raw = await fetch_seed_feed(client, settings.seed_feed_url, timeout=settings.timeout_seconds)
        except SeedFeedError as e:
            logger.error(f"FATAL: {e}")
            return CycleResult(False, aggregate_stats([]), time.monotonic() - start, errors=[str(e)])

        catalogs, apis = select_seeds(raw, settings)
        seeds = await register_seeds(store, catalogs + apis)

        domain_map = group_by_domain(seeds)
        log_domain_stats(group_by_domain(catalogs), "catalogs")
        log_domain_stats(group_by_domain(apis), "APIs")
        batches = create_domain_batches(domain_map)

        rate = calculate_rate_limits(settings.max_requests_per_minute_per_domain, settings.domain_delay)
        checker = AvailabilityChecker.from_settings(client, settings)
        logger.info(
            f"Crawling {len(batches)} domains, {settings.parallel_domains} in parallel, "
            f"min interval {rate['min_interval']:.2f}s per domain"
        )

        def make_task(batch):
            async def task() -> Dict[str, Any]:
                worker = DomainCrawler(
                    batch.domain,
                    batch.entries,
                    store,
                    settings,
                    client,
                    stats=stats,
                    checker=checker,
                    limiter=DomainRateLimiter(rate["min_interval"]),
                    cycle_started_at=cycle_started_at,
                )
                return await worker.run()

            return task

        def on_progress(completed: int, total: int) -> None:
            logger.info(f"Domains completed: {completed}/{total}")

        stats.start(total_domains=len(batches), interval_secs=settings.stats_log_interval)
        try:
            results = await execute_with_concurrency(
                [make_task(batch) for batch in batches],
                settings.parallel_domains,
                on_progress=on_progress,
                stop_event=stop_event,
            )
        finally:
            stats.stop()
    finally:
        if own_client:
            await client.aclose()

    fatal = [r for r in results if isinstance(r, dict) and r.get("fatal")]
    if fatal:
        raise StoreConnectivityError(fatal[0].get("error") or "Catalog Store unreachable")

    errors = [r["error"] for r in results if isinstance(r, dict) and r.get("error")]
    totals = aggregate_stats(results)
    deactivated = await store.deactivate_stale_collections(settings.stale_after_days)
    elapsed = time.monotonic() - start

    logger.info("=" * 80)
    logger.info(f"Crawl cycle finished in {elapsed / 60:.2f} minutes")
    for key, value in totals.items():
        logger.info(f"  {key}: {value}")
    if errors:
        logger.info(f"  domains with errors: {len(errors)}")
    logger.info("=" * 80)

    return CycleResult(
        success=True,
        stats=totals,
        elapsed_seconds=elapsed,
        domains=len(batches),
        deactivated=deactivated,
        errors=errors,
    )
