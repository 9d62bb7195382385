"""
Domain partitioning and bounded-concurrency execution of domain workers.

Seeds are grouped by exact hostname, so subdomains are separate domains with
their own rate limits. Domain tasks then run with at most K in flight; a new
task is admitted as soon as any running one completes.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from .errors import StoreConnectivityError
from .models import CrawlStats, DomainBatch, SeedEntry

logger = logging.getLogger("stac_crawler.parallel")

UNKNOWN_DOMAIN = "unknown"

Task = Callable[[], Awaitable[Any]]
ProgressCallback = Callable[[int, int], None]


def get_domain(url: Any) -> str:
    """Hostname of a URL, or "unknown" when it has none."""
    if not isinstance(url, str):
        return UNKNOWN_DOMAIN
    try:
        hostname = urlparse(url.strip()).hostname
    except ValueError:
        return UNKNOWN_DOMAIN
    return hostname or UNKNOWN_DOMAIN


def group_by_domain(entries: Iterable[SeedEntry]) -> Dict[str, List[SeedEntry]]:
    domain_map: Dict[str, List[SeedEntry]] = {}
    for entry in entries:
        domain_map.setdefault(get_domain(entry.url), []).append(entry)
    return domain_map


def create_domain_batches(domain_map: Dict[str, List[SeedEntry]]) -> List[DomainBatch]:
    return [DomainBatch(domain, list(entries)) for domain, entries in domain_map.items()]


def log_domain_stats(domain_map: Dict[str, List[Any]], item_type: str = "items") -> None:
    """Log the domain count and the ten busiest domains."""
    logger.info(f"=== Domain Distribution for {item_type} ===")
    logger.info(f"Total domains: {len(domain_map)}")

    ranked = sorted(domain_map.items(), key=lambda kv: len(kv[1]), reverse=True)
    for domain, items in ranked[:10]:
        logger.info(f"  {domain}: {len(items)} {item_type}")
    if len(ranked) > 10:
        logger.info(f"  ... and {len(ranked) - 10} more domains")


def calculate_rate_limits(max_requests_per_minute: int = 120, domain_delay: float = 0.0) -> Dict[str, float]:
    """Minimum seconds between request starts to one domain."""
    interval = 60.0 / max_requests_per_minute if max_requests_per_minute > 0 else 0.0
    return {
        "max_requests_per_minute": max_requests_per_minute,
        "min_interval": max(interval, domain_delay),
    }


def error_result(exc: BaseException) -> Dict[str, Any]:
    result: Dict[str, Any] = {"error": str(exc) or type(exc).__name__, "stats": {}}
    if isinstance(exc, StoreConnectivityError):
        result["fatal"] = True
    return result


async def execute_with_concurrency(
    tasks: List[Task],
    concurrency: int,
    on_progress: Optional[ProgressCallback] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> List[Any]:
    """
    Run zero-argument async callables with at most ``concurrency`` in flight.

    Results are index-aligned with ``tasks``. A task that raises gets
    ``{"error": ..., "stats": {}}`` in its slot. Once ``stop_event`` is set no
    further tasks start; slots of tasks never started stay None.
    """
    total = len(tasks)
    results: List[Any] = [None] * total
    if total == 0:
        return results

    limit = max(1, concurrency)
    running: Dict[asyncio.Task, int] = {}
    next_index = 0
    completed = 0

    async def run_one(index: int) -> Any:
        return await tasks[index]()

    def admit() -> None:
        nonlocal next_index
        while len(running) < limit and next_index < total:
            if stop_event is not None and stop_event.is_set():
                return
            running[asyncio.ensure_future(run_one(next_index))] = next_index
            next_index += 1

    admit()
    while running:
        done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
        for fut in done:
            index = running.pop(fut)
            exc = fut.exception()
            if exc is not None:
                logger.error(f"Task {index} failed: {exc}")
                results[index] = error_result(exc)
            else:
                results[index] = fut.result()
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)
        admit()

    if next_index < total:
        logger.info(f"Stop requested: {total - next_index} of {total} tasks were not started")
    return results


def aggregate_stats(results: Iterable[Any]) -> Dict[str, int]:
    """Sum CrawlStats counters across task results, ignoring missing or bad values."""
    totals = CrawlStats()
    for result in results:
        if not isinstance(result, dict) or not isinstance(result.get("stats"), dict):
            continue
        totals.merge(result["stats"])
    return totals.as_dict()
