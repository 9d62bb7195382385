"""
Per-domain crawl worker.

A DomainCrawler owns one domain's request queue, its in-memory collection
batch and its bookkeeping. It fetches with bounded concurrency, dispatches
each body by request label, flushes collections through the availability
checker into the Catalog Store, and spills surplus requests to the durable
Work Queue so a restarted process can pick them up again.
"""

import asyncio
import logging
import re
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

import httpx

from .availability import AvailabilityChecker
from .config import Settings
from .errors import FetchError, RateLimitedError, SchemaValidationError, StoreConnectivityError
from .http import DomainRateLimiter, fetch_json
from .links import child_links, find_collections_endpoint, find_link, next_link, resolve_link
from .models import CrawlRequest, CrawlStats, NormalizedRecord, RequestLabel, SeedEntry, WorkQueueEntry
from .normalization import normalize_catalog, normalize_collection
from .stats import GlobalStatistics
from .store import CATALOG_ENTITY, CatalogStore
from .validation import classify_document, extract_listing, is_listing

logger = logging.getLogger("stac_crawler.worker")

# Every RequestLabel must map to a handler method
HANDLERS: Dict[RequestLabel, str] = {
    RequestLabel.CATALOG: "handle_catalog",
    RequestLabel.API_ROOT: "handle_catalog",
    RequestLabel.COLLECTIONS: "handle_collections",
    RequestLabel.API_COLLECTIONS: "handle_collections",
    RequestLabel.API_COLLECTION: "handle_collection",
}

COLLECTIONS_SUFFIX_RE = re.compile(r"/collections/?$")


def label_for_queue_entry(entry: WorkQueueEntry) -> RequestLabel:
    """Request label of a restored Work Queue entry."""
    if entry.label:
        try:
            return RequestLabel(entry.label)
        except ValueError:
            logger.warning(f"Unknown queue label {entry.label!r} for {entry.source_url}")

    # rows queued without a label: guess from the URL
    path = urlparse(entry.source_url).path.rstrip("/")
    if path.endswith("/collections"):
        return RequestLabel.API_COLLECTIONS if entry.is_api else RequestLabel.COLLECTIONS
    return RequestLabel.API_COLLECTION if entry.is_api else RequestLabel.CATALOG


def seed_request(entry: SeedEntry) -> CrawlRequest:
    return CrawlRequest(
        url=entry.url,
        label=RequestLabel.API_ROOT if entry.is_api else RequestLabel.CATALOG,
        user_data={
            "depth": 0,
            "catalog_id": entry.slug or entry.title or entry.url,
            "catalog_slug": entry.slug,
            "crawl_log_catalog_id": entry.crawl_log_catalog_id,
        },
    )


class DomainCrawler:
    def __init__(
        self,
        domain: str,
        entries: List[SeedEntry],
        store: CatalogStore,
        settings: Settings,
        client: httpx.AsyncClient,
        stats: Optional[GlobalStatistics] = None,
        checker: Optional[AvailabilityChecker] = None,
        limiter: Optional[DomainRateLimiter] = None,
        cycle_started_at: Optional[datetime] = None,
    ):
        self.domain = domain
        self.entries = list(entries)
        self.store = store
        self.settings = settings
        self.client = client
        self.global_stats = stats
        self.checker = checker
        self.limiter = limiter or DomainRateLimiter.from_settings(
            settings.max_requests_per_minute_per_domain, settings.domain_delay
        )
        self.cycle_started_at = cycle_started_at

        self.stats = CrawlStats()
        self.batch: List[NormalizedRecord] = []
        self.processed_catalogs: List[Dict[str, Any]] = []
        self.pending: Deque[CrawlRequest] = deque()
        self.seen: Dict[str, int] = {}
        self.collected: Set[str] = set()
        self.spilled: Set[str] = set()
        self.flush_count = 0

        self.catalog_ids: Set[int] = {e.crawl_log_catalog_id for e in self.entries if e.crawl_log_catalog_id}
        self.touched_catalog_ids: Set[int] = set()
        self.queue_exhausted = not self.catalog_ids

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(self) -> Dict[str, Any]:
        logger.info(f"[{self.domain}] Starting crawl of {len(self.entries)} seed(s)")
        if self.global_stats is not None:
            self.global_stats.domain_started(self.domain)
        try:
            for entry in self.entries:
                if entry.has_pending_queue:
                    logger.info(f"[{self.domain}] Resuming queued work for {entry.url}")
                    continue
                await self.enqueue(seed_request(entry))

            await self.refill_from_queue()
            await self._fetch_loop()
            await self.flush(force=True)
            await self._record_crawl_timestamps()
        finally:
            if self.global_stats is not None:
                self.global_stats.domain_completed(self.domain)

        logger.info(
            f"[{self.domain}] Done: {self.stats.total_requests} requests, "
            f"{self.stats.collections_saved} collections saved, {self.stats.collections_failed} failed"
        )
        return {"domain": self.domain, "stats": self.stats.as_dict()}

    async def _fetch_loop(self) -> None:
        limit = self.settings.max_concurrency_per_domain
        in_flight: Set[asyncio.Future] = set()
        try:
            while self.pending or in_flight:
                while self.pending and len(in_flight) < limit:
                    in_flight.add(asyncio.ensure_future(self.process_request(self.pending.popleft())))
                done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    # Only StoreConnectivityError escapes process_request
                    task.result()
                await self.refill_from_queue()
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    def count(self, name: str, amount: int = 1) -> None:
        setattr(self.stats, name, getattr(self.stats, name) + amount)
        if self.global_stats is not None:
            self.global_stats.increment(name, amount)

    # =========================================================================
    # REQUESTS
    # =========================================================================

    async def enqueue(self, request: CrawlRequest) -> bool:
        """Queue a request once per URL (roots again when shallower); spill to the Work Queue when memory is full."""
        if request.label.is_root and self.settings.max_depth > 0 and request.depth > self.settings.max_depth:
            return False
        previous = self.seen.get(request.url)
        if previous is not None:
            if self.settings.max_depth == 0 or not request.label.is_root or request.depth >= previous:
                return False
            # reached again closer to the root: keep the shallower depth
            self.seen[request.url] = request.depth
            queued = next((r for r in self.pending if r.url == request.url), None)
            if queued is not None:
                queued.user_data["depth"] = request.depth
                return False
            if request.url in self.spilled:
                await self.store.enqueue_collection_url(
                    request.url, request.crawl_log_catalog_id, request.depth, label=request.label.value
                )
                return False
            logger.debug(f"[{self.domain}] Re-queueing {request.url} at depth {request.depth} (was {previous})")
        self.seen[request.url] = request.depth

        if len(self.pending) >= self.settings.queue_target and request.crawl_log_catalog_id is not None:
            await self.store.enqueue_collection_url(
                request.url, request.crawl_log_catalog_id, request.depth, label=request.label.value
            )
            self.spilled.add(request.url)
            self.catalog_ids.add(request.crawl_log_catalog_id)
            self.queue_exhausted = False
            return True

        self.pending.append(request)
        return True

    async def refill_from_queue(self) -> int:
        """Pull Work Queue entries into memory when pending work runs low."""
        pending = len(self.pending)
        if self.queue_exhausted or pending > self.settings.queue_low_watermark:
            return 0

        limit = min(self.settings.queue_claim_batch_size, self.settings.queue_target - pending)
        if limit <= 0:
            return 0

        claimed = await self.store.claim_collection_queue_batch(
            limit, crawl_log_catalog_ids=sorted(self.catalog_ids)
        )
        if len(claimed) < limit:
            self.queue_exhausted = True

        slugs = {e.crawl_log_catalog_id: e.slug for e in self.entries}
        for entry in claimed:
            self.seen[entry.source_url] = entry.depth
            self.spilled.discard(entry.source_url)
            self.pending.append(
                CrawlRequest(
                    url=entry.source_url,
                    label=label_for_queue_entry(entry),
                    user_data={
                        "depth": entry.depth,
                        "catalog_id": entry.slug or entry.source_url,
                        "catalog_slug": entry.slug or slugs.get(entry.crawl_log_catalog_id),
                        "crawl_log_catalog_id": entry.crawl_log_catalog_id,
                    },
                )
            )
        if claimed:
            logger.info(f"[{self.domain}] Refilled {len(claimed)} request(s) from the work queue")
        return len(claimed)

    async def process_request(self, request: CrawlRequest) -> None:
        self.count("total_requests")
        try:
            body = await fetch_json(
                self.client,
                request.url,
                limiter=self.limiter,
                max_retries=self.settings.max_retries,
                timeout=self.settings.timeout_seconds,
                backoff_base=self.settings.retry_backoff_base,
            )
        except SchemaValidationError as e:
            self._schema_failure(request, str(e))
            return
        except RateLimitedError as e:
            hint = f" (Retry-After {e.retry_after:.0f}s)" if e.retry_after is not None else ""
            logger.warning(f"[{self.domain}] Rate limited, giving up on {request.url}{hint}")
            self.count("failed_requests")
            return
        except FetchError as e:
            logger.warning(f"[{self.domain}] Request failed for {request.url}: {e}")
            self.count("failed_requests")
            return

        handler: Callable[[CrawlRequest, Any], Awaitable[None]] = getattr(self, HANDLERS[request.label])
        try:
            await handler(request, body)
        except SchemaValidationError as e:
            self._schema_failure(request, str(e))
            return
        except StoreConnectivityError:
            raise
        except Exception as e:
            logger.exception(f"[{self.domain}] Handler error for {request.url}: {e}")
            self.count("failed_requests")
            return

        self.count("successful_requests")
        await self.check_and_flush()

    def _schema_failure(self, request: CrawlRequest, reason: str) -> None:
        logger.info(f"[{self.domain}] Non-compliant STAC at {request.url}: {reason}")
        self.count("non_compliant")
        self.count("failed_requests")

    async def _store_call(self, description: str, coro: Awaitable[Any]) -> Any:
        """Best-effort bookkeeping call; only connectivity failures propagate."""
        try:
            return await coro
        except StoreConnectivityError:
            raise
        except Exception as e:
            logger.warning(f"[{self.domain}] Failed to {description}: {e}")
            return None

    # =========================================================================
    # HANDLERS
    # =========================================================================

    async def handle_catalog(self, request: CrawlRequest, body: Any) -> None:
        doc = classify_document(body)
        if not doc.is_valid:
            raise SchemaValidationError(doc.reason)

        self.count("stac_compliant")
        self.count("apis_processed" if request.label.is_api else "catalogs_processed")
        if doc.is_collection:
            self.processed_catalogs.append({"id": request.catalog_id, "depth": request.depth})
        else:
            catalog = normalize_catalog(doc.data, request.url)
            self.processed_catalogs.append(
                {
                    "id": request.catalog_id,
                    "depth": request.depth,
                    "stac_id": None if catalog.id_is_placeholder else catalog.id,
                    "title": catalog.title,
                    "source_url": catalog.source_url,
                }
            )
            logger.debug(f"[{self.domain}] Catalog {catalog.id} - {catalog.title} at depth {request.depth}")
        if request.crawl_log_catalog_id:
            self.touched_catalog_ids.add(request.crawl_log_catalog_id)

        if doc.is_collection:
            await self._collect(doc.data, request.url, request)
        else:
            collections_url = find_collections_endpoint(doc.data, request.url)
            listing_label = RequestLabel.API_COLLECTIONS if request.label.is_api else RequestLabel.COLLECTIONS
            await self.enqueue(CrawlRequest(collections_url, listing_label, dict(request.user_data)))

        await self._enqueue_children(request, doc.data)
        await self._store_call("remove URL from queue", self.store.remove_from_collection_queue(request.url))

    async def _enqueue_children(self, request: CrawlRequest, data: Dict[str, Any]) -> None:
        children = child_links(data, is_api=request.label.is_api)
        if not children:
            return

        max_depth = self.settings.max_depth
        if max_depth > 0 and request.depth >= max_depth:
            logger.info(f"[{self.domain}] Max depth ({max_depth}) reached, skipping {len(children)} child catalogs")
            return

        root_label = RequestLabel.API_ROOT if request.label.is_api else RequestLabel.CATALOG
        queued = 0
        for index, link in enumerate(children):
            url = resolve_link(link.get("href"), request.url)
            if not url:
                continue
            title = link.get("title") if isinstance(link.get("title"), str) and link.get("title") else f"child-{index}"
            child = CrawlRequest(
                url,
                root_label,
                {
                    "depth": request.depth + 1,
                    "catalog_id": title,
                    "parent_id": request.catalog_id,
                    "catalog_slug": request.catalog_slug,
                    "crawl_log_catalog_id": request.crawl_log_catalog_id,
                },
            )
            if await self.enqueue(child):
                queued += 1
        logger.info(f"[{self.domain}] Queued {queued}/{len(children)} child catalogs of {request.catalog_id}")

    async def handle_collections(self, request: CrawlRequest, body: Any) -> None:
        members = extract_listing(body)
        if not members and not is_listing(body):
            doc = classify_document(body)
            raise SchemaValidationError(doc.reason or "Not a collections listing")

        self.count("stac_compliant")
        base_url = COLLECTIONS_SUFFIX_RE.sub("", request.url.split("?")[0])
        found = 0
        for member in members:
            doc = classify_document(member)
            if not doc.is_collection:
                self.count("non_compliant")
                continue
            if await self._collect(doc.data, self._member_url(doc.data, base_url, request.url), request):
                found += 1
        logger.info(f"[{self.domain}] Found {found} collections at {request.url}")

        if isinstance(body, dict):
            following = next_link(body, request.url)
            if following:
                await self.enqueue(CrawlRequest(following, request.label, dict(request.user_data)))

        await self._store_call("remove URL from queue", self.store.remove_from_collection_queue(request.url))

    @staticmethod
    def _member_url(data: Dict[str, Any], base_url: str, listing_url: str) -> str:
        self_link = find_link(data, ("self",))
        if self_link:
            url = resolve_link(self_link.get("href"), listing_url)
            if url:
                return url
        return f"{base_url}/collections/{data.get('id')}"

    async def handle_collection(self, request: CrawlRequest, body: Any) -> None:
        doc = classify_document(body)
        if not doc.is_valid:
            raise SchemaValidationError(doc.reason)
        if doc.is_catalog:
            # Restored API queue entries may point at nested catalogs
            await self.handle_catalog(request, body)
            return
        self.count("stac_compliant")
        await self._collect(doc.data, request.url, request)

    # =========================================================================
    # BATCHING
    # =========================================================================

    async def _collect(self, data: Dict[str, Any], crawled_url: str, request: CrawlRequest) -> bool:
        if request.crawl_log_catalog_id:
            self.touched_catalog_ids.add(request.crawl_log_catalog_id)

        if crawled_url in self.collected:
            return False
        self.collected.add(crawled_url)

        if self.cycle_started_at is not None and await self.store.is_collection_url_crawled(
            crawled_url, since=self.cycle_started_at
        ):
            logger.info(f"[{self.domain}] Skipping already-crawled collection: {crawled_url}")
            return False

        record = normalize_collection(
            data,
            crawled_url=crawled_url,
            source_slug=request.catalog_slug,
            crawl_log_catalog_id=request.crawl_log_catalog_id,
            is_api=request.label.is_api,
        )
        self.batch.append(record)
        self.count("collections_found")
        logger.debug(f"[{self.domain}] Extracted collection: {record.id} - {record.title}")
        await self.check_and_flush()
        return True

    async def check_and_flush(self) -> None:
        if len(self.batch) >= self.settings.flush_batch_size:
            await self.flush()

        if len(self.processed_catalogs) >= self.settings.metadata_clear_batch_size:
            logger.debug(f"[{self.domain}] Clearing {len(self.processed_catalogs)} catalogs from memory")
            self.processed_catalogs.clear()

    async def flush(self, force: bool = False) -> Tuple[int, int]:
        """Persist the batch; returns (saved, failed)."""
        if not self.batch:
            return 0, 0
        if not force and len(self.batch) < self.settings.flush_batch_size:
            return 0, 0

        outgoing, self.batch = self.batch, []
        self.flush_count += 1
        logger.info(f"[{self.domain}] [BATCH] Flushing {len(outgoing)} collections to database...")

        availability = {}
        if self.checker is not None:
            availability = await self.checker.check_many(record.source_url for record in outgoing)

        saved = failed = 0
        for record in outgoing:
            result = availability.get(record.source_url)
            is_active = result.available if result is not None else True
            try:
                await self.store.upsert_collection(record, is_active)
                saved += 1
            except StoreConnectivityError:
                raise
            except Exception as e:
                logger.warning(f"[{self.domain}] [BATCH] Failed to save collection {record.id}: {e}")
                failed += 1

        self.count("collections_saved", saved)
        self.count("collections_failed", failed)
        logger.info(f"[{self.domain}] [BATCH] Saved {saved} collections, {failed} failed")
        return saved, failed

    async def _record_crawl_timestamps(self) -> None:
        seeded = {e.crawl_log_catalog_id for e in self.entries if e.crawl_log_catalog_id}
        for catalog_id in sorted(self.touched_catalog_ids | seeded):
            await self._store_call(
                "mark catalog as crawled", self.store.record_crawl_timestamp(catalog_id, CATALOG_ENTITY)
            )
