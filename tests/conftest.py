import os
from typing import Any, Callable, Dict, List, Optional, Sequence

# Keep tests offline and quiet before any settings are built
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./stac_crawler_test.db")
os.environ.setdefault("STATS_LOG_INTERVAL", "0")

import httpx
import pytest

from stac_crawler.config import Settings
from stac_crawler.db_models import utcnow
from stac_crawler.errors import CatalogStoreError, StoreConnectivityError
from stac_crawler.models import NormalizedRecord, WorkQueueEntry
from stac_crawler.normalization import stac_key
from stac_crawler.store import CatalogStore


class FakeCatalogStore(CatalogStore):
    """In-memory Catalog Store for worker and cycle tests."""

    def __init__(self):
        self.collections: Dict[Any, Dict[str, Any]] = {}
        self.upsert_calls: List[NormalizedRecord] = []
        self.queue: List[WorkQueueEntry] = []
        self.catalogs: Dict[str, Dict[str, Any]] = {}
        self.timestamps: List[tuple] = []
        self.removed: List[str] = []
        self.fail_ids = set()
        self.connectivity_down = False
        self.deactivate_calls = 0
        self.initialized = False

    def _check(self):
        if self.connectivity_down:
            raise StoreConnectivityError("connection refused")

    async def init(self):
        self._check()
        self.initialized = True

    async def upsert_collection(self, record, is_active=True):
        self._check()
        self.upsert_calls.append(record)
        if record.id in self.fail_ids:
            raise CatalogStoreError(f"cannot save {record.id}")
        key = stac_key(record) or (record.display_title, record.source_url)
        existing = self.collections.get(key)
        collection_id = existing["id"] if existing else len(self.collections) + 1
        self.collections[key] = {
            "id": collection_id,
            "record": record,
            "is_active": is_active,
            "crawled_at": utcnow(),
        }
        self.queue = [e for e in self.queue if e.source_url not in (record.crawled_url, record.source_url)]
        return collection_id

    async def enqueue_collection_url(self, source_url, crawl_log_catalog_id=None, depth=0, label=None):
        self._check()
        existing = next((e for e in self.queue if e.source_url == source_url), None)
        if existing is not None:
            existing.depth = min(existing.depth, depth)
            existing.label = label or existing.label
            return
        slug = next((c["slug"] for c in self.catalogs.values() if c["id"] == crawl_log_catalog_id), None)
        is_api = next((c["is_api"] for c in self.catalogs.values() if c["id"] == crawl_log_catalog_id), False)
        self.queue.append(WorkQueueEntry(source_url, slug, crawl_log_catalog_id, is_api, depth, label=label))

    async def claim_collection_queue_batch(self, limit, is_api=None, crawl_log_catalog_ids=None):
        self._check()
        matching = [
            e
            for e in self.queue
            if (is_api is None or e.is_api == is_api)
            and (not crawl_log_catalog_ids or e.crawl_log_catalog_id in crawl_log_catalog_ids)
        ][:limit]
        self.queue = [e for e in self.queue if e not in matching]
        return matching

    async def remove_from_collection_queue(self, source_url):
        self._check()
        before = len(self.queue)
        self.queue = [e for e in self.queue if e.source_url != source_url]
        self.removed.append(source_url)
        return before - len(self.queue)

    async def deactivate_stale_collections(self, days=7):
        self._check()
        self.deactivate_calls += 1
        return 0

    async def record_crawl_timestamp(self, entity_id, kind="catalog"):
        self._check()
        self.timestamps.append((entity_id, kind))

    async def save_crawl_log_catalog(self, slug, source_url, is_api=False):
        self._check()
        if source_url not in self.catalogs:
            self.catalogs[source_url] = {"id": len(self.catalogs) + 1, "slug": slug, "is_api": is_api}
        return self.catalogs[source_url]["id"]

    async def get_catalog_ids_with_pending_queue(self, is_api=None):
        self._check()
        return sorted({e.crawl_log_catalog_id for e in self.queue if e.crawl_log_catalog_id})

    async def is_collection_url_crawled(self, source_url, since=None):
        self._check()
        for entry in self.collections.values():
            record = entry["record"]
            if source_url in (record.crawled_url, record.source_url):
                if since is None or entry["crawled_at"] >= since:
                    return True
        return False

    def records(self) -> List[NormalizedRecord]:
        return [entry["record"] for entry in self.collections.values()]


def make_client(
    routes: Dict[str, Any],
    head_statuses: Optional[Dict[str, int]] = None,
    calls: Optional[List[tuple]] = None,
) -> httpx.AsyncClient:
    """AsyncClient answering GETs from ``routes`` and HEADs from ``head_statuses``."""

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if calls is not None:
            calls.append((request.method, url))
        if request.method == "HEAD":
            return httpx.Response((head_statuses or {}).get(url, 200))
        value = routes.get(url)
        if value is None:
            return httpx.Response(404, json={"detail": "not found"})
        if isinstance(value, httpx.Response):
            return value
        if callable(value):
            return value(request)
        return httpx.Response(200, json=value)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def collection_doc(collection_id: str, self_href: Optional[str] = None, **extra) -> Dict[str, Any]:
    doc = {
        "type": "Collection",
        "stac_version": "1.0.0",
        "id": collection_id,
        "title": f"Collection {collection_id}",
        "description": f"Test collection {collection_id}",
        "license": "CC-BY-4.0",
        "extent": {
            "spatial": {"bbox": [[-180.0, -90.0, 180.0, 90.0]]},
            "temporal": {"interval": [["2020-01-01T00:00:00Z", None]]},
        },
        "links": [],
    }
    if self_href:
        doc["links"].append({"rel": "self", "href": self_href})
    doc.update(extra)
    return doc


def catalog_doc(catalog_id: str, links: Sequence[Dict[str, Any]] = ()) -> Dict[str, Any]:
    return {
        "type": "Catalog",
        "stac_version": "1.0.0",
        "id": catalog_id,
        "description": f"Catalog {catalog_id}",
        "links": list(links),
    }


@pytest.fixture
def fake_store() -> FakeCatalogStore:
    return FakeCatalogStore()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """Settings with no pacing, no retries and no periodic logging unless overridden."""

    def build(**overrides) -> Settings:
        values = {
            "max_requests_per_minute_per_domain": 0,
            "max_retries": 0,
            "retry_backoff_base": 0.0,
            "availability_retry_backoff": 0.0,
            "stats_log_interval": 0,
            "database_url": "sqlite+aiosqlite:///:memory:",
        }
        values.update(overrides)
        return Settings(**values)

    return build


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}"
