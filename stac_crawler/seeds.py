"""Seed feed: the STAC Index listing of public catalogs and APIs."""

import dataclasses
import logging
from typing import Any, Dict, List, Tuple

import httpx

from .config import DEFAULT_HEADERS, Settings
from .errors import SeedFeedError
from .models import SeedEntry
from .normalization import normalize_seed_entry
from .store import CatalogStore

logger = logging.getLogger("stac_crawler.seeds")

# Catalogs known to be unreachable or not crawlable, skipped by slug
MANUAL_OVERRIDES = {
    "astraea-earth-ondemand": {"strategy": "Skip"},
    "bdc-cbers": {"strategy": "Skip"},
    "bdc-sentinel-2": {"strategy": "Skip"},
    "catalonia-monthly-sentinel2": {"strategy": "Skip"},
    "cbers": {"strategy": "Skip"},
    "disasters-charter-mapper-catalog": {"strategy": "Skip"},
    "kagis-katalog": {"strategy": "Skip"},
    "kyfromabove": {"strategy": "Skip"},
    "gistda-drought-index-in-thailand": {"strategy": "Skip"},
    "gistda-flood-disaster-in-thailand": {"strategy": "Skip"},
    "geoplatform-stac-catalog": {"strategy": "Skip"},
    "openaerialmap-example": {"strategy": "Skip"},
    "satellite-vu-public-static-stac": {"strategy": "Skip"},
    "skyserve-mission-data": {"strategy": "Skip"},
    "swiss-data-cube-p": {"strategy": "Skip"},
}


def is_skipped(slug: Any) -> bool:
    return MANUAL_OVERRIDES.get(slug, {}).get("strategy") == "Skip"


async def fetch_seed_feed(client: httpx.AsyncClient, url: str, timeout: float = 30.0) -> List[Dict[str, Any]]:
    """Download the raw seed listing."""
    try:
        resp = await client.get(url, timeout=timeout, headers=DEFAULT_HEADERS, follow_redirects=True)
        resp.raise_for_status()
        catalogs = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise SeedFeedError(f"Could not fetch catalog list from {url}: {e}") from e

    if not isinstance(catalogs, list):
        raise SeedFeedError(f"Expected a JSON array from {url}, got {type(catalogs).__name__}")
    return catalogs


def select_seeds(raw: List[Dict[str, Any]], settings: Settings) -> Tuple[List[SeedEntry], List[SeedEntry]]:
    """Split the feed into (catalogs, apis) after filtering and limits."""
    catalogs: List[SeedEntry] = []
    apis: List[SeedEntry] = []
    skipped = 0

    for item in raw:
        entry = normalize_seed_entry(item)
        if entry is None or entry.is_private:
            continue
        if is_skipped(entry.slug):
            skipped += 1
            continue
        (apis if entry.is_api else catalogs).append(entry)

    if skipped:
        logger.info(f"Skipped {skipped} catalog(s) due to manual override")

    if not settings.crawl_catalogs:
        catalogs = []
    elif settings.max_catalogs > 0:
        catalogs = catalogs[: settings.max_catalogs]

    if not settings.crawl_apis:
        apis = []
    elif settings.max_apis > 0:
        apis = apis[: settings.max_apis]

    logger.info(f"--> Selected {len(catalogs)} catalogs and {len(apis)} APIs (mode: {settings.crawl_mode})")
    return catalogs, apis


async def register_seeds(store: CatalogStore, seeds: List[SeedEntry]) -> List[SeedEntry]:
    """Record each seed in the crawl log and flag seeds with queued work left."""
    pending_ids = set(await store.get_catalog_ids_with_pending_queue())
    registered = []
    for entry in seeds:
        catalog_id = await store.save_crawl_log_catalog(entry.slug, entry.url, entry.is_api)
        registered.append(
            dataclasses.replace(
                entry,
                crawl_log_catalog_id=catalog_id,
                has_pending_queue=catalog_id in pending_ids,
            )
        )
    if pending_ids:
        logger.info(f"{len(pending_ids)} catalog(s) have pending work queue entries to resume")
    return registered
