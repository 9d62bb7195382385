"""
Normalization of STAC documents and seed feed entries.

Collections arrive in two shapes: STAC 1.x (``extent.spatial.bbox`` and
``extent.temporal.interval`` are lists of lists) and the legacy pre-1.0 shape
(``extent.spatial`` is a flat bbox, ``extent.temporal`` a flat pair). Both are
turned into one NormalizedRecord.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from .links import declared_source_url, get_links
from .models import PLACEHOLDER_ID, DocumentKind, NormalizedRecord, SeedEntry


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_bbox(value: Any) -> Optional[List[float]]:
    if isinstance(value, list) and len(value) in (4, 6) and all(_is_number(v) for v in value):
        return list(value)
    return None


def extract_bbox(data: Dict[str, Any]) -> Optional[List[float]]:
    """First bbox of the spatial extent, in either shape."""
    extent = data.get("extent") or {}
    spatial = extent.get("spatial") if isinstance(extent, dict) else None

    if isinstance(spatial, dict):
        bbox = spatial.get("bbox")
        if isinstance(bbox, list) and bbox and isinstance(bbox[0], list):
            return _as_bbox(bbox[0])
        return _as_bbox(bbox)

    # legacy: extent.spatial is the bbox itself
    return _as_bbox(spatial)


def _as_interval(value: Any) -> Optional[Tuple[Optional[str], Optional[str]]]:
    if isinstance(value, list) and len(value) == 2 and all(v is None or isinstance(v, str) for v in value):
        return value[0], value[1]
    return None


def extract_temporal_interval(data: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    extent = data.get("extent") or {}
    temporal = extent.get("temporal") if isinstance(extent, dict) else None

    if isinstance(temporal, dict):
        interval = temporal.get("interval")
        if isinstance(interval, list) and interval and isinstance(interval[0], list):
            return _as_interval(interval[0]) or (None, None)
        return _as_interval(interval) or (None, None)

    return _as_interval(temporal) or (None, None)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


def normalize_collection(
    data: Dict[str, Any],
    crawled_url: Optional[str] = None,
    source_slug: Optional[str] = None,
    crawl_log_catalog_id: Optional[int] = None,
    is_api: bool = False,
) -> NormalizedRecord:
    """Build the persisted form of a STAC Collection."""
    raw_id = data.get("id")
    has_id = isinstance(raw_id, (str, int)) and str(raw_id) != ""
    links = get_links(data)
    providers = [p for p in data.get("providers") or [] if isinstance(p, dict)]
    assets = data.get("assets") if isinstance(data.get("assets"), dict) else {}
    summaries = data.get("summaries") if isinstance(data.get("summaries"), dict) else {}

    return NormalizedRecord(
        kind=DocumentKind.COLLECTION,
        id=str(raw_id) if has_id else PLACEHOLDER_ID,
        id_is_placeholder=not has_id,
        title=data.get("title") or None,
        description=data.get("description") or data.get("summary") or None,
        license=data.get("license") or None,
        stac_version=data.get("stac_version"),
        keywords=_string_list(data.get("keywords")),
        stac_extensions=_string_list(data.get("stac_extensions")),
        providers=providers,
        assets=assets,
        summaries=summaries,
        links=links,
        bbox=extract_bbox(data),
        temporal_interval=extract_temporal_interval(data),
        source_url=declared_source_url(links, crawled_url),
        source_slug=source_slug,
        crawled_url=crawled_url,
        crawl_log_catalog_id=crawl_log_catalog_id,
        is_api=is_api,
        raw=data,
    )


def normalize_catalog(data: Dict[str, Any], crawled_url: Optional[str] = None) -> NormalizedRecord:
    """Traversal-only record for a Catalog; never persisted."""
    raw_id = data.get("id")
    links = get_links(data)
    return NormalizedRecord(
        kind=DocumentKind.CATALOG,
        id=str(raw_id) if raw_id else PLACEHOLDER_ID,
        id_is_placeholder=not raw_id,
        title=data.get("title") or None,
        description=data.get("description") or None,
        stac_version=data.get("stac_version"),
        keywords=_string_list(data.get("keywords")),
        stac_extensions=_string_list(data.get("stac_extensions")),
        links=links,
        source_url=declared_source_url(links, crawled_url),
        crawled_url=crawled_url,
    )


def stac_key(record: NormalizedRecord) -> Optional[str]:
    """Stable external id: {source_slug}_{id}, unique across sources."""
    if record.id_is_placeholder:
        return None
    if record.source_slug:
        return f"{record.source_slug}_{record.id}"
    return record.id


def classify_summary(value: Any) -> Dict[str, Any]:
    """Split a summary value into range, set, schema or plain value."""
    if isinstance(value, list):
        if len(value) == 2 and all(_is_number(v) for v in value):
            return {"kind": "range", "range_min": value[0], "range_max": value[1]}
        return {"kind": "set", "set_value": json.dumps(value)}
    if isinstance(value, dict):
        if _is_number(value.get("minimum")) and _is_number(value.get("maximum")):
            return {"kind": "range", "range_min": value["minimum"], "range_max": value["maximum"]}
        return {"kind": "schema", "json_schema": json.dumps(value)}
    return {"kind": "value", "set_value": str(value)}


def derive_categories(entry: Dict[str, Any]) -> List[str]:
    """Categories of a feed entry, falling back to keywords, tags, then access."""
    if not isinstance(entry, dict):
        return []
    for key in ("categories", "keywords", "tags"):
        if isinstance(entry.get(key), list):
            return [str(v) for v in entry[key] if v]
    access = entry.get("access")
    if isinstance(access, str) and access.strip():
        return [access.strip()]
    return []


def normalize_seed_entry(entry: Dict[str, Any]) -> Optional[SeedEntry]:
    """Shape a raw feed entry into a SeedEntry; None when it has no URL."""
    url = entry.get("url") if isinstance(entry, dict) else None
    if not isinstance(url, str) or not url.strip():
        return None
    slug = entry.get("slug") or entry.get("id")
    return SeedEntry(
        url=url.strip(),
        title=entry.get("title") or str(slug or url),
        slug=str(slug) if slug is not None else None,
        is_api=bool(entry.get("isApi")),
        summary=entry.get("summary"),
        categories=tuple(derive_categories(entry)),
        is_private=bool(entry.get("isPrivate", False)),
    )
