"""
Core data types shared by the crawl engine.

Seeds come from the catalog feed, requests flow through a domain worker's
queue, and normalized records are what ends up in the Catalog Store.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

PLACEHOLDER_ID = "Unknown"


class RequestLabel(str, Enum):
    """Which handler processes a fetched body."""

    CATALOG = "CATALOG"
    COLLECTIONS = "COLLECTIONS"
    API_ROOT = "API_ROOT"
    API_COLLECTIONS = "API_COLLECTIONS"
    API_COLLECTION = "API_COLLECTION"

    @property
    def is_root(self) -> bool:
        return self in (RequestLabel.CATALOG, RequestLabel.API_ROOT)

    @property
    def is_api(self) -> bool:
        return self in (
            RequestLabel.API_ROOT,
            RequestLabel.API_COLLECTIONS,
            RequestLabel.API_COLLECTION,
        )


class DocumentKind(str, Enum):
    CATALOG = "Catalog"
    COLLECTION = "Collection"
    INVALID = "Invalid"


@dataclass(frozen=True)
class SeedEntry:
    """An initial crawl target from the catalog feed."""

    url: str
    title: str = ""
    slug: Optional[str] = None
    is_api: bool = False
    summary: Optional[str] = None
    categories: Tuple[str, ...] = ()
    is_private: bool = False
    crawl_log_catalog_id: Optional[int] = None
    has_pending_queue: bool = False


@dataclass
class CrawlRequest:
    url: str
    label: RequestLabel
    user_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def depth(self) -> int:
        return int(self.user_data.get("depth") or 0)

    @property
    def catalog_id(self) -> str:
        return self.user_data.get("catalog_id") or "unknown"

    @property
    def catalog_slug(self) -> Optional[str]:
        return self.user_data.get("catalog_slug")

    @property
    def crawl_log_catalog_id(self) -> Optional[int]:
        return self.user_data.get("crawl_log_catalog_id")


@dataclass
class NormalizedRecord:
    """Canonical form of a Catalog (traversal only) or a Collection (persisted)."""

    kind: DocumentKind
    id: str = PLACEHOLDER_ID
    id_is_placeholder: bool = False
    title: Optional[str] = None
    description: Optional[str] = None
    license: Optional[str] = None
    stac_version: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    stac_extensions: List[str] = field(default_factory=list)
    providers: List[Dict[str, Any]] = field(default_factory=list)
    assets: Dict[str, Any] = field(default_factory=dict)
    summaries: Dict[str, Any] = field(default_factory=dict)
    links: List[Dict[str, Any]] = field(default_factory=list)
    bbox: Optional[List[float]] = None
    temporal_interval: Tuple[Optional[str], Optional[str]] = (None, None)
    source_url: Optional[str] = None
    source_slug: Optional[str] = None
    crawled_url: Optional[str] = None
    crawl_log_catalog_id: Optional[int] = None
    is_api: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_title(self) -> str:
        return self.title or self.id or "Unnamed Collection"


@dataclass
class WorkQueueEntry:
    """A durable, not yet crawled collection or catalog endpoint."""

    source_url: str
    slug: Optional[str] = None
    crawl_log_catalog_id: Optional[int] = None
    is_api: bool = False
    depth: int = 0
    # RequestLabel value; None on rows written before labels were stored
    label: Optional[str] = None


@dataclass
class DomainBatch:
    domain: str
    entries: List[SeedEntry] = field(default_factory=list)


@dataclass
class CrawlStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    collections_found: int = 0
    collections_saved: int = 0
    collections_failed: int = 0
    catalogs_processed: int = 0
    apis_processed: int = 0
    stac_compliant: int = 0
    non_compliant: int = 0

    @classmethod
    def keys(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def merge(self, other: Dict[str, Any]) -> None:
        """Add numeric counters from another stats mapping."""
        for key in self.keys():
            value = other.get(key) if other else None
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(self, key, getattr(self, key) + value)

    def as_dict(self) -> Dict[str, int]:
        return {key: getattr(self, key) for key in self.keys()}
