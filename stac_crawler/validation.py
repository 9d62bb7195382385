"""
Classifies fetched JSON bodies as STAC Catalog, Collection or invalid.

Classification looks at what a document can do (an extent object makes it a
collection, links make it traversable) rather than at its ``type`` string,
which many servers omit or get wrong.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import DocumentKind

ITEM_TYPES = ("Feature", "FeatureCollection")


@dataclass
class StacDocument:
    kind: DocumentKind
    data: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.kind is not DocumentKind.INVALID

    @property
    def is_collection(self) -> bool:
        return self.kind is DocumentKind.COLLECTION

    @property
    def is_catalog(self) -> bool:
        return self.kind is DocumentKind.CATALOG


def _invalid(reason: str, data: Any = None) -> StacDocument:
    return StacDocument(DocumentKind.INVALID, data if isinstance(data, dict) else {}, reason)


def _links_problem(links: Any) -> Optional[str]:
    if links is None:
        return None
    if not isinstance(links, list):
        return "links is not an array"
    for index, link in enumerate(links):
        if not isinstance(link, dict):
            return f"links[{index}] is not an object"
        if not isinstance(link.get("href"), str):
            return f"links[{index}] has no href"
    return None


def has_extent(data: Dict[str, Any]) -> bool:
    extent = data.get("extent")
    return isinstance(extent, dict) and ("spatial" in extent or "temporal" in extent)


def classify_document(body: Any) -> StacDocument:
    """Return the DocumentKind of a parsed body together with the reason if invalid."""
    if body is None or not isinstance(body, dict):
        return _invalid("Invalid JSON: null or not an object")

    doc_type = body.get("type")
    if doc_type in ITEM_TYPES:
        return _invalid(f"STAC {doc_type} documents are not crawled", body)

    problem = _links_problem(body.get("links"))
    if problem:
        return _invalid(problem, body)

    if has_extent(body):
        return StacDocument(DocumentKind.COLLECTION, body)

    if isinstance(body.get("links"), list) or "stac_version" in body or "conformsTo" in body:
        return StacDocument(DocumentKind.CATALOG, body)

    return _invalid("No links, extent or stac_version found", body)


def extract_listing(body: Any) -> List[Any]:
    """Members of a collections listing: an array, {collections: [...]} or one collection."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        collections = body.get("collections")
        if isinstance(collections, list):
            return collections
        if has_extent(body):
            return [body]
    return []


def is_listing(body: Any) -> bool:
    if isinstance(body, list):
        return True
    return isinstance(body, dict) and isinstance(body.get("collections"), list)
