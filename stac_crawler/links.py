"""Turns STAC link objects into absolute, fetchable HTTP(S) URLs."""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin, urlparse

import httpx

logger = logging.getLogger("stac_crawler.links")

S3_URL_RE = re.compile(r"^s3://([^/]+)/(.*)$")

COLLECTIONS_RELS = ("data", "collections")
SELF_RELS = ("self", "root", "parent")

# Relations an API root exposes that never lead to more catalogs or collections
NON_TRAVERSAL_RELS = {
    "about",
    "alternate",
    "conformance",
    "describedby",
    "icon",
    "items",
    "license",
    "next",
    "prev",
    "preview",
    "queryables",
    "search",
    "service-desc",
    "service-doc",
    "thumbnail",
}


def resolve_link(href: Any, base_url: str) -> Optional[str]:
    """Resolve an href against the document URL; None if it cannot be fetched."""
    if not isinstance(href, str) or not href.strip():
        return None
    href = href.strip()

    if href.startswith("s3://"):
        match = S3_URL_RE.match(href)
        if not match:
            logger.warning(f"Skipping malformed S3 URL: {href}")
            return None
        bucket, key = match.groups()
        url = f"https://{bucket}.s3.amazonaws.com/{key}"
    else:
        try:
            url = urljoin(base_url, href)
            scheme = urlparse(url).scheme
        except ValueError as e:
            logger.warning(f"Skipping malformed URL {href!r}: {e}")
            return None
        if scheme not in ("http", "https"):
            logger.warning(f"Skipping non-HTTP URL: {url}")
            return None

    # httpx rejects control characters and bad hosts that urljoin lets through
    try:
        httpx.URL(url)
    except httpx.InvalidURL as e:
        logger.warning(f"Skipping unfetchable URL {url!r}: {e}")
        return None
    return url


def get_links(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    links = data.get("links") if isinstance(data, dict) else None
    if not isinstance(links, list):
        return []
    return [link for link in links if isinstance(link, dict)]


def find_link(data: Dict[str, Any], rels: Iterable[str]) -> Optional[Dict[str, Any]]:
    rels = tuple(rels)
    for rel in rels:
        for link in get_links(data):
            if link.get("rel") == rel:
                return link
    return None


def fallback_collections_url(base_url: str) -> str:
    """Guess the /collections endpoint of an API from a catalog URL."""
    parsed = urlparse(base_url)
    segments = [s for s in parsed.path.split("/") if s]
    if segments and "." in segments[-1]:
        segments.pop()

    # /collections lives at the API root, not under catalog paths
    for index, segment in enumerate(segments):
        if segment in ("catalog", "catalogs"):
            segments = segments[:index]
            break

    root_path = "/" + "/".join(segments) if segments else ""
    return f"{parsed.scheme}://{parsed.netloc}{root_path}/collections"


def find_collections_endpoint(data: Dict[str, Any], base_url: str) -> str:
    """Prefer an advertised rel="data"/"collections" link, else fall back."""
    link = find_link(data, COLLECTIONS_RELS)
    if link:
        url = resolve_link(link.get("href"), base_url)
        if url:
            logger.debug(f'Found collections endpoint via rel="{link.get("rel")}": {url}')
            return url
    return fallback_collections_url(base_url)


def child_links(data: Dict[str, Any], is_api: bool = False) -> List[Dict[str, Any]]:
    """Links worth traversing as nested catalogs."""
    children = []
    for link in get_links(data):
        rel = link.get("rel")
        if rel == "child":
            children.append(link)
        elif is_api and rel not in SELF_RELS and rel not in COLLECTIONS_RELS and rel not in NON_TRAVERSAL_RELS:
            if str(link.get("type") or "").startswith("text/html"):
                continue
            children.append(link)
    return children


def next_link(data: Dict[str, Any], base_url: str) -> Optional[str]:
    """Absolute URL of the next page of a paginated listing."""
    for link in get_links(data):
        if link.get("rel") != "next":
            continue
        if str(link.get("method") or "GET").upper() != "GET":
            continue
        return resolve_link(link.get("href"), base_url)
    return None


def declared_source_url(links: List[Dict[str, Any]], fallback_url: Optional[str]) -> Optional[str]:
    """The self link, else the root link, resolved against where the document was fetched."""
    data = {"links": links}
    for rel in ("self", "root"):
        link = find_link(data, (rel,))
        if link:
            url = resolve_link(link.get("href"), fallback_url or "")
            if url:
                return url
    return fallback_url
