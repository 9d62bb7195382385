"""Exception hierarchy for the crawl engine.

Only StoreConnectivityError is allowed to end a crawl cycle; every other
error is logged and counted where it happens.
"""

from typing import Optional


class StacCrawlerError(Exception):
    """Base class for all crawler errors."""


class FetchError(StacCrawlerError):
    """A request could not produce a usable body."""

    retryable = False

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TransportError(FetchError):
    """DNS failure, refused or reset connection, timeout."""

    retryable = True


class RateLimitedError(FetchError):
    """HTTP 429, optionally with a Retry-After hint in seconds."""

    retryable = True

    def __init__(self, url: str, message: str, retry_after: Optional[float] = None):
        super().__init__(url, message, status_code=429)
        self.retry_after = retry_after


class HttpStatusError(FetchError):
    """Any other 4xx/5xx response."""


class InvalidUrlError(FetchError):
    """The URL cannot be turned into a request at all."""


class SchemaValidationError(StacCrawlerError):
    """The fetched body is not a well-formed STAC catalog or collection."""


class SeedFeedError(StacCrawlerError):
    """The seed listing could not be fetched or parsed."""


class CatalogStoreError(StacCrawlerError):
    """A Catalog Store operation failed."""


class StoreConnectivityError(CatalogStoreError):
    """The Catalog Store cannot be reached at all."""
