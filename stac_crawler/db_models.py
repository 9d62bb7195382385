"""
SQLAlchemy ORM models for the Catalog Store.

Tables:
    - collection: one row per crawled STAC Collection
    - collection_summaries: classified summaries of a collection
    - crawllog_catalog: seed catalogs/APIs, used for stac_id slugs and re-crawls
    - crawllog_collection: durable Work Queue of not yet crawled URLs

Column types are portable so the same models run on PostgreSQL and SQLite.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Collection(Base):
    __tablename__ = "collection"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stac_id = Column(String(512), unique=True, nullable=True, index=True)
    stac_version = Column(String(32), nullable=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    license = Column(String(255), nullable=True)

    # [west, south, east, north] or the 6-value 3D form
    bbox = Column(JSON, nullable=True)
    temporal_extent_start = Column(String(64), nullable=True)
    temporal_extent_end = Column(String(64), nullable=True)

    keywords = Column(JSON, nullable=False, default=list)
    stac_extensions = Column(JSON, nullable=False, default=list)
    providers = Column(JSON, nullable=False, default=list)
    assets = Column(JSON, nullable=False, default=dict)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_api = Column(Boolean, nullable=False, default=False)
    source_url = Column(Text, nullable=True, index=True)
    crawled_url = Column(Text, nullable=True, index=True)
    full_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    last_crawled_at = Column(DateTime, nullable=True)


class CollectionSummary(Base):
    __tablename__ = "collection_summaries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collection.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    kind = Column(String(16), nullable=False)
    range_min = Column(Float, nullable=True)
    range_max = Column(Float, nullable=True)
    set_value = Column(Text, nullable=True)
    json_schema = Column(Text, nullable=True)


class CrawlLogCatalog(Base):
    __tablename__ = "crawllog_catalog"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(255), nullable=True)
    source_url = Column(Text, unique=True, nullable=False)
    is_api = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    last_crawled_at = Column(DateTime, nullable=True)


class CrawlLogCollection(Base):
    __tablename__ = "crawllog_collection"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_url = Column(Text, unique=True, nullable=False)
    crawllog_catalog_id = Column(
        Integer, ForeignKey("crawllog_catalog.id", ondelete="CASCADE"), nullable=True, index=True
    )
    # Set once the URL has been turned into a collection row
    collection_id = Column(Integer, nullable=True)
    depth = Column(Integer, nullable=False, default=0)
    # RequestLabel the URL was queued with
    label = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
