"""
Catalog Store: persistence of collections and the durable Work Queue.

CatalogStore is the interface the crawl engine talks to.
SqlAlchemyCatalogStore implements it on async SQLAlchemy (PostgreSQL through
asyncpg in production, SQLite through aiosqlite for development and tests).

Usage:
    store = SqlAlchemyCatalogStore(settings.database_url)
    await store.init()
    collection_id = await store.upsert_collection(record, is_active=True)
    await store.close()

Any failure to reach the database surfaces as StoreConnectivityError, which
is the only error allowed to end a crawl cycle.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timedelta
from typing import AsyncGenerator, Iterator, List, Optional, Sequence

from sqlalchemy import delete, select, text, update, or_
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .db_models import Base, Collection, CollectionSummary, CrawlLogCatalog, CrawlLogCollection, utcnow
from .errors import CatalogStoreError, StoreConnectivityError
from .models import NormalizedRecord, WorkQueueEntry
from .normalization import classify_summary, stac_key

logger = logging.getLogger("stac_crawler.store")

DEADLOCK_SQLSTATE = "40P01"

CATALOG_ENTITY = "catalog"
COLLECTION_ENTITY = "collection"


def is_api_url(url: Optional[str]) -> bool:
    """Static catalogs are served as .json files; anything else is an API endpoint."""
    return bool(url) and not url.lower().endswith(".json")


def is_deadlock_error(error: BaseException) -> bool:
    orig = getattr(error, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == DEADLOCK_SQLSTATE or "deadlock detected" in str(error)


def is_connectivity_error(error: BaseException) -> bool:
    if isinstance(error, (OperationalError, InterfaceError, OSError)):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


@contextmanager
def connectivity_guard(operation: str) -> Iterator[None]:
    """Re-raise database reachability failures as StoreConnectivityError."""
    try:
        yield
    except StoreConnectivityError:
        raise
    except Exception as e:
        if is_connectivity_error(e) and not is_deadlock_error(e):
            raise StoreConnectivityError(f"{operation} failed: {e}") from e
        raise


class CatalogStore(ABC):
    """Operations the crawl engine needs from persistent storage."""

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def upsert_collection(self, record: NormalizedRecord, is_active: bool = True) -> int:
        """Insert or update by stable key; returns the collection id."""

    @abstractmethod
    async def enqueue_collection_url(
        self,
        source_url: str,
        crawl_log_catalog_id: Optional[int] = None,
        depth: int = 0,
        label: Optional[str] = None,
    ) -> None:
        """Queue a URL once; a repeat keeps the shallower depth."""

    @abstractmethod
    async def claim_collection_queue_batch(
        self,
        limit: int,
        is_api: Optional[bool] = None,
        crawl_log_catalog_ids: Optional[Sequence[int]] = None,
    ) -> List[WorkQueueEntry]:
        """Atomically remove and return up to ``limit`` queued entries."""

    @abstractmethod
    async def remove_from_collection_queue(self, source_url: str) -> int:
        ...

    @abstractmethod
    async def deactivate_stale_collections(self, days: int = 7) -> int:
        ...

    @abstractmethod
    async def record_crawl_timestamp(self, entity_id: int, kind: str = CATALOG_ENTITY) -> None:
        ...

    @abstractmethod
    async def save_crawl_log_catalog(self, slug: Optional[str], source_url: str, is_api: bool = False) -> int:
        ...

    @abstractmethod
    async def get_catalog_ids_with_pending_queue(self, is_api: Optional[bool] = None) -> List[int]:
        ...

    @abstractmethod
    async def is_collection_url_crawled(self, source_url: str, since: Optional[datetime] = None) -> bool:
        ...


class SqlAlchemyCatalogStore(CatalogStore):
    def __init__(
        self,
        database_url: str,
        pool_size: int = 10,
        max_overflow: int = 10,
        echo: bool = False,
        deadlock_retries: int = 3,
        deadlock_backoff: float = 0.1,
    ):
        self.database_url = database_url
        self.deadlock_retries = deadlock_retries
        self.deadlock_backoff = deadlock_backoff
        self._engine: AsyncEngine = self._create_engine(database_url, pool_size, max_overflow, echo)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings) -> "SqlAlchemyCatalogStore":
        return cls(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )

    @staticmethod
    def _create_engine(database_url: str, pool_size: int, max_overflow: int, echo: bool) -> AsyncEngine:
        logger.info(f"Initializing database: {database_url.split('@')[-1].split('?')[0]}")
        if database_url.startswith("sqlite"):
            return create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                echo=echo,
            )
        return create_async_engine(
            database_url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            echo=echo,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init(self) -> None:
        """Check connectivity and create missing tables."""
        with connectivity_guard("Database connection"):
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(text("SELECT 1"))
                    await conn.run_sync(Base.metadata.create_all)
            except Exception as e:
                logger.error("=" * 80)
                logger.error("DATABASE CONNECTION FAILED")
                logger.error(f"  Target: {self.database_url.split('@')[-1]}")
                logger.error(f"  Error:  {e}")
                logger.error("=" * 80)
                raise
        logger.info("Database connection established")

    async def close(self) -> None:
        await self._engine.dispose()

    # =========================================================================
    # COLLECTIONS
    # =========================================================================

    async def upsert_collection(self, record: NormalizedRecord, is_active: bool = True) -> int:
        with connectivity_guard("Collection upsert"):
            attempt = 1
            while True:
                try:
                    return await self._upsert_collection_once(record, is_active)
                except DBAPIError as e:
                    if not is_deadlock_error(e) or attempt >= self.deadlock_retries:
                        raise
                    delay = self.deadlock_backoff * (2 ** (attempt - 1)) + random.uniform(0, self.deadlock_backoff / 2)
                    logger.warning(
                        f'Deadlock detected for collection "{record.display_title}", '
                        f"retrying in {delay * 1000:.0f}ms (attempt {attempt}/{self.deadlock_retries})"
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

    async def _upsert_collection_once(self, record: NormalizedRecord, is_active: bool) -> int:
        stac_id = stac_key(record)
        title = record.display_title
        source_url = record.source_url or record.crawled_url
        now = utcnow()

        async with self.get_session() as session:
            if stac_id:
                query = select(Collection).where(Collection.stac_id == stac_id)
            else:
                query = select(Collection).where(
                    Collection.stac_id.is_(None),
                    Collection.title == title,
                    Collection.source_url == source_url,
                )
            row = (await session.execute(query)).scalars().first()
            if row is None:
                row = Collection(created_at=now)
                session.add(row)

            start, end = record.temporal_interval
            row.stac_id = stac_id
            row.stac_version = record.stac_version
            row.title = title
            row.description = record.description
            row.license = record.license
            row.bbox = record.bbox
            row.temporal_extent_start = start
            row.temporal_extent_end = end
            row.keywords = list(record.keywords)
            row.stac_extensions = list(record.stac_extensions)
            row.providers = list(record.providers)
            row.assets = dict(record.assets)
            row.is_active = is_active
            fetched_from = record.crawled_url or source_url
            row.is_api = is_api_url(fetched_from) if fetched_from else record.is_api
            row.source_url = source_url
            row.crawled_url = record.crawled_url
            row.full_json = record.raw or None
            row.updated_at = now
            row.last_crawled_at = now
            await session.flush()
            collection_id = row.id

            await session.execute(delete(CollectionSummary).where(CollectionSummary.collection_id == collection_id))
            for name, value in record.summaries.items():
                session.add(CollectionSummary(collection_id=collection_id, name=str(name), **classify_summary(value)))

            crawled = {url for url in (record.crawled_url, source_url) if url}
            if crawled:
                await session.execute(
                    delete(CrawlLogCollection).where(CrawlLogCollection.source_url.in_(sorted(crawled)))
                )

        return collection_id

    async def is_collection_url_crawled(self, source_url: str, since: Optional[datetime] = None) -> bool:
        if not source_url:
            return False
        with connectivity_guard("Crawled URL lookup"):
            query = select(Collection.id).where(
                or_(Collection.crawled_url == source_url, Collection.source_url == source_url)
            )
            if since is not None:
                query = query.where(Collection.last_crawled_at >= since)
            async with self.get_session() as session:
                found = (await session.execute(query.limit(1))).first()
        return found is not None

    async def deactivate_stale_collections(self, days: int = 7) -> int:
        """Mark collections not re-confirmed within ``days`` as inactive."""
        cutoff = utcnow() - timedelta(days=days)
        with connectivity_guard("Stale collection deactivation"):
            async with self.get_session() as session:
                result = await session.execute(
                    update(Collection)
                    .where(Collection.updated_at < cutoff, Collection.is_active.is_(True))
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                )
                count = result.rowcount or 0
        if count > 0:
            logger.info(f"Marked {count} collection(s) as inactive (not updated in last {days} days)")
        return count

    # =========================================================================
    # CRAWL LOG AND WORK QUEUE
    # =========================================================================

    async def save_crawl_log_catalog(self, slug: Optional[str], source_url: str, is_api: bool = False) -> int:
        if not source_url:
            raise CatalogStoreError("Catalog info with url is required")
        with connectivity_guard("Crawl log catalog save"):
            async with self.get_session() as session:
                row = (
                    await session.execute(select(CrawlLogCatalog).where(CrawlLogCatalog.source_url == source_url))
                ).scalars().first()
                if row is None:
                    row = CrawlLogCatalog(source_url=source_url, slug=slug, is_api=is_api)
                    session.add(row)
                else:
                    row.slug = slug or row.slug
                    row.is_api = is_api
                    row.updated_at = utcnow()
                await session.flush()
                return row.id

    async def get_catalog_ids_with_pending_queue(self, is_api: Optional[bool] = None) -> List[int]:
        query = (
            select(CrawlLogCollection.crawllog_catalog_id)
            .join(CrawlLogCatalog, CrawlLogCatalog.id == CrawlLogCollection.crawllog_catalog_id)
            .where(CrawlLogCollection.collection_id.is_(None))
            .distinct()
        )
        if is_api is not None:
            query = query.where(CrawlLogCatalog.is_api == is_api)
        with connectivity_guard("Pending queue lookup"):
            async with self.get_session() as session:
                return list((await session.execute(query)).scalars().all())

    async def enqueue_collection_url(
        self,
        source_url: str,
        crawl_log_catalog_id: Optional[int] = None,
        depth: int = 0,
        label: Optional[str] = None,
    ) -> None:
        if not source_url:
            return
        with connectivity_guard("Work queue enqueue"):
            try:
                async with self.get_session() as session:
                    row = (
                        await session.execute(
                            select(CrawlLogCollection).where(CrawlLogCollection.source_url == source_url)
                        )
                    ).scalars().first()
                    if row is None:
                        session.add(
                            CrawlLogCollection(
                                source_url=source_url,
                                crawllog_catalog_id=crawl_log_catalog_id,
                                depth=depth,
                                label=label,
                            )
                        )
                    else:
                        if crawl_log_catalog_id is not None:
                            row.crawllog_catalog_id = crawl_log_catalog_id
                        if depth < (row.depth or 0):
                            row.depth = depth
                        row.label = label or row.label
            except IntegrityError:
                # Another worker queued the same URL first
                logger.debug(f"Already queued: {source_url}")

    async def claim_collection_queue_batch(
        self,
        limit: int,
        is_api: Optional[bool] = None,
        crawl_log_catalog_ids: Optional[Sequence[int]] = None,
    ) -> List[WorkQueueEntry]:
        if not limit or limit <= 0:
            return []

        query = (
            select(
                CrawlLogCollection.id,
                CrawlLogCollection.source_url,
                CrawlLogCollection.crawllog_catalog_id,
                CrawlLogCollection.depth,
                CrawlLogCollection.label,
                CrawlLogCatalog.slug,
                CrawlLogCatalog.is_api,
            )
            .join(CrawlLogCatalog, CrawlLogCatalog.id == CrawlLogCollection.crawllog_catalog_id)
            .order_by(CrawlLogCollection.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if is_api is not None:
            query = query.where(CrawlLogCatalog.is_api == is_api)
        if crawl_log_catalog_ids:
            query = query.where(CrawlLogCollection.crawllog_catalog_id.in_(list(crawl_log_catalog_ids)))

        with connectivity_guard("Work queue claim"):
            async with self.get_session() as session:
                rows = (await session.execute(query)).all()
                if rows:
                    await session.execute(
                        delete(CrawlLogCollection).where(CrawlLogCollection.id.in_([r.id for r in rows]))
                    )

        return [
            WorkQueueEntry(
                source_url=r.source_url,
                slug=r.slug,
                crawl_log_catalog_id=r.crawllog_catalog_id,
                is_api=bool(r.is_api),
                depth=r.depth or 0,
                label=r.label,
            )
            for r in rows
        ]

    async def remove_from_collection_queue(self, source_url: str) -> int:
        if not source_url:
            return 0
        with connectivity_guard("Work queue removal"):
            async with self.get_session() as session:
                result = await session.execute(
                    delete(CrawlLogCollection).where(CrawlLogCollection.source_url == source_url)
                )
                return result.rowcount or 0

    async def record_crawl_timestamp(self, entity_id: int, kind: str = CATALOG_ENTITY) -> None:
        if entity_id is None:
            return
        if kind == CATALOG_ENTITY:
            model = CrawlLogCatalog
        elif kind == COLLECTION_ENTITY:
            model = Collection
        else:
            raise ValueError(f"Unknown entity kind: {kind}")

        now = utcnow()
        values = {"last_crawled_at": now}
        if model is CrawlLogCatalog:
            values["updated_at"] = now
        with connectivity_guard("Crawl timestamp update"):
            async with self.get_session() as session:
                await session.execute(
                    update(model)
                    .where(model.id == entity_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
