"""MongoDB queue store used by the crawler workers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable
from urllib.parse import quote_plus

import structlog
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument, UpdateOne
from pymongo.errors import ConfigurationError

from models import Article, Job, JobConfig, JobStatus, Source
from settings import MongoSettings

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def build_mongo_uri(
    host: str,
    port: int,
    username: str | None,
    password: str | None,
    auth_database: str,
) -> str:
    """Return a ``mongodb://`` URL, adding credentials only when both are set."""

    has_user = username is not None and str(username) != ""
    has_pass = password is not None and str(password) != ""
    if has_user and has_pass:
        u = quote_plus(str(username))
        p = quote_plus(str(password))
        return f"mongodb://{u}:{p}@{host}:{port}/{auth_database}"
    return f"mongodb://{host}:{port}"


class CrawlStore:
    """Queue, article and source collections behind one async handle.

    Parameters
    ----------
    db:
        A motor database (or any object exposing motor-style collections
        through ``db[name]``).
    client:
        Owning client, closed by :meth:`close`. Optional so tests can pass
        an in-memory database.
    queue, articles, sources:
        Collection names.

    Notes
    -----
    Every method logs the failing operation before re-raising. The workers
    treat any store error as fatal, so nothing here retries.
    """

    def __init__(
        self,
        db: Any,
        *,
        client: Any | None = None,
        queue: str = "queue",
        articles: str = "crawled_data",
        sources: str = "sources",
    ) -> None:
        self.db = db
        self.client = client
        self.queue_collection = queue
        self.articles_collection = articles
        self.sources_collection = sources
        self._indexes_ready = False

    @classmethod
    def connect(cls, cfg: MongoSettings | None = None) -> "CrawlStore":
        """Create a store backed by :class:`AsyncIOMotorClient`."""

        cfg = cfg or MongoSettings()
        try:
            if cfg.uri:
                client = AsyncIOMotorClient(cfg.uri)
                try:
                    db = client.get_default_database()
                except ConfigurationError:
                    db = client[cfg.database]
            else:
                url = build_mongo_uri(cfg.host, cfg.port, cfg.username, cfg.password, cfg.auth)
                client = AsyncIOMotorClient(url)
                db = client[cfg.database]
        except Exception as exc:
            logger.error("mongo_client_init_failed", host=cfg.host, port=cfg.port, error=str(exc))
            raise
        return cls(
            db,
            client=client,
            queue=cfg.queue,
            articles=cfg.articles,
            sources=cfg.sources,
        )

    @property
    def queue(self):
        return self.db[self.queue_collection]

    @property
    def articles(self):
        return self.db[self.articles_collection]

    @property
    def sources(self):
        return self.db[self.sources_collection]

    @staticmethod
    def pending_filter(*, rendering: bool) -> dict[str, Any]:
        """Return the filter selecting pending jobs for one worker kind.

        Rendering workers only see jobs flagged ``requires_rendering``;
        fetch workers see the rest, including documents without the flag.
        """

        if rendering:
            return {"status": JobStatus.pending.value, "requires_rendering": True}
        return {"status": JobStatus.pending.value, "requires_rendering": {"$ne": True}}

    async def claim_one_pending(self, *, rendering: bool) -> Job | None:
        """Atomically move one eligible pending job to ``processing``."""

        query = self.pending_filter(rendering=rendering)
        try:
            doc = await self.queue.find_one_and_update(
                query,
                {"$set": {"status": JobStatus.processing.value, "claimed_at": _now()}},
                return_document=ReturnDocument.AFTER,
            )
        except Exception as exc:
            logger.error("mongo_claim_failed", rendering=rendering, error=str(exc))
            raise
        if doc is None:
            return None
        return Job.from_document(doc)

    async def has_pending(self, *, rendering: bool) -> bool:
        try:
            count = await self.queue.count_documents(
                self.pending_filter(rendering=rendering), limit=1
            )
        except Exception as exc:
            logger.error("mongo_count_failed", collection=self.queue_collection, error=str(exc))
            raise
        return count > 0

    async def upsert_links(self, urls: Iterable[str], config: JobConfig) -> int:
        """Queue ``urls`` as pending jobs unless they already exist.

        Returns the number of newly inserted jobs. Existing jobs keep their
        status, retry counter and configuration.
        """

        now = _now()
        operations = [
            UpdateOne(
                {"url": url},
                {
                    "$setOnInsert": {
                        "url": url,
                        "status": JobStatus.pending.value,
                        "requires_rendering": False,
                        "retry_count": 0,
                        "added_at": now,
                        "config": config.to_document(),
                    }
                },
                upsert=True,
            )
            for url in urls
        ]
        if not operations:
            return 0
        try:
            result = await self.queue.bulk_write(operations, ordered=False)
        except Exception as exc:
            logger.error("mongo_upsert_links_failed", count=len(operations), error=str(exc))
            raise
        return int(getattr(result, "upserted_count", 0) or 0)

    async def upsert_article(self, url: str, article: Article) -> None:
        payload = article.to_document()
        payload["crawled_at"] = _now()
        try:
            await self.articles.update_one({"url": url}, {"$set": payload}, upsert=True)
        except Exception as exc:
            logger.error("mongo_upsert_article_failed", url=url, error=str(exc))
            raise

    async def set_status(
        self,
        job_id: Any,
        fields: dict[str, Any],
        *,
        inc: dict[str, int] | None = None,
    ) -> None:
        """Apply a targeted update to one job document."""

        update: dict[str, Any] = {"$set": fields}
        if inc:
            update["$inc"] = inc
        try:
            await self.queue.update_one({"_id": job_id}, update)
        except Exception as exc:
            logger.error("mongo_set_status_failed", job_id=str(job_id), fields=list(fields), error=str(exc))
            raise

    async def mark_done(self, job_id: Any) -> None:
        await self.set_status(job_id, {"status": JobStatus.done.value, "crawled_at": _now()})

    async def mark_failed(self, job_id: Any, message: str, detail: str | None = None) -> None:
        await self.set_status(
            job_id,
            {
                "status": JobStatus.failed.value,
                "error_message": message,
                "error_detail": detail,
            },
        )

    async def mark_requires_rendering(self, job_id: Any) -> None:
        await self.set_status(
            job_id,
            {"status": JobStatus.pending.value, "requires_rendering": True},
        )

    async def requeue_for_retry(self, job_id: Any) -> None:
        await self.set_status(
            job_id,
            {"status": JobStatus.pending.value},
            inc={"retry_count": 1},
        )

    async def count_jobs(self, query: dict[str, Any]) -> int:
        try:
            return int(await self.queue.count_documents(query))
        except Exception as exc:
            logger.error("mongo_count_failed", collection=self.queue_collection, query=query, error=str(exc))
            raise

    async def delete_jobs(self, query: dict[str, Any]) -> int:
        try:
            result = await self.queue.delete_many(query)
        except Exception as exc:
            logger.error("mongo_delete_failed", collection=self.queue_collection, query=query, error=str(exc))
            raise
        return int(getattr(result, "deleted_count", 0) or 0)

    async def requeue_stuck_jobs(self) -> int:
        """Reset jobs left in ``processing`` by a previous run."""

        try:
            result = await self.queue.update_many(
                {"status": JobStatus.processing.value},
                {"$set": {"status": JobStatus.pending.value}},
            )
        except Exception as exc:
            logger.error("mongo_requeue_failed", error=str(exc))
            raise
        return int(getattr(result, "modified_count", 0) or 0)

    async def add_source(self, source: Source) -> bool:
        """Insert ``source`` unless its URL is already registered."""

        try:
            result = await self.sources.update_one(
                {"url": source.url},
                {"$setOnInsert": source.model_dump()},
                upsert=True,
            )
        except Exception as exc:
            logger.error("mongo_add_source_failed", url=source.url, error=str(exc))
            raise
        return getattr(result, "upserted_id", None) is not None

    async def seed_job(self, url: str, config: JobConfig) -> bool:
        """Queue the first job of a source. Returns ``True`` when inserted."""

        return await self.upsert_links([url], config) > 0

    async def queue_stats(self) -> dict[str, int]:
        """Return total and per-status job counts."""

        stats = {"total": await self.count_jobs({})}
        for status in JobStatus:
            stats[status.value] = await self.count_jobs({"status": status.value})
        return stats

    async def source_stats(self) -> dict[str, dict[str, int]]:
        """Return per-source job counts keyed by source URL and status."""

        result: dict[str, dict[str, int]] = {}
        try:
            sources = [doc async for doc in self.sources.find({}, {"_id": False, "url": True})]
            for source in sources:
                url = source.get("url")
                if not url:
                    continue
                counts = {status.value: 0 for status in JobStatus}
                cursor = self.queue.aggregate(
                    [
                        {"$match": {"config.source_url": url}},
                        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
                    ]
                )
                async for row in cursor:
                    counts[str(row["_id"])] = int(row["count"])
                counts["total"] = sum(counts.values())
                result[url] = counts
        except Exception as exc:
            logger.error("mongo_source_stats_failed", error=str(exc))
            raise
        return result

    async def ensure_indexes(self) -> None:
        """Create required Mongo indexes if they are missing."""

        if self._indexes_ready:
            return

        specs = (
            (self.queue_collection, "url", {"name": "queue_url_unique", "unique": True}),
            (
                self.queue_collection,
                [("status", 1), ("requires_rendering", 1)],
                {"name": "queue_status_rendering"},
            ),
            (
                self.queue_collection,
                [("config.source_url", 1), ("status", 1)],
                {"name": "queue_source_status"},
            ),
            (self.articles_collection, "url", {"name": "articles_url_unique", "unique": True}),
            (self.sources_collection, "url", {"name": "sources_url_unique", "unique": True}),
        )
        for collection, keys, options in specs:
            try:
                await self.db[collection].create_index(keys, **options)
            except Exception as exc:  # noqa: BLE001
                logger.debug(
                    "mongo_index_create_failed",
                    collection=collection,
                    index=options["name"],
                    error=str(exc),
                )
        self._indexes_ready = True

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()
