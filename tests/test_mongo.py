"""Tests for the MongoDB queue store helpers."""

from __future__ import annotations

import asyncio

import pytest

from models import Article, JobConfig, JobStatus, Source
from mongo import CrawlStore, build_mongo_uri


def test_build_mongo_uri_quotes_credentials() -> None:
    assert build_mongo_uri("db", 27017, None, None, "admin") == "mongodb://db:27017"
    assert build_mongo_uri("db", 27017, "us er", "p@ss", "admin") == "mongodb://us+er:p%40ss@db:27017/admin"


def test_pending_filter_partitions_by_rendering() -> None:
    assert CrawlStore.pending_filter(rendering=True) == {"status": "pending", "requires_rendering": True}
    assert CrawlStore.pending_filter(rendering=False) == {
        "status": "pending",
        "requires_rendering": {"$ne": True},
    }


@pytest.mark.asyncio
async def test_claim_is_exclusive_under_concurrency(store, queue) -> None:
    queue.insert({"url": "https://example.com/only", "status": "pending", "retry_count": 0})

    results = await asyncio.gather(*(store.claim_one_pending(rendering=False) for _ in range(10)))

    claimed = [job for job in results if job is not None]
    assert len(claimed) == 1
    assert claimed[0].status is JobStatus.processing
    assert queue.docs[0]["status"] == "processing"


@pytest.mark.asyncio
async def test_claim_respects_rendering_partition(store, queue) -> None:
    queue.insert({"url": "https://example.com/js", "status": "pending", "requires_rendering": True})
    queue.insert({"url": "https://example.com/plain", "status": "pending"})
    queue.insert({"url": "https://example.com/flag-false", "status": "pending", "requires_rendering": False})

    plain = [await store.claim_one_pending(rendering=False) for _ in range(3)]
    rendered = [await store.claim_one_pending(rendering=True) for _ in range(2)]

    assert [job.url for job in plain if job] == ["https://example.com/plain", "https://example.com/flag-false"]
    assert plain[-1] is None
    assert rendered[0].url == "https://example.com/js"
    assert rendered[0].requires_rendering is True
    assert rendered[1] is None


@pytest.mark.asyncio
async def test_upsert_links_never_resets_existing_jobs(store, queue) -> None:
    queue.insert({"url": "https://example.com/a", "status": "failed", "retry_count": 3, "config": {}})
    config = JobConfig(content_selectors=["main"], source_url="https://example.com")

    inserted = await store.upsert_links(["https://example.com/a", "https://example.com/b"], config)
    again = await store.upsert_links(["https://example.com/b"], config)
    nothing = await store.upsert_links([], config)

    assert (inserted, again, nothing) == (1, 0, 0)
    existing = queue.docs[0]
    assert existing["status"] == "failed"
    assert existing["retry_count"] == 3
    new = queue.docs[1]
    assert new["status"] == "pending"
    assert new["requires_rendering"] is False
    assert new["config"]["content_selectors"] == ["main"]


@pytest.mark.asyncio
async def test_status_helpers_update_target_job(store, queue) -> None:
    doc = queue.insert({"url": "https://example.com/a", "status": "processing", "retry_count": 1})

    await store.requeue_for_retry(doc["_id"])
    assert (queue.docs[0]["status"], queue.docs[0]["retry_count"]) == ("pending", 2)

    await store.mark_requires_rendering(doc["_id"])
    assert queue.docs[0]["requires_rendering"] is True
    assert queue.docs[0]["retry_count"] == 2

    await store.mark_failed(doc["_id"], "boom", "Traceback ...")
    assert queue.docs[0]["status"] == "failed"
    assert queue.docs[0]["error_detail"] == "Traceback ..."

    await store.mark_done(doc["_id"])
    assert queue.docs[0]["status"] == "done"


@pytest.mark.asyncio
async def test_requeue_stuck_jobs_only_touches_processing(store, queue) -> None:
    for status in ("processing", "processing", "done", "failed", "pending"):
        queue.insert({"url": f"https://example.com/{status}-{len(queue.docs)}", "status": status})

    assert await store.requeue_stuck_jobs() == 2
    assert sorted(doc["status"] for doc in queue.docs) == ["done", "failed", "pending", "pending", "pending"]


@pytest.mark.asyncio
async def test_upsert_article_sets_crawled_at(store, fake_db) -> None:
    await store.upsert_article("https://example.com/a", Article(title="T", content="body"))

    stored = fake_db["crawled_data"].docs[0]
    assert stored["url"] == "https://example.com/a"
    assert stored["content"] == "body"
    assert stored["crawled_at"] is not None


@pytest.mark.asyncio
async def test_add_source_is_insert_only(store, fake_db) -> None:
    first = await store.add_source(Source(url="https://example.com", category="news"))
    second = await store.add_source(Source(url="https://example.com", category="sport"))

    assert (first, second) == (True, False)
    assert len(fake_db["sources"].docs) == 1
    assert fake_db["sources"].docs[0]["category"] == "news"


@pytest.mark.asyncio
async def test_queue_and_source_stats(store, queue, fake_db) -> None:
    await store.add_source(Source(url="https://example.com"))
    for status in ("pending", "done", "done", "failed"):
        queue.insert(
            {
                "url": f"https://example.com/{len(queue.docs)}",
                "status": status,
                "config": {"source_url": "https://example.com"},
            }
        )
    queue.insert({"url": "https://elsewhere.org/", "status": "processing", "config": {}})

    stats = await store.queue_stats()
    per_source = await store.source_stats()

    assert stats == {"total": 5, "pending": 1, "processing": 1, "done": 2, "failed": 1}
    assert per_source == {
        "https://example.com": {"pending": 1, "processing": 0, "done": 2, "failed": 1, "total": 4}
    }


@pytest.mark.asyncio
async def test_ensure_indexes_runs_once(store, fake_db) -> None:
    await store.ensure_indexes()
    await store.ensure_indexes()

    names = [options["name"] for _keys, options in fake_db["queue"].indexes]
    assert names == ["queue_url_unique", "queue_status_rendering", "queue_source_status"]
    assert fake_db["crawled_data"].indexes[0][1]["unique"] is True
