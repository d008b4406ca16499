"""Single-job state machine: fetch, discover, extract, persist, classify."""

from __future__ import annotations

import traceback
from enum import Enum
from typing import Any

import httpx
import structlog

from models import Job, JobStatus
from mongo import CrawlStore
from settings import PruningSettings

from .errors import MissingConfig, is_transient
from .extraction import extract_article
from .fetching import NullRenderer, Renderer, fetch_page
from .links import extract_links


class JobOutcome(str, Enum):
    done = "done"
    failed = "failed"
    retry = "retry"
    needs_rendering = "needs_rendering"


class SourcePruner:
    """Drop pending jobs of a source that keeps failing without successes.

    A source is pruned once it has at least ``failure_threshold`` failed jobs
    and no more than ``done_count_threshold`` done jobs. Only pending jobs
    are deleted, so running it again after a prune deletes nothing.
    """

    def __init__(self, store: CrawlStore, settings: PruningSettings, log: Any | None = None) -> None:
        self.store = store
        self.settings = settings
        self.log = log or structlog.get_logger(__name__)

    async def maybe_prune(self, source_url: str | None) -> int:
        if not self.settings.enabled or not source_url:
            return 0
        failed = await self.store.count_jobs(
            {"config.source_url": source_url, "status": JobStatus.failed.value}
        )
        if failed < self.settings.failure_threshold:
            return 0
        done = await self.store.count_jobs(
            {"config.source_url": source_url, "status": JobStatus.done.value}
        )
        if done > self.settings.done_count_threshold:
            return 0
        deleted = await self.store.delete_jobs(
            {"config.source_url": source_url, "status": JobStatus.pending.value}
        )
        self.log.warning(
            "source_pruned",
            source_url=source_url,
            failed=failed,
            done=done,
            deleted=deleted,
        )
        return deleted


class JobProcessor:
    """Run one claimed job to its next status.

    Every error raised while fetching or parsing ends as a status change on
    the job. Errors raised by the store are not caught: a worker that cannot
    write to the queue has to stop.
    """

    def __init__(
        self,
        store: CrawlStore,
        client: httpx.AsyncClient,
        *,
        renderer: Renderer | None = None,
        max_retries: int = 3,
        pruner: SourcePruner | None = None,
        log: Any | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.renderer = renderer or NullRenderer()
        self.max_retries = max_retries
        self.pruner = pruner
        self.log = log or structlog.get_logger(__name__)

    async def process(self, job: Job) -> JobOutcome:
        log = self.log.bind(url=job.url, retry_count=job.retry_count)
        log.info("job_started", rendered=self.renderer.available)

        try:
            result = await fetch_page(job.url, client=self.client, renderer=self.renderer, log=log)
        except Exception as exc:  # noqa: BLE001 - classified below
            return await self._fail(job, exc, log)

        if result.is_challenge:
            await self.store.mark_requires_rendering(job.id)
            log.info("job_requires_rendering", marker=result.marker)
            return JobOutcome.needs_rendering

        try:
            selectors = job.config.content_selectors
            if not selectors:
                raise MissingConfig(f"Job for {job.url} is missing configuration (content_selectors)")
            links = extract_links(result.html, job.url)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(job, exc, log)

        if links:
            inserted = await self.store.upsert_links(links, job.config)
            log.info("links_queued", found=len(links), inserted=inserted)

        try:
            article = extract_article(result.html, selectors, base_url=job.url)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(job, exc, log)

        await self.store.upsert_article(job.url, article)
        await self.store.mark_done(job.id)
        log.info("job_done", title=article.title, rendered=result.rendered)
        return JobOutcome.done

    async def _fail(self, job: Job, exc: Exception, log: Any) -> JobOutcome:
        attempt = job.retry_count + 1
        if is_transient(exc) and job.retry_count < self.max_retries:
            await self.store.requeue_for_retry(job.id)
            log.warning("job_retry", attempt=attempt, error=str(exc), error_type=type(exc).__name__)
            return JobOutcome.retry

        message = str(exc) or type(exc).__name__
        detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        await self.store.mark_failed(job.id, message, detail)
        log.error("job_failed", attempt=attempt, error=message, error_type=type(exc).__name__)

        if self.pruner is not None and job.config.source_url:
            await self.pruner.maybe_prune(job.config.source_url)
        return JobOutcome.failed
