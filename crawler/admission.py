"""Register crawl sources and seed their first job."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import structlog

from models import JobConfig, Source
from mongo import CrawlStore

from .links import url_origin

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    url: str
    source_created: bool
    job_created: bool


async def add_source(
    store: CrawlStore,
    url: str,
    content_selectors: Iterable[str],
    *,
    category: str | None = None,
) -> AdmissionResult:
    """Register ``url`` as a source and queue it as a pending job.

    Both writes are insert-only: adding a known source again changes
    nothing. The seed job's ``config.source_url`` is ``url`` itself, so every
    job discovered from it counts towards this source.
    """

    url = (url or "").strip()
    if url_origin(url) is None:
        raise ValueError(f"source URL must be an absolute http(s) URL: {url!r}")
    config = JobConfig(
        content_selectors=tuple(content_selectors),
        source_url=url,
        category=category or "general",
    )
    if not config.content_selectors:
        raise ValueError("at least one content selector is required")

    source_created = await store.add_source(Source(url=url, category=config.category))
    job_created = await store.seed_job(url, config)
    logger.info(
        "source_added",
        url=url,
        category=config.category,
        selectors=list(config.content_selectors),
        source_created=source_created,
        job_created=job_created,
    )
    return AdmissionResult(url=url, source_created=source_created, job_created=job_created)
