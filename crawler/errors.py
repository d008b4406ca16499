"""Error taxonomy for crawl attempts.

Only :class:`TransientNetworkError` (and the raw library errors recognised
by :func:`is_transient`) are retried. Everything else is permanent for the
job that raised it.
"""

from __future__ import annotations

import asyncio
import socket

import httpx
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class CrawlError(Exception):
    """Base class for failures raised while processing a job."""


class TransientNetworkError(CrawlError):
    """Fetch or network-layer failure worth another attempt."""


class RenderingTimeout(TransientNetworkError):
    """Browser navigation exceeded its time budget."""


class RenderingUnavailable(CrawlError):
    """A page needed a browser but the worker has none."""


class MissingConfig(CrawlError):
    """The job carries no content selectors to extract with."""


class ContentError(CrawlError):
    """The page was fetched but its content is unusable."""


class InsufficientContent(ContentError):
    """Extracted text is shorter than the minimum article length."""


class NotEnglish(ContentError):
    """The document language is missing or not English."""


_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TransientNetworkError,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
    socket.gaierror,
    PlaywrightTimeoutError,
)


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` belongs to the retryable network errors.

    ``httpx.TransportError`` covers connect/read/write/pool timeouts, DNS
    failures, refused or reset connections and protocol errors.
    """

    return isinstance(exc, _TRANSIENT_TYPES)
