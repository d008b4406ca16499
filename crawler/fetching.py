"""Hybrid page fetching: plain HTTP first, headless Chromium when needed.

The renderer capability is chosen once per worker. Fetch workers get a
:class:`NullRenderer`; the rendering worker owns a
:class:`PlaywrightRenderer` with its own browser. Callers receive a
:class:`FetchResult` whose ``kind`` tells a normal page apart from an
anti-bot challenge that could not be passed without a browser.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx
import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .errors import RenderingTimeout, RenderingUnavailable, TransientNetworkError

logger = structlog.get_logger(__name__)

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

# Lower-cased substrings found on interstitial "checking your browser" pages.
CHALLENGE_MARKERS: tuple[str, ...] = (
    "checking your browser",
    "checking if the site connection is secure",
    "just a moment...",
    "cf-browser-verification",
    "cf-chl-",
    "challenge-platform",
    "attention required! | cloudflare",
    "enable javascript and cookies to continue",
    "ddos protection by",
    "_incapsula_resource",
    "px-captcha",
    "captcha-delivery.com",
)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

DEFAULT_RENDER_TIMEOUT = 60.0


class FetchKind(str, Enum):
    html = "html"
    challenge = "challenge"


@dataclass(frozen=True)
class FetchResult:
    """Outcome of :func:`fetch_page`.

    ``kind`` is :attr:`FetchKind.challenge` only when a challenge page was
    served and no renderer was available to get past it; ``html`` then
    holds the challenge page itself.
    """

    url: str
    kind: FetchKind
    html: str
    rendered: bool = False
    status_code: int | None = None
    marker: str | None = None

    @property
    def is_challenge(self) -> bool:
        return self.kind is FetchKind.challenge


class Renderer(Protocol):
    available: bool

    async def render(self, url: str) -> str: ...

    async def close(self) -> None: ...


class NullRenderer:
    """Renderer variant for workers without a browser.

    ``fetch_page`` checks ``available`` first, so ``render`` is only reached
    by callers that skip that check.
    """

    available = False

    async def render(self, url: str) -> str:
        raise RenderingUnavailable(f"rendering {url} is not available in this worker")

    async def close(self) -> None:
        return None


class PlaywrightRenderer:
    """Render pages in headless Chromium, one page per call.

    Use :meth:`launch` in workers. Tests may pass any object with an async
    ``new_page()`` as ``context``.
    """

    available = True

    def __init__(
        self,
        context: Any,
        *,
        timeout: float = DEFAULT_RENDER_TIMEOUT,
        browser: Any | None = None,
        playwright: Any | None = None,
    ) -> None:
        self._context = context
        self._browser = browser
        self._playwright = playwright
        self.timeout = timeout

    @classmethod
    async def launch(cls, *, timeout: float = DEFAULT_RENDER_TIMEOUT) -> "PlaywrightRenderer":
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(
                headless=True,
                args=["--disable-gpu", "--no-sandbox"],
            )
            context = await browser.new_context(
                user_agent=HEADERS["User-Agent"],
                extra_http_headers={"Accept-Language": HEADERS["Accept-Language"]},
            )
        except Exception:
            await playwright.stop()
            raise
        return cls(context, timeout=timeout, browser=browser, playwright=playwright)

    async def render(self, url: str) -> str:
        page = await self._context.new_page()
        try:
            await page.goto(url, wait_until="networkidle", timeout=self.timeout * 1000)
            return await page.content()
        except PlaywrightTimeoutError as exc:
            raise RenderingTimeout(f"rendering {url} exceeded {self.timeout:g}s") from exc
        except PlaywrightError as exc:
            raise TransientNetworkError(f"rendering {url} failed: {exc}") from exc
        finally:
            with suppress(Exception):
                await page.close()

    async def close(self) -> None:
        if self._context is not None:
            with suppress(Exception):
                await self._context.close()
        if self._browser is not None:
            with suppress(Exception):
                await self._browser.close()
        if self._playwright is not None:
            with suppress(Exception):
                await self._playwright.stop()
        self._context = None
        self._browser = None
        self._playwright = None


def build_http_client(timeout: float = 30.0, **kwargs: Any) -> httpx.AsyncClient:
    """Return the shared lightweight client used by one worker."""

    return httpx.AsyncClient(
        headers=HEADERS,
        timeout=timeout,
        follow_redirects=True,
        **kwargs,
    )


def detect_challenge(html: str | None) -> str | None:
    """Return the first challenge marker found in ``html``."""

    if not html:
        return None
    lowered = html.lower()
    for marker in CHALLENGE_MARKERS:
        if marker in lowered:
            return marker
    return None


async def fetch_page(
    url: str,
    *,
    client: httpx.AsyncClient,
    renderer: Renderer | None = None,
    log: Any | None = None,
) -> FetchResult:
    """Fetch ``url``, escalating to the renderer when plain HTTP is not enough.

    Network errors of the plain request propagate unchanged when no renderer
    is available. Retryable status codes (429, 5xx) without a challenge
    marker raise :class:`TransientNetworkError`.
    """

    renderer = renderer or NullRenderer()
    log = log or logger

    try:
        resp = await client.get(url)
    except httpx.HTTPError as exc:
        if not renderer.available:
            raise
        log.info("fetch_fallback_render", url=url, reason="http_error", error=str(exc))
        html = await renderer.render(url)
        return FetchResult(url=url, kind=FetchKind.html, html=html, rendered=True)

    body = resp.text
    marker = detect_challenge(body)
    if marker is not None:
        if not renderer.available:
            log.info("challenge_detected", url=url, marker=marker, status=resp.status_code)
            return FetchResult(
                url=url,
                kind=FetchKind.challenge,
                html=body,
                status_code=resp.status_code,
                marker=marker,
            )
        log.info("fetch_render_challenge", url=url, marker=marker, status=resp.status_code)
        html = await renderer.render(url)
        return FetchResult(url=url, kind=FetchKind.html, html=html, rendered=True, marker=marker)

    if resp.status_code in RETRYABLE_STATUS:
        if not renderer.available:
            raise TransientNetworkError(f"fetch failed: HTTP {resp.status_code} for {url}")
        log.info("fetch_fallback_render", url=url, reason="http_status", status=resp.status_code)
        html = await renderer.render(url)
        return FetchResult(url=url, kind=FetchKind.html, html=html, rendered=True)

    log.debug("fetch_ok", url=url, status=resp.status_code, chars=len(body))
    return FetchResult(url=url, kind=FetchKind.html, html=body, status_code=resp.status_code)
