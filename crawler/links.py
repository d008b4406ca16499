"""Same-origin link discovery."""

from __future__ import annotations

import urllib.parse as urlparse

from bs4 import BeautifulSoup

# Paths ending with these suffixes are assets, not article pages.
IGNORED_EXTENSIONS: tuple[str, ...] = (
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".bmp",
    ".webp",
    ".svg",
    ".ico",
    ".tiff",
    ".mp4",
    ".webm",
    ".avi",
    ".mov",
    ".mkv",
    ".mp3",
    ".wav",
    ".ogg",
    ".pdf",
    ".doc",
    ".docx",
    ".xls",
    ".xlsx",
    ".ppt",
    ".pptx",
    ".zip",
    ".rar",
    ".7z",
    ".gz",
    ".css",
    ".js",
)

_DEFAULT_PORTS = {"http": 80, "https": 443}


def url_origin(url: str) -> tuple[str, str, int | None] | None:
    """Return ``(scheme, host, port)`` for an http(s) URL, else ``None``.

    Default ports are made explicit so ``https://a.com`` and
    ``https://a.com:443`` share an origin.
    """

    try:
        parsed = urlparse.urlsplit(url)
        scheme = parsed.scheme.lower()
        host = (parsed.hostname or "").lower()
        port = parsed.port
    except ValueError:
        return None
    if scheme not in _DEFAULT_PORTS or not host:
        return None
    return scheme, host, port or _DEFAULT_PORTS[scheme]


def is_ignored_path(path: str) -> bool:
    lowered = path.lower()
    return any(lowered.endswith(ext) for ext in IGNORED_EXTENSIONS)


def extract_links(html: str, origin_url: str) -> set[str]:
    """Return canonical same-origin page URLs linked from ``html``.

    Relative ``href`` values are resolved against ``origin_url``. Query
    strings and fragments are dropped, so every variant of a page is one
    URL. Values that cannot be parsed (for example ``javascript:void(0)`` or
    broken IPv6 hosts) are skipped.
    """

    origin = url_origin(origin_url)
    if origin is None:
        return set()

    soup = BeautifulSoup(html or "", "html.parser")
    links: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "").strip()
        if not href:
            continue
        try:
            absolute = urlparse.urljoin(origin_url, href)
            absolute, _fragment = urlparse.urldefrag(absolute)
            parsed = urlparse.urlsplit(absolute)
        except ValueError:
            continue
        if url_origin(absolute) != origin:
            continue
        if is_ignored_path(parsed.path):
            continue
        canonical = urlparse.urlunsplit(
            (parsed.scheme.lower(), parsed.netloc.lower(), parsed.path or "/", "", "")
        )
        links.add(canonical)
    return links
