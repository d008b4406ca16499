"""Article extraction from raw HTML.

``extract_article`` walks the regions picked by the job's CSS selectors and
turns them into a single ASCII text body. Images contribute their URL as a
token so the stored body keeps their position; captions are dropped because
they repeat or annotate the surrounding text.
"""

from __future__ import annotations

import re
import urllib.parse as urlparse
from datetime import datetime
from typing import Iterable

import dateutil.parser
from bs4 import BeautifulSoup, Tag
from bs4.element import CData, Comment, Declaration, Doctype, NavigableString, ProcessingInstruction
from soupsieve import SelectorSyntaxError

from models import Article

from .errors import InsufficientContent, MissingConfig, NotEnglish

MIN_ARTICLE_WORDS = 200

# Removed inside each selected region before it is walked.
NOISE_SELECTOR = "script, style, noscript, iframe, form, header, footer, nav, aside"
CAPTION_TAGS = frozenset({"figcaption", "caption"})

_NON_ASCII_RE = re.compile(r"[^\x00-\x7F]")
_SKIPPED_STRINGS = (Comment, CData, ProcessingInstruction, Declaration, Doctype)


def keep_only_english(text: str) -> str:
    """Drop non-ASCII characters and collapse whitespace."""

    if not text:
        return ""
    return " ".join(_NON_ASCII_RE.sub("", text).split())


def count_words(text: str) -> int:
    return len(text.split())


def _image_source(node: Tag, base_url: str | None) -> str | None:
    src = (node.get("src") or node.get("data-src") or "").strip()
    if not src:
        return None
    if base_url:
        try:
            return urlparse.urljoin(base_url, src)
        except ValueError:
            return src
    return src


def _region_tokens(root: Tag, base_url: str | None) -> list[str]:
    """Return text tokens for ``root`` in document (depth-first) order."""

    tokens: list[str] = []
    stack = list(reversed(root.contents))
    while stack:
        node = stack.pop()
        if isinstance(node, NavigableString):
            if isinstance(node, _SKIPPED_STRINGS):
                continue
            token = keep_only_english(str(node).strip())
            if token:
                tokens.append(token)
            continue
        if not isinstance(node, Tag):
            continue
        if node.name == "img":
            src = _image_source(node, base_url)
            if src:
                token = keep_only_english(src)
                if token:
                    tokens.append(token)
            continue
        if node.name in CAPTION_TAGS:
            continue
        stack.extend(reversed(node.contents))
    return tokens


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str | None:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    value = (tag.get("content") or "").strip()
    return value or None


def parse_published_date(value: str | None) -> datetime | None:
    """Parse an ISO-8601 or RFC 2822 timestamp, ``None`` when it is invalid."""

    if not value or not value.strip():
        return None
    try:
        return dateutil.parser.parse(value.strip())
    except (ValueError, OverflowError):
        return None


def extract_body(html: str, selectors: Iterable[str], *, base_url: str | None = None) -> tuple[BeautifulSoup, str]:
    """Return the parsed document and the concatenated text of ``selectors``."""

    selectors = [selector for selector in selectors if selector and selector.strip()]
    if not selectors:
        raise MissingConfig("no content selectors configured")

    soup = BeautifulSoup(html or "", "html.parser")
    parts: list[str] = []
    for selector in selectors:
        try:
            roots = soup.select(selector)
        except SelectorSyntaxError as exc:
            raise MissingConfig(f"invalid content selector {selector!r}: {exc}") from exc
        for root in roots:
            for noise in root.select(NOISE_SELECTOR):
                # nested matches are already gone with their ancestor
                if not noise.decomposed:
                    noise.decompose()
            parts.extend(_region_tokens(root, base_url))
    return soup, " ".join(parts)


def extract_article(html: str, selectors: Iterable[str], *, base_url: str | None = None) -> Article:
    """Extract and validate an English article from ``html``.

    Raises
    ------
    MissingConfig
        ``selectors`` is empty or contains an invalid CSS selector.
    InsufficientContent
        Fewer than :data:`MIN_ARTICLE_WORDS` words were extracted.
    NotEnglish
        The ``<html lang>`` attribute is absent or not English.
    """

    soup, content = extract_body(html, selectors, base_url=base_url)

    words = count_words(content)
    if words < MIN_ARTICLE_WORDS:
        raise InsufficientContent(f"Article has {words} words, fewer than {MIN_ARTICLE_WORDS}")

    html_tag = soup.find("html")
    lang = (html_tag.get("lang") or "").strip() if isinstance(html_tag, Tag) else ""
    if not lang.lower().startswith("en"):
        raise NotEnglish(f"Not an English article (lang={lang or 'missing'})")

    description = _meta_content(soup, name="description") or _meta_content(soup, property="og:description")
    published = _meta_content(soup, property="article:published_time")
    if published is None:
        time_tag = soup.find("time", attrs={"datetime": True})
        if isinstance(time_tag, Tag):
            published = time_tag.get("datetime")

    title_tag = soup.find("title")
    title = keep_only_english(title_tag.get_text()) if title_tag is not None else ""

    return Article(
        title=title,
        content=content,
        lang=lang,
        description=keep_only_english(description) if description else None,
        image=_meta_content(soup, property="og:image"),
        author=_meta_content(soup, name="author"),
        published_date=parse_published_date(published),
    )
