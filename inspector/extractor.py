"""Boilerplate-stripped text and same-host links from raw HTML."""

from __future__ import annotations

import re
import urllib.parse as urlparse
from dataclasses import dataclass, field

import structlog
from bs4 import BeautifulSoup, Tag

from .urls import host_of

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TEXT_LENGTH = 50_000

BLOCKED_SELECTORS: tuple[str, ...] = (
    "script",
    "style",
    "noscript",
    "iframe",
    "nav",
    "header",
    "footer",
    "aside",
    '[role="navigation"]',
    '[role="banner"]',
    '[role="complementary"]',
    ".advertisement",
    ".ad",
    ".sidebar",
    ".menu",
    ".cookie-banner",
    ".cookie-notice",
    ".gdpr-banner",
    "#cookie-consent",
    '[class*="cookie"]',
    '[id*="cookie"]',
    '[class*="privacy"]',
    '[id*="privacy"]',
    '[class*="gdpr"]',
    '[id*="gdpr"]',
)
# Never dropped even when their class/id matches a blocked marker.
PROTECTED_TAGS = {"html", "body"}

BOILERPLATE_PHRASES: tuple[str, ...] = (
    "cookie policy",
    "privacy policy",
    "terms of service",
    "terms and conditions",
    "accept cookies",
    "manage cookies",
    "cookie settings",
    "we use cookies",
    "this website uses cookies",
    "by continuing to use",
    "gdpr",
    "data protection",
    "cookie consent",
    "privacy notice",
    "legal notice",
)
BOILERPLATE_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in BOILERPLATE_PHRASES) + r")\b[^.!?]*[.!?]?",
    re.IGNORECASE,
)
WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class Extraction:
    """Result of :func:`extract_content`; empty when nothing could be parsed."""

    title: str = ""
    text: str = ""
    links: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.title or self.text or self.links)


def collapse_whitespace(text: str) -> str:
    return WHITESPACE_RE.sub(" ", text).strip()


def remove_boilerplate(text: str) -> str:
    """Drop every sentence fragment starting at a boilerplate phrase."""

    return collapse_whitespace(BOILERPLATE_RE.sub("", text))


def _strip_blocked(soup: BeautifulSoup) -> None:
    for selector in BLOCKED_SELECTORS:
        for node in soup.select(selector):
            if isinstance(node, Tag) and node.name not in PROTECTED_TAGS:
                node.decompose()


def _same_host_links(soup: BeautifulSoup, base_url: str) -> list[str]:
    base_host = host_of(base_url)
    if not base_host:
        return []
    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href:
            continue
        try:
            candidate = urlparse.urljoin(base_url, href)
        except ValueError:
            continue
        if not candidate.lower().startswith(("http://", "https://")):
            continue
        if host_of(candidate) != base_host or candidate in seen:
            continue
        seen.add(candidate)
        links.append(candidate)
    return links


def extract_content(
    html: str,
    base_url: str,
    *,
    max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
) -> Extraction:
    """Return title, cleaned body text and same-host links of ``html``.

    Links are absolute, resolved against ``base_url`` and restricted to its
    exact host. Parse problems yield an empty :class:`Extraction`.
    """

    if not html or not isinstance(html, str):
        return Extraction()
    try:
        soup = BeautifulSoup(html, "html.parser")
        _strip_blocked(soup)
        links = _same_host_links(soup, base_url)

        title = ""
        if soup.title is not None:
            title = collapse_whitespace(soup.title.get_text(" "))

        root = soup.body if isinstance(soup.body, Tag) else soup
        if root is soup and soup.title is not None:
            soup.title.decompose()
        text = remove_boilerplate(collapse_whitespace(root.get_text(" ")))
    except Exception as exc:  # noqa: BLE001
        logger.debug("extraction failed", url=base_url, error=str(exc))
        return Extraction()

    return Extraction(title=title, text=text[:max_text_length], links=links)
