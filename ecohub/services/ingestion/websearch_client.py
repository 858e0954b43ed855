"""Source client that discovers opportunities through a keyless web search.

Unlike the chat-completion sources this client needs no API key, so it
keeps producing candidates when no provider is configured.

Strategy
--------
1. Query the DuckDuckGo HTML endpoint and read the result links (the real
   target sits in the ``uddg`` parameter of each redirect link).
2. Drop excluded domains (social networks, paywalled news, aggregators)
   and duplicate URLs, then move priority domains (Malaysian government
   agencies and ecosystem bodies) to the front.
3. Fetch the top ``max_pages`` pages concurrently and keep the sentences
   that talk about funding, plus any opportunity type, deadline, amount
   and sector found in the text.

Each kept page becomes one ``search_results`` record typed as an
opportunity.  A page that cannot be fetched, or has too little text, is
skipped; only a failed search request fails the source.
"""

from __future__ import annotations

import asyncio
import html
import re
from typing import Any
from urllib.parse import unquote, urlparse

import httpx
import structlog

from ecohub.models.enums import SourceType
from ecohub.models.ingestion import IngestionQuery, RawBatch
from ecohub.services.ingestion.sources import DEFAULT_SOURCE_TIMEOUT, SourceClient

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_URL = "https://html.duckduckgo.com"
SEARCH_PATH = "/html/"

PRIORITY_DOMAINS: tuple[str, ...] = (
    "gov.my",
    "cradle.com.my",
    "mosti.gov.my",
    "sidec.com.my",
    "mdec.my",
    "avpn.asia",
    "techcrunch.com",
    "startupmalaysia.com",
)

EXCLUDED_DOMAINS: tuple[str, ...] = (
    "medium.com",
    "linkedin.com",
    "naukri.com",
    "akamai.com",
    "x.com",
    "reuters.com",
    "cbinsights.com",
    "openai.com",
    "sp-edge.com",
    "accuweather.com",
    "blockchain-council.org",
    "youtube.com",
)

_MAX_SEARCH_RESULTS = 8
_MIN_CONTENT_LENGTH = 50
_MAX_PAGE_TEXT = 10_000
_PAGE_TIMEOUT = 5.0  # seconds

# Regex helpers for HTML parsing of search result and article pages.
_RESULT_LINK_RE = re.compile(
    r"<a[^>]*href=\"([^\"]*uddg=[^\"]*)\"[^>]*>(.*?)</a>",
    re.DOTALL | re.IGNORECASE,
)
_UDDG_RE = re.compile(r"uddg=([^&\"]+)")
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.DOTALL | re.IGNORECASE)
_NOISE_RE = re.compile(r"<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_SENTENCE_RE = re.compile(r"[.!?]+")

_FUNDING_WORDS = ("fund", "grant", "startup", "entrepreneur", "malaysia", "rm ", "million", "thousand", "capital")

# Checked in order; the first hit wins.
_OPPORTUNITY_TYPES: tuple[tuple[str, str], ...] = (
    ("grant", "grant"),
    ("accelerator", "accelerator"),
    ("incubator", "incubator"),
    ("competition", "competition"),
    ("fund", "investment"),
)

_DEADLINE_RES = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"deadline[:\s]+([^.]+)",
        r"apply by[:\s]+([^.]+)",
        r"submission[:\s]+([^.]+)",
        r"closes?[:\s]+([^.]+)",
    )
)

_AMOUNT_RES = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\brm\s?[\d,.]+(?:\s*(?:million|thousand|mil|k))?",
        r"\busd\s?[\d,.]+(?:\s*(?:million|thousand))?",
        r"\$[\d,.]+(?:\s*(?:million|thousand))?",
        r"up to\s+[\d,.]+",
    )
)

_SECTORS = (
    "fintech",
    "healthtech",
    "edtech",
    "agritech",
    "agtech",
    "cleantech",
    "blockchain",
    "artificial intelligence",
    "machine learning",
    "iot",
    "cybersecurity",
    "e-commerce",
    "logistics",
    "transportation",
    "energy",
    "sustainability",
)
_SECTOR_RES = tuple((sector, re.compile(rf"\b{re.escape(sector)}\b", re.IGNORECASE)) for sector in _SECTORS)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _strip_html(text: str) -> str:
    """Remove HTML tags, decode entities and collapse whitespace."""
    return _WS_RE.sub(" ", html.unescape(_TAG_RE.sub(" ", text))).strip()


def _domain(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def _has_domain(url: str, domains: tuple[str, ...]) -> bool:
    host = _domain(url)
    return any(host == d or host.endswith(f".{d}") for d in domains)


def build_search_query(query: IngestionQuery) -> str:
    parts = [query.sector or "startup", "funding opportunities"]
    if query.geography:
        parts.append(query.geography)
    parts.extend(query.keywords)
    parts.append("startup grants")
    return " ".join(parts)


def parse_search_results(page: str) -> list[tuple[str, str]]:
    """Return ``(url, title)`` pairs from a DuckDuckGo HTML result page.

    Excluded domains and repeated URLs are dropped, priority domains are
    moved to the front (keeping their relative order) and at most
    ``_MAX_SEARCH_RESULTS`` links are read from the page.
    """
    links: list[tuple[str, str]] = []
    seen: set[str] = set()
    for href, anchor in _RESULT_LINK_RE.findall(page):
        target = _UDDG_RE.search(href)
        if not target:
            continue
        url = unquote(html.unescape(target.group(1)))
        if not url.startswith("http") or url in seen:
            continue
        seen.add(url)
        links.append((url, _strip_html(anchor)))
        if len(links) >= _MAX_SEARCH_RESULTS:
            break

    crawlable = [(url, title) for url, title in links if not _has_domain(url, EXCLUDED_DOMAINS)]
    priority = [link for link in crawlable if _has_domain(link[0], PRIORITY_DOMAINS)]
    others = [link for link in crawlable if not _has_domain(link[0], PRIORITY_DOMAINS)]
    return priority + others


def page_text(page: str) -> str:
    """Readable text of an HTML page, truncated."""
    return _strip_html(_NOISE_RE.sub(" ", page))[:_MAX_PAGE_TEXT]


def page_title(page: str) -> str | None:
    match = _TITLE_RE.search(page)
    if not match:
        return None
    return _strip_html(match.group(1)) or None


def relevant_excerpt(text: str) -> str:
    """Up to three funding-related sentences, or the opening of the text."""
    sentences = [s.strip() for s in _SENTENCE_RE.split(text) if len(s.strip()) > 20]
    relevant = [s for s in sentences if any(w in s.lower() for w in _FUNDING_WORDS)]
    excerpt = ". ".join(relevant[:3]).strip()
    if len(excerpt) > _MIN_CONTENT_LENGTH:
        return f"{excerpt}."
    return text[:300].strip()


def extract_details(text: str) -> dict[str, str]:
    """Opportunity type, deadline, amount and sector mentioned in *text*."""
    details: dict[str, str] = {}
    lower = text.lower()

    for needle, opportunity_type in _OPPORTUNITY_TYPES:
        if needle in lower:
            details["opportunity_type"] = opportunity_type
            break

    for pattern in _DEADLINE_RES:
        match = pattern.search(text)
        if match:
            details["deadline"] = match.group(1).strip()[:50]
            break

    for pattern in _AMOUNT_RES:
        match = pattern.search(text)
        if match:
            details["amount"] = match.group(0).strip()
            break

    for sector, pattern in _SECTOR_RES:
        if pattern.search(text):
            details["sector"] = sector
            break

    return details


# ---------------------------------------------------------------------------
# WebSearchSourceClient
# ---------------------------------------------------------------------------


class WebSearchSourceClient(SourceClient):
    """Source backed by a keyless web search plus page scraping.

    Parameters
    ----------
    source_id:
        Identifier of this source.
    base_url:
        Root of the DuckDuckGo HTML endpoint.
    max_pages:
        Number of top-ranked result pages to fetch.
    timeout:
        Per-fetch timeout in seconds, covering search and page fetches.
    transport:
        Optional ``httpx`` transport (used by tests).
    """

    source_type = SourceType.SEARCH_RESULTS

    def __init__(
        self,
        source_id: str = "web_search",
        *,
        base_url: str = BASE_URL,
        max_pages: int = 3,
        timeout: float = DEFAULT_SOURCE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(source_id, timeout=timeout)
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self._max_pages = max_pages
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "User-Agent": "EcoHub-Ingestion/1.0 (startup ecosystem directory)",
                "Accept": "text/html,application/xhtml+xml",
            },
            follow_redirects=True,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _fetch(self, query: IngestionQuery) -> RawBatch:
        search_query = build_search_query(query)
        response = await self._client.get(SEARCH_PATH, params={"q": search_query})
        response.raise_for_status()

        links = parse_search_results(response.text)
        logger.debug("ingestion.websearch_links", source=self.source_id, query=search_query, links=len(links))

        pages = await asyncio.gather(*(self._scrape(url, title) for url, title in links[: self._max_pages]))
        records = [record for record in pages if record is not None]
        return RawBatch(source_id=self.source_id, source_type=self.source_type, records=records)

    async def _scrape(self, url: str, title: str) -> dict[str, Any] | None:
        """Fetch one result page; ``None`` when it is unusable."""
        try:
            response = await self._client.get(url, timeout=min(_PAGE_TIMEOUT, self.timeout))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.debug("ingestion.websearch_page_failed", url=url, error=str(exc) or type(exc).__name__)
            return None

        text = page_text(response.text)
        if len(text) <= _MIN_CONTENT_LENGTH:
            return None

        return {
            "title": title or page_title(response.text) or _domain(url),
            "description": relevant_excerpt(text),
            "type": "opportunity",
            "url": url,
            "metadata": extract_details(text),
        }
