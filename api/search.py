"""
Web Search & Fetch
------------------
Collaborator behind the web_search and fetch_url built-ins.

Runs on the engine's worker thread, so it uses the blocking httpx
client. Every request, redirects included, passes the domain allowlist.
"""

from typing import Any, Callable, List, Optional
import logging
import re

import httpx

from core.errors import SecurityRejectedError, ToolsmithError

from .client import USER_AGENT, classify_status


DUCKDUCKGO_URL = "https://api.duckduckgo.com/"
MAX_RELATED_TOPICS = 8
MAX_PAGE_CHARS = 3000
RESEARCH_SOURCE_CHARS = 500
RESEARCH_DEPTHS = {"quick": 3, "normal": 5, "deep": 10}

_SCRIPT_STYLE = re.compile(r"<(script|style)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]*>")
_URL = re.compile(r"https?://[^\s)\]}]+")


class SearchError(ToolsmithError):
    """Search backend or page fetch failed."""
    pass


def strip_html(html: str) -> str:
    """Drop scripts, styles and tags; collapse whitespace."""
    text = _SCRIPT_STYLE.sub(" ", html)
    text = _TAG.sub(" ", text)
    return " ".join(text.split())


def truncate(text: str, limit: int = MAX_PAGE_CHARS) -> str:
    if len(text) > limit:
        return f"{text[:limit]}...(truncated)"
    return text


class WebSearchClient:
    """DuckDuckGo instant answers and allowlisted page fetches."""

    def __init__(
        self,
        url_guard: Optional[Callable[[str], Any]] = None,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
        search_url: str = DUCKDUCKGO_URL,
    ):
        self._url_guard = url_guard
        self._timeout = timeout_seconds
        self._transport = transport
        self._search_url = search_url
        self._logger = logging.getLogger("toolsmith.api.search")

    def _check_url(self, request: httpx.Request) -> None:
        if self._url_guard is None:
            return
        verdict = self._url_guard(str(request.url))
        if not verdict.allowed:
            raise SecurityRejectedError(verdict.reason)

    def _client(self, guarded: bool) -> httpx.Client:
        hooks = {"request": [self._check_url]} if guarded else {}
        return httpx.Client(
            timeout=self._timeout,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            event_hooks=hooks,
        )

    def _get(self, url: str, guarded: bool, params: Optional[dict] = None) -> httpx.Response:
        try:
            with self._client(guarded) as client:
                response = client.get(url, params=params)
        except httpx.TimeoutException:
            raise SearchError(f"Request to {url} timed out") from None
        except httpx.HTTPError as e:
            raise SearchError(f"Request to {url} failed: {e}") from e

        _, reason = classify_status(response.status_code)
        if reason is not None:
            raise SearchError(f"Fetch failed: {reason}")
        return response

    def search(self, query: str) -> str:
        """Instant-answer search: abstract first, then related topics."""
        query = query.strip()
        if not query:
            raise SearchError("Search query is empty")

        response = self._get(
            self._search_url,
            guarded=False,
            params={"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"},
        )
        try:
            data = response.json()
        except ValueError:
            raise SearchError("Search backend returned invalid JSON") from None

        results: List[str] = []

        abstract = data.get("Abstract") or ""
        if abstract:
            source = data.get("AbstractSource", "")
            url = data.get("AbstractURL", "")
            results.append(f"**{source}**\n{abstract}\n{url}")

        for topic in (data.get("RelatedTopics") or [])[:MAX_RELATED_TOPICS]:
            if not isinstance(topic, dict):
                continue
            text = topic.get("Text") or ""
            url = topic.get("FirstURL") or ""
            if text and url:
                results.append(f"• {text}\n  {url}")

        self._logger.info(f"Search '{query}' returned {len(results)} results")
        if not results:
            return f"No results found for: {query}"
        return f"Search results for '{query}':\n\n" + "\n\n".join(results)

    def fetch(self, url: str) -> str:
        """GET an allowlisted page and return its visible text."""
        response = self._get(url, guarded=True)
        content_type = response.headers.get("content-type", "")
        body = response.text
        text = strip_html(body) if "html" in content_type or "<" in body[:200] else body.strip()
        self._logger.info(f"Fetched {url} ({len(text)} chars)")
        return truncate(text)

    def research(self, topic: str, depth: str = "normal") -> str:
        """
        Search, then fetch the top result pages into one report.

        `depth` bounds how many source pages are fetched (quick 3,
        normal 5, deep 10). Sources that fail or sit outside the domain
        allowlist are skipped; a failed search fails the whole report.
        """
        if depth not in RESEARCH_DEPTHS:
            raise SearchError(
                f"Unknown research depth '{depth}' (expected one of: {', '.join(RESEARCH_DEPTHS)})"
            )
        max_sources = RESEARCH_DEPTHS[depth]

        search_result = self.search(topic)
        sections = [f"## Web Search Results\n\n{search_result}"]

        urls = list(dict.fromkeys(_URL.findall(search_result)))[:max_sources]
        sources: List[str] = []
        for url in urls:
            try:
                content = self.fetch(url)
            except (SearchError, SecurityRejectedError) as e:
                self._logger.warning(f"Research source skipped: {url} ({e})")
                continue
            sources.append(f"### {url}\n{truncate(content, RESEARCH_SOURCE_CHARS)}")

        if sources:
            sections.append("## Content from Sources\n\n" + "\n\n".join(sources))

        self._logger.info(
            f"Research '{topic.strip()}' ({depth}): {len(sources)}/{len(urls)} sources fetched"
        )
        return (
            f"# Research Report: {topic.strip()}\n\nDepth: {depth}\n\n"
            + "\n\n".join(sections)
            + "\n\n---\nResearch completed. Use this information to answer the question."
        )
