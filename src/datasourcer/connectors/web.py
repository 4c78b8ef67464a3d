"""Public web page connector.

Fetches pages over HTTP, extracts readable text and links, and can crawl a
site breadth-first to run a throwaway keyword search over it. Nothing is
persisted between calls.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Set, Tuple
from urllib.parse import urldefrag, urlparse

import httpx

from datasourcer.connectors.base_connector import RESPONSE_FORMAT_PROPERTY, Connector, is_detailed
from datasourcer.connectors.http import RetryPolicy, make_client, send_with_backoff
from datasourcer.cpu_pool import spawn_cpu
from datasourcer.exceptions import ConnectorError, InvalidInput
from datasourcer.mcp.types import ToolDescriptor
from datasourcer.parsers.base_parser import ParsedDocument
from datasourcer.parsers.html_parser import HTMLParser
from datasourcer.search.ephemeral import search_documents

logger = logging.getLogger(__name__)

CONCISE_TEXT_CHARS = 4000
CRAWL_CONCURRENCY = 5
HTML_TYPES = ("text/html", "application/xhtml+xml")


def _check_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise InvalidInput(f"Expected an absolute http(s) URL, got: {url}")
    return urldefrag(url)[0]


def _same_host(url: str, root: str) -> bool:
    return (urlparse(url).hostname or "").lower() == (urlparse(root).hostname or "").lower()


def _parse_page(body: str, url: str, content_type: str) -> ParsedDocument:
    if any(t in content_type for t in HTML_TYPES) or not content_type:
        return HTMLParser().parse_content(body, base_url=url)
    return ParsedDocument(text=body, title=url, metadata={"url": url})


class WebConnector(Connector):
    name = "web"
    description = "Fetch public web pages, extract their links and search small sites."

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.retry_policy = RetryPolicy.from_config(self.settings.retry)

    def _client(self) -> httpx.AsyncClient:
        return make_client(self.settings.http)

    def tools(self) -> List[ToolDescriptor]:
        url_prop = {"type": "string", "format": "uri", "description": "Absolute http(s) URL"}
        return [
            ToolDescriptor(
                name="fetch_page",
                title="Fetch page",
                description="Download a web page and return its readable text.",
                input_schema={
                    "type": "object",
                    "properties": {"url": url_prop, "response_format": RESPONSE_FORMAT_PROPERTY},
                    "required": ["url"],
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True, "openWorldHint": True},
            ),
            ToolDescriptor(
                name="extract_links",
                title="Extract links",
                description="List the absolute http(s) links found on a page.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "url": url_prop,
                        "same_host_only": {"type": "boolean", "default": False},
                    },
                    "required": ["url"],
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True, "openWorldHint": True},
            ),
            ToolDescriptor(
                name="search_site",
                title="Search site",
                description=(
                    "Crawl up to max_pages pages starting at url (breadth-first) and rank them "
                    "against query. Good for documentation sites without their own search."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "url": url_prop,
                        "query": {"type": "string", "minLength": 1},
                        "max_pages": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10},
                        "k": {"type": "integer", "minimum": 1, "maximum": 20, "default": 5},
                        "same_host_only": {"type": "boolean", "default": True},
                    },
                    "required": ["url", "query"],
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True, "openWorldHint": True},
            ),
        ]

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> Tuple[str, ParsedDocument]:
        resp = await send_with_backoff(client, "GET", url, policy=self.retry_policy, label=f"GET {url}")
        content_type = resp.headers.get("content-type", "").lower()
        final_url = str(resp.url) if resp.url else url
        doc = await spawn_cpu(_parse_page, resp.text, final_url, content_type)
        doc.metadata["status"] = resp.status_code
        doc.metadata["content_type"] = content_type
        return final_url, doc

    async def tool_fetch_page(self, args: Dict[str, Any]) -> Dict[str, Any]:
        url = _check_url(args["url"])
        async with self._client() as client:
            final_url, doc = await self._fetch(client, url)
        if is_detailed(args):
            return {"url": final_url, **doc.to_dict(), "links": doc.links}
        return {
            "url": final_url,
            "title": doc.title,
            "text": doc.text[:CONCISE_TEXT_CHARS],
            "truncated": len(doc.text) > CONCISE_TEXT_CHARS,
        }

    async def tool_extract_links(self, args: Dict[str, Any]) -> Dict[str, Any]:
        url = _check_url(args["url"])
        async with self._client() as client:
            final_url, doc = await self._fetch(client, url)
        links = doc.links
        if args.get("same_host_only"):
            links = [link for link in links if _same_host(link, final_url)]
        return {"url": final_url, "links": links, "count": len(links)}

    async def _crawl(
        self, start_url: str, *, max_pages: int, same_host_only: bool
    ) -> List[ParsedDocument]:
        seen: Set[str] = {start_url}
        queue: asyncio.Queue[str] = asyncio.Queue()
        pages: List[ParsedDocument] = []

        def enqueue_links(doc: ParsedDocument) -> None:
            for link in doc.links:
                if link in seen or (same_host_only and not _same_host(link, start_url)):
                    continue
                seen.add(link)
                if len(seen) <= max_pages * 5:
                    queue.put_nowait(link)

        async with self._client() as client:
            # The start page must load; later pages are best effort
            _, first = await self._fetch(client, start_url)
            pages.append(first)
            enqueue_links(first)

            async def worker() -> None:
                while len(pages) < max_pages:
                    try:
                        current = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    try:
                        _, doc = await self._fetch(client, current)
                    except ConnectorError as e:
                        logger.warning("Skipping %s during crawl: %s", current, e)
                        continue
                    if len(pages) >= max_pages:
                        return
                    pages.append(doc)
                    enqueue_links(doc)

            # Workers exit on an empty queue, so refill rounds until the frontier dries up
            while len(pages) < max_pages and not queue.empty():
                await asyncio.gather(*(worker() for _ in range(CRAWL_CONCURRENCY)))
        return pages[:max_pages]

    async def tool_search_site(self, args: Dict[str, Any]) -> Dict[str, Any]:
        url = _check_url(args["url"])
        query = args["query"]
        docs = await self._crawl(
            url,
            max_pages=int(args.get("max_pages") or 10),
            same_host_only=bool(args.get("same_host_only", True)),
        )
        hits = await spawn_cpu(search_documents, docs, query, k=int(args.get("k") or 5))
        return {"query": query, "url": url, "pages_crawled": len(docs), "results": hits}
