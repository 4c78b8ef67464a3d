"""HTML parser producing readable text, heading sections and outgoing links.

Used for web pages, local ``.html`` files and HTML mail bodies.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup  # type: ignore[import-untyped]

from .base_parser import BaseParser, ParsedDocument, SectionInfo

_NOISE_TAGS = ["script", "style", "noscript", "template", "svg"]


def normalize_link(base: str, href: str) -> Optional[str]:
    """Resolve ``href`` against ``base``; None for non-http(s) targets."""
    if not href:
        return None
    absolute, _ = urldefrag(urljoin(base, href.strip()))
    if urlparse(absolute).scheme not in ("http", "https"):
        return None
    return absolute


class HTMLParser(BaseParser):
    """Parser for HTML content."""

    suffixes = frozenset({".html", ".htm", ".xhtml"})

    def parse_content(
        self,
        content: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        base_url: Optional[str] = None,
    ) -> ParsedDocument:
        soup = BeautifulSoup(content, "html.parser")
        for tag in soup(_NOISE_TAGS):
            tag.decompose()

        title = ""
        if soup.title and soup.title.string:
            title = soup.title.string.strip()

        links: List[str] = []
        if base_url:
            seen = set()
            for a in soup.find_all("a", href=True):
                url = normalize_link(base_url, a.get("href", ""))
                if url and url not in seen:
                    seen.add(url)
                    links.append(url)

        body = soup.body or soup
        lines = [line.strip() for line in body.get_text("\n").splitlines()]
        text = "\n".join(line for line in lines if line)

        sections: List[SectionInfo] = []
        cursor = 0
        for tag in body.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
            heading = tag.get_text(" ", strip=True)
            if not heading:
                continue
            offset = text.find(heading, cursor)
            if offset >= 0:
                cursor = offset + len(heading)
            sections.append(
                SectionInfo(title=heading, level=int(tag.name[1]), start_offset=offset if offset >= 0 else None)
            )

        if not title and sections:
            title = sections[0].title

        meta = dict(metadata or {})
        if base_url:
            meta.setdefault("url", base_url)
        return ParsedDocument(text=text, title=title, sections=sections, links=links, metadata=meta)


def html_to_text(html: str) -> str:
    """Plain-text rendering of an HTML fragment."""
    return HTMLParser().parse_content(html).text
