"""Markdown parser.

Markdown is rendered to HTML with the ``markdown`` library and then handed
to ``HTMLParser`` so headings and text come out the same way for every
source.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import markdown as md  # type: ignore[import-untyped]

from .base_parser import BaseParser, ParsedDocument, PlainTextParser
from .html_parser import HTMLParser

_EXTENSIONS = ["tables", "fenced_code", "sane_lists"]


class MarkdownParser(BaseParser):
    """Parser for `.md` and `.mdx` files or content strings."""

    suffixes = frozenset({".md", ".markdown", ".mdx"})

    def __init__(self) -> None:
        self._html = HTMLParser()

    def parse_content(
        self, content: str, *, metadata: Optional[Dict[str, Any]] = None
    ) -> ParsedDocument:
        html = md.markdown(content, extensions=_EXTENSIONS)
        return self._html.parse_content(html, metadata=metadata)


_PARSERS: List[BaseParser] = [MarkdownParser(), HTMLParser()]
_FALLBACK = PlainTextParser()


def parser_for(path: Path) -> BaseParser:
    """Pick a parser by file suffix; anything unknown is read as plain text."""
    for parser in _PARSERS:
        if parser.can_parse(path):
            return parser
    return _FALLBACK
