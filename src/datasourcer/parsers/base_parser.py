"""Document parsing primitives shared by the connectors.

Parsers turn raw file or page content into a ``ParsedDocument``: plain text,
heading sections and a small metadata map. Parsing is synchronous and
CPU-bound; async callers dispatch it through ``datasourcer.cpu_pool``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from datasourcer.exceptions import IoError, ParseError


@dataclass(slots=True)
class SectionInfo:
    """A heading within a document.

    Attributes
    ----------
    title: str
        Heading text.
    level: int
        1 for H1, 2 for H2 and so on.
    start_offset: int | None
        Character offset in ``ParsedDocument.text`` where the heading starts.
    """

    title: str
    level: int
    start_offset: Optional[int] = None


@dataclass(slots=True)
class ParsedDocument:
    text: str = ""
    title: str = ""
    sections: List[SectionInfo] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, *, include_text: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "title": self.title,
            "sections": [
                {"title": s.title, "level": s.level, "start_offset": s.start_offset}
                for s in self.sections
            ],
            "metadata": dict(self.metadata),
        }
        if include_text:
            out["text"] = self.text
        return out


class BaseParser(ABC):
    """Abstract parser interface."""

    suffixes: frozenset = frozenset()

    def can_parse(self, path: Path) -> bool:
        return path.suffix.lower() in self.suffixes

    def parse(self, path: Path) -> ParsedDocument:
        """Read ``path`` as UTF-8 and parse it."""
        try:
            raw = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise IoError(f"Cannot read {path}: {e}") from e
        return self.parse_content(raw, metadata={"source_path": str(path)})

    @abstractmethod
    def parse_content(
        self, content: str, *, metadata: Optional[Dict[str, Any]] = None
    ) -> ParsedDocument:
        """Parse in-memory content; raises ``ParseError`` on malformed input."""
        raise NotImplementedError


class PlainTextParser(BaseParser):
    suffixes = frozenset({".txt", ".text", ".log", ".csv", ".json", ".yaml", ".yml", ".toml", ".rst"})

    def parse_content(
        self, content: str, *, metadata: Optional[Dict[str, Any]] = None
    ) -> ParsedDocument:
        if "\x00" in content:
            raise ParseError("Binary content is not supported")
        first = next((line.strip() for line in content.splitlines() if line.strip()), "")
        return ParsedDocument(text=content, title=first[:120], metadata=metadata or {})
