"""Map free-form input (URLs, paths, message ids) to a connector tool call.

Patterns are checked in descending priority. Matches that name a connector
which is not registered are skipped, so the generic web pattern still wins
for a URL when a more specific connector is disabled.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, Field


class ResolvedAction(BaseModel):
    """A connector tool call derived from one input string."""

    connector: str
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = 1.0
    description: str = ""
    pattern: str = ""


@dataclass(frozen=True)
class InputPattern:
    id: str
    connector: str
    tool: str
    regex: re.Pattern
    # capture group -> tool argument
    arg_mapping: Dict[str, str]
    priority: int
    description: str
    example: str
    confidence: float = 1.0
    transform: Optional[Callable[[Dict[str, str]], Dict[str, str]]] = None

    def arguments(self, match: re.Match) -> Dict[str, Any]:
        groups = {k: v for k, v in match.groupdict().items() if v is not None}
        if self.transform is not None:
            groups = self.transform(groups)
        return {arg: groups[cap] for cap, arg in self.arg_mapping.items() if cap in groups}


def _file_uri_path(groups: Dict[str, str]) -> Dict[str, str]:
    return {"path": unquote(urlparse(groups["uri"]).path)}


def _expand_home(groups: Dict[str, str]) -> Dict[str, str]:
    return {"path": os.path.expanduser(groups["path"])}


def default_patterns() -> List[InputPattern]:
    return [
        InputPattern(
            id="file_uri",
            connector="localfs",
            tool="read_file",
            regex=re.compile(r"^(?P<uri>file://\S+)$"),
            arg_mapping={"path": "path"},
            priority=100,
            description="file:// URI of a local document",
            example="file:///home/me/notes/todo.md",
            transform=_file_uri_path,
        ),
        InputPattern(
            id="local_path",
            connector="localfs",
            tool="read_file",
            regex=re.compile(r"^(?P<path>~?/[^\x00]+)$"),
            arg_mapping={"path": "path"},
            priority=60,
            description="Absolute or home-relative file path",
            example="~/notes/todo.md",
            confidence=0.9,
            transform=_expand_home,
        ),
        InputPattern(
            id="outlook_message_id",
            connector="microsoft-graph",
            tool="get_message",
            regex=re.compile(r"^(?P<id>AAMk[A-Za-z0-9+/=_-]{20,})$"),
            arg_mapping={"id": "id"},
            priority=80,
            description="Outlook message id",
            example="AAMkAGI2TG93AAA=AAAAAAEMAAAiIsqMbYjsT5e-T7KzowPTAAAAAAAA",
            confidence=0.8,
        ),
        InputPattern(
            id="web_url",
            connector="web",
            tool="fetch_page",
            regex=re.compile(r"^(?P<url>https?://[^\s/$.?#][^\s]*)$", re.IGNORECASE),
            arg_mapping={"url": "url"},
            priority=10,
            description="Generic web URL",
            example="https://example.com/page",
            confidence=0.5,
        ),
    ]


class SmartResolver:
    def __init__(self, patterns: Optional[Iterable[InputPattern]] = None) -> None:
        chosen = default_patterns() if patterns is None else list(patterns)
        self.patterns = sorted(chosen, key=lambda p: p.priority, reverse=True)

    def resolve_all(self, text: str, available: Optional[Iterable[str]] = None) -> List[ResolvedAction]:
        """Every match for ``text``, highest priority first."""
        text = text.strip()
        if not text:
            return []
        allowed = None if available is None else set(available)
        actions = []
        for pattern in self.patterns:
            if allowed is not None and pattern.connector not in allowed:
                continue
            match = pattern.regex.match(text)
            if match is None:
                continue
            actions.append(
                ResolvedAction(
                    connector=pattern.connector,
                    tool=pattern.tool,
                    arguments=pattern.arguments(match),
                    confidence=pattern.confidence,
                    description=pattern.description,
                    pattern=pattern.id,
                )
            )
        return actions

    def resolve(self, text: str, available: Optional[Iterable[str]] = None) -> Optional[ResolvedAction]:
        actions = self.resolve_all(text, available)
        return actions[0] if actions else None

    def list_patterns(self, available: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        allowed = None if available is None else set(available)
        return [
            {
                "id": p.id,
                "connector": p.connector,
                "tool": p.tool,
                "description": p.description,
                "example": p.example,
                "priority": p.priority,
            }
            for p in self.patterns
            if allowed is None or p.connector in allowed
        ]
