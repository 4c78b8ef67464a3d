"""Federated search: one query, every searchable connector, one envelope.

Each connector contributes at most one search tool: the first tool whose name
contains ``search`` or ``query``, which declares a ``query`` property and
requires nothing else. Sources run concurrently, each under its own handle
lock and timeout; a failing or slow source becomes an entry in ``errors``
and the remaining results are still returned with ``partial`` set.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from datasourcer.connectors.registry import ConnectorHandle, ProviderRegistry
from datasourcer.exceptions import ConnectorError
from datasourcer.mcp.results import RESULT_LIST_KEYS
from datasourcer.mcp.types import ToolDescriptor

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_TIMEOUT_SECONDS = 10.0
SNIPPET_CHARS = 300

ID_KEYS = ("id", "path", "location", "url", "link")
TITLE_KEYS = ("title", "subject", "name")
SNIPPET_KEYS = ("snippet", "preview", "summary", "description", "text", "body")
URL_KEYS = ("url", "link", "webLink", "html_url", "location")
TOTAL_KEYS = ("total_results", "total_count", "totalCount")
LIMIT_KEYS = ("limit", "k", "max_results")


class MergeMode(str, Enum):
    GROUPED = "grouped"
    INTERLEAVED = "interleaved"


class FederationMeta(BaseModel):
    source_rank: int
    weight: float = 1.0
    score: Optional[float] = None


class UnifiedSearchResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str
    id: str
    title: str
    snippet: Optional[str] = None
    url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    federation: FederationMeta = Field(alias="_federation")

    def compute_score(self) -> float:
        # Reciprocal rank scaled by the source weight
        self.federation.score = (1.0 / self.federation.source_rank) * self.federation.weight
        return self.federation.score


class SourceResults(BaseModel):
    source: str
    results: List[UnifiedSearchResult] = Field(default_factory=list)
    count: int = 0
    total_available: Optional[int] = None
    duration_ms: Optional[int] = None


class SourceError(BaseModel):
    source: str
    error: str
    is_timeout: bool = False


class FederatedSearchResult(BaseModel):
    query: str
    merge_mode: MergeMode = MergeMode.GROUPED
    sources: Optional[List[SourceResults]] = None
    results: Optional[List[UnifiedSearchResult]] = None
    total_count: int = 0
    completed: List[str] = Field(default_factory=list)
    errors: List[SourceError] = Field(default_factory=list)
    partial: bool = False
    duration_ms: Optional[int] = None

    def add_source(self, source: SourceResults) -> None:
        self.total_count += source.count
        self.completed.append(source.source)
        if self.sources is None:
            self.sources = []
        self.sources.append(source)

    def add_error(self, source: str, error: str, *, is_timeout: bool = False) -> None:
        self.errors.append(SourceError(source=source, error=error, is_timeout=is_timeout))
        self.partial = True

    def interleave(self) -> None:
        """Flatten grouped sources into one list ordered by descending score."""
        merged = [r for s in self.sources or [] for r in s.results]
        for r in merged:
            r.compute_score()
        merged.sort(key=lambda r: r.federation.score or 0.0, reverse=True)
        self.results = merged
        self.sources = None
        self.merge_mode = MergeMode.INTERLEAVED

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        if self.merge_mode is MergeMode.GROUPED:
            payload.setdefault("sources", [])
        return payload


# ----- tool selection -----


def pick_search_tool(tools: Iterable[ToolDescriptor]) -> Optional[ToolDescriptor]:
    for tool in tools:
        if "search" not in tool.name and "query" not in tool.name:
            continue
        schema = tool.input_schema or {}
        properties = schema.get("properties") or {}
        required = set(schema.get("required") or [])
        if "query" in properties and required <= {"query"}:
            return tool
    return None


def search_arguments(tool: ToolDescriptor, query: str, limit: int) -> Dict[str, Any]:
    """Arguments for ``tool`` using only the properties it declares."""
    properties = (tool.input_schema or {}).get("properties") or {}
    args: Dict[str, Any] = {"query": query}
    for key in LIMIT_KEYS:
        if key in properties:
            maximum = properties[key].get("maximum")
            args[key] = min(limit, maximum) if isinstance(maximum, int) else limit
            break
    if "response_format" in properties:
        args["response_format"] = "concise"
    return args


# ----- normalization -----


def _first(item: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = item.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, str) and value.strip():
            return value
        if isinstance(value, int):
            return str(value)
    return None


def find_results(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in RESULT_LIST_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def total_available(payload: Any) -> Optional[int]:
    if not isinstance(payload, dict):
        return None
    for key in TOTAL_KEYS:
        value = payload.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def normalize_results(source: str, payload: Any, weight: float = 1.0) -> List[UnifiedSearchResult]:
    """Map a search tool's structured output onto ``UnifiedSearchResult``s.

    Items without any usable identifier are dropped; ranks keep counting
    across them so ``source_rank`` matches the position the source chose.
    """
    consumed = set(ID_KEYS) | set(TITLE_KEYS) | set(SNIPPET_KEYS) | set(URL_KEYS)
    out = []
    for rank, item in enumerate(find_results(payload), start=1):
        if not isinstance(item, dict):
            continue
        ident = _first(item, ID_KEYS)
        if ident is None:
            continue
        snippet = _first(item, SNIPPET_KEYS)
        if snippet is not None and len(snippet) > SNIPPET_CHARS:
            snippet = snippet[:SNIPPET_CHARS] + "..."
        out.append(
            UnifiedSearchResult(
                source=source,
                id=ident,
                title=_first(item, TITLE_KEYS) or ident,
                snippet=snippet,
                url=_first(item, URL_KEYS),
                metadata={
                    k: v
                    for k, v in item.items()
                    if k not in consumed and isinstance(v, (str, int, float, bool))
                },
                federation=FederationMeta(source_rank=rank, weight=weight),
            )
        )
    return out


# ----- engine -----


class FederatedSearch:
    def __init__(self, registry: ProviderRegistry, *, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.registry = registry
        self.timeout = timeout

    async def _targets(
        self, sources: Optional[List[str]], result: FederatedSearchResult
    ) -> List[Tuple[ConnectorHandle, ToolDescriptor]]:
        if sources is None:
            handles = await self.registry.handles()
        else:
            handles = [await self.registry.get(name) for name in dict.fromkeys(sources)]
        targets = []
        for handle in handles:
            async with handle.lock:
                try:
                    listed = await handle.connector.list_tools()
                except ConnectorError as e:
                    result.add_error(handle.name, str(e))
                    continue
            tool = pick_search_tool(listed.tools)
            if tool is not None:
                targets.append((handle, tool))
            elif sources is not None:
                result.add_error(handle.name, "No search tool found")
        return targets

    async def _search_one(
        self,
        handle: ConnectorHandle,
        tool: ToolDescriptor,
        query: str,
        limit: int,
        weight: float,
        timeout: float,
    ) -> Union[SourceResults, SourceError]:
        started = time.monotonic()

        async def call() -> Any:
            async with handle.lock:
                return await handle.connector.call_tool(tool.name, search_arguments(tool, query, limit))

        try:
            response = await asyncio.wait_for(call(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Federated search on %s timed out after %.1fs", handle.name, timeout)
            return SourceError(source=handle.name, error=f"timed out after {timeout:g}s", is_timeout=True)
        except ConnectorError as e:
            logger.info("Federated search on %s failed: %s", handle.name, e)
            return SourceError(source=handle.name, error=str(e))
        except Exception as e:
            logger.exception("Federated search on %s crashed", handle.name)
            return SourceError(source=handle.name, error=str(e) or type(e).__name__)

        payload = response.structured_content or {}
        results = normalize_results(handle.name, payload, weight)
        return SourceResults(
            source=handle.name,
            results=results,
            count=len(results),
            total_available=total_available(payload),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def search(
        self,
        query: str,
        *,
        sources: Optional[List[str]] = None,
        limit: int = DEFAULT_LIMIT,
        merge_mode: MergeMode = MergeMode.GROUPED,
        weights: Optional[Dict[str, float]] = None,
        timeout: Optional[float] = None,
    ) -> FederatedSearchResult:
        """Search ``sources`` (default: every connector with a search tool)."""
        started = time.monotonic()
        per_source = self.timeout if timeout is None else timeout
        result = FederatedSearchResult(query=query)
        targets = await self._targets(sources, result)
        logger.info("Federated search over %d source(s): %s", len(targets), [h.name for h, _ in targets])

        outcomes = await asyncio.gather(
            *(
                self._search_one(handle, tool, query, limit, (weights or {}).get(handle.name, 1.0), per_source)
                for handle, tool in targets
            )
        )
        for outcome in outcomes:
            if isinstance(outcome, SourceError):
                result.add_error(outcome.source, outcome.error, is_timeout=outcome.is_timeout)
            else:
                result.add_source(outcome)

        if merge_mode is MergeMode.INTERLEAVED:
            result.interleave()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result


def summary_text(result: FederatedSearchResult) -> str:
    """Short plain-text rendering for clients that ignore structured content."""
    lines = [f'Search: "{result.query}"']
    if result.sources is not None:
        for source in result.sources:
            lines.append(f"\n== {source.source} ({source.count} results) ==")
            for i, r in enumerate(source.results[:5], start=1):
                lines.append(f"{i}. [{r.id}] {r.title}")
            if source.count > 5:
                lines.append(f"   ... and {source.count - 5} more")
    else:
        merged = result.results or []
        lines.append(f"\n{len(merged)} results (interleaved):")
        for i, r in enumerate(merged[:10], start=1):
            lines.append(f"{i}. [{r.id}] {r.title} ({r.source})")
        if len(merged) > 10:
            lines.append(f"... and {len(merged) - 10} more")
    if result.partial:
        lines.append("\nPartial results. Errors:")
        for err in result.errors:
            lines.append(f"  - {err.source}: {err.error}{' (timeout)' if err.is_timeout else ''}")
    return "\n".join(lines)
