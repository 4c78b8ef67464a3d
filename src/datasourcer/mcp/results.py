"""Helpers that shape connector payloads into ``CallToolResult``s."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel

from datasourcer.mcp.types import CallToolResult, TextContent

RESULT_LIST_KEYS = (
    "results",
    "items",
    "entries",
    "documents",
    "files",
    "links",
    "messages",
    "events",
    "hits",
    "data",
)

COUNT_KEYS = ("total_results", "total_count", "count", "result_count")

QUERY_KEYS = ("query", "search_query", "term", "q")


def _label(key: str) -> str:
    if key in ("data", "results", "hits") or key in COUNT_KEYS:
        return "results"
    return key.replace("_", " ")


def _no_results_message(payload: Dict[str, Any]) -> Optional[str]:
    for key in RESULT_LIST_KEYS:
        value = payload.get(key)
        if isinstance(value, list) and value:
            return None

    query = next(
        (
            str(payload[k]).strip()
            for k in QUERY_KEYS
            if isinstance(payload.get(k), str) and str(payload[k]).strip()
        ),
        None,
    )

    empty_key: Optional[str] = None
    for key in RESULT_LIST_KEYS:
        if key not in payload:
            continue
        value = payload[key]
        if value is None or value == [] or value == {} or (isinstance(value, str) and not value.strip()):
            empty_key = key
            break
    if empty_key is None:
        for key in COUNT_KEYS:
            if payload.get(key) in (0, "0"):
                empty_key = key
                break
    if empty_key is None and not payload:
        empty_key = "results"
    if empty_key is None:
        return None

    label = _label(empty_key)
    if query:
        return f'No {label} found for "{query}".'
    return f"No {label} found for the requested input."


def structured_result(data: Any, *, text: Optional[str] = None) -> CallToolResult:
    """Build a ``CallToolResult`` carrying structured JSON plus a text rendering.

    Non-object payloads are wrapped under ``data``. Empty result sets gain a
    ``message`` and ``no_results: true`` so LLM clients do not mistake them for
    failures.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", exclude_none=True)
    payload: Dict[str, Any] = dict(data) if isinstance(data, dict) else {"data": data}
    message = _no_results_message(payload)
    if message:
        payload.setdefault("message", message)
        payload.setdefault("no_results", True)
    rendered = text if text is not None else json.dumps(payload, ensure_ascii=False, default=str)
    return CallToolResult(content=[TextContent(text=rendered)], structured_content=payload)
