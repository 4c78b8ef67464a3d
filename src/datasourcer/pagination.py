"""Bounded cursor walking shared by connectors.

``paginate`` turns "fetch one page given a cursor" into "collect up to N
items", capping both the number of items returned and the number of page
fetches. Cursors are opaque strings; connectors that need structured cursors
encode them with ``encode_cursor``.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, List, Optional, Set, TypeVar

from datasourcer.exceptions import InvalidParams

T = TypeVar("T")

CURSOR_VERSION = "v1"


@dataclass
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class PaginatedItems(Generic[T]):
    items: List[T] = field(default_factory=list)
    next_cursor: Optional[str] = None


PageFetcher = Callable[[Optional[str], int], Awaitable[Page[T]]]


async def paginate(
    fetch_page: PageFetcher[T],
    *,
    desired_items: int,
    max_pages: int,
    start_cursor: Optional[str] = None,
    item_id: Optional[Callable[[T], Hashable]] = None,
) -> PaginatedItems[T]:
    """Walk pages until the item budget, the page cap or the source runs out.

    Parameters
    ----------
    fetch_page:
        ``async (cursor, remaining) -> Page``. ``remaining`` is the unspent
        item budget, which fetchers may use to size their request.
    desired_items:
        Upper bound on returned items.
    max_pages:
        Hard cap on ``fetch_page`` calls.
    start_cursor:
        Cursor to resume from, as returned by a previous walk.
    item_id:
        Identity function used to drop items repeated across page boundaries.
        Duplicates consume page fetches but not item budget.

    When the walk stops early the returned ``next_cursor`` is the cursor of
    the next page, so a follow-up call resumes on a page boundary.
    """
    if desired_items <= 0 or max_pages <= 0:
        return PaginatedItems()

    items: List[T] = []
    seen: Set[Hashable] = set()
    cursor = start_cursor
    pages = 0
    while pages < max_pages:
        page = await fetch_page(cursor, desired_items - len(items))
        pages += 1
        for item in page.items:
            if item_id is not None:
                key = item_id(item)
                if key in seen:
                    continue
                seen.add(key)
            items.append(item)
            if len(items) >= desired_items:
                break
        cursor = page.next_cursor
        if cursor is None or len(items) >= desired_items:
            break
    return PaginatedItems(items=items, next_cursor=cursor)


def encode_cursor(state: Dict[str, Any]) -> str:
    """Encode structured cursor state as a versioned opaque string."""
    raw = json.dumps(state, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return f"{CURSOR_VERSION}.{base64.urlsafe_b64encode(raw).decode('ascii').rstrip('=')}"


def decode_cursor(cursor: str) -> Dict[str, Any]:
    """Inverse of ``encode_cursor``; raises InvalidParams on foreign cursors."""
    version, _, body = (cursor or "").partition(".")
    if version != CURSOR_VERSION or not body:
        raise InvalidParams(f"Unsupported cursor: {cursor!r}")
    padded = body + "=" * (-len(body) % 4)
    try:
        state = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, ValueError) as e:
        raise InvalidParams(f"Malformed cursor: {cursor!r}") from e
    if not isinstance(state, dict):
        raise InvalidParams(f"Malformed cursor: {cursor!r}")
    return state
