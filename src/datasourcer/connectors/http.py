"""Outbound HTTP policy for connectors.

Transient failures (429, 5xx, network errors) are retried with exponential
backoff per request, honouring ``Retry-After``. Everything else is mapped
straight onto the error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from datasourcer.config import HttpConfig, RetryConfig
from datasourcer.exceptions import (
    AuthenticationError,
    HttpRequestError,
    InvalidInput,
    OtherError,
    ParseError,
)

logger = logging.getLogger(__name__)

CLIENT_ERROR_STATUSES = (400, 404, 409, 422)


@dataclass(frozen=True)
class RetryPolicy:
    initial_delay: float = 0.8
    multiplier: float = 1.8
    max_retries: int = 4

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            initial_delay=config.initial_delay,
            multiplier=config.multiplier,
            max_retries=config.max_retries,
        )


def make_client(config: Optional[HttpConfig] = None, **kwargs: Any) -> httpx.AsyncClient:
    """Build an ``httpx.AsyncClient`` with the standard timeouts and user agent."""
    config = config or HttpConfig()
    headers = {"User-Agent": config.user_agent}
    headers.update(kwargs.pop("headers", None) or {})
    kwargs.setdefault("follow_redirects", True)
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.timeout, connect=config.connect_timeout),
        headers=headers,
        **kwargs,
    )


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw.strip()))
    except ValueError:
        # HTTP-date form is not honoured
        return None


def _snippet(resp: httpx.Response, limit: int = 200) -> str:
    try:
        text = resp.text
    except UnicodeDecodeError:
        return ""
    return " ".join(text.split())[:limit]


async def send_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: Optional[RetryPolicy] = None,
    label: str = "upstream",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request, retrying transient failures.

    Returns the response for 2xx/3xx statuses. Raises
    ``AuthenticationError`` on 401, ``InvalidInput`` on 400/404/409/422 and
    ``OtherError`` on other 4xx, without retrying.
    """
    policy = policy or RetryPolicy()
    delay = policy.initial_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            if attempt > policy.max_retries:
                raise HttpRequestError(f"{label} request failed after {attempt} attempts: {e}") from e
            logger.warning("%s request error (%s); retrying in %.1fs", label, e, delay)
            await sleep(delay)
            delay *= policy.multiplier
            continue

        status = resp.status_code
        if status == 429 or status >= 500:
            if attempt > policy.max_retries:
                if status == 429:
                    raise OtherError(f"{label} rate limited (429) after {attempt} attempts")
                raise OtherError(f"{label} server error ({status}) after {attempt} attempts")
            wait = _retry_after(resp) if status == 429 else None
            wait = delay if wait is None else wait
            logger.warning("%s returned %d; retrying in %.1fs", label, status, wait)
            await sleep(wait)
            delay *= policy.multiplier
            continue

        if status == 401:
            raise AuthenticationError(f"{label} rejected the credentials (401); re-run setup")
        if status in CLIENT_ERROR_STATUSES:
            raise InvalidInput(f"{label} returned {status}: {_snippet(resp)}")
        if status >= 400:
            raise OtherError(f"{label} returned {status}: {_snippet(resp)}")
        return resp


def json_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise ParseError(f"Invalid JSON response ({resp.status_code}): {e}") from e
