"""OAuth 2.0 device authorization and token refresh.

Google- and Microsoft-shaped providers share the same flow and differ only in
endpoints, response field names and tenant handling, captured by
``OAuthProfile``. ``OAuthClient`` performs single HTTP exchanges;
``TokenManager`` keeps a connector's access token fresh and persists refreshed
tokens under both the connector key and the shared vendor key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel

from datasourcer.exceptions import AuthenticationError, HttpRequestError, OtherError, ParseError
from datasourcer.storage.auth_store import AuthDetails, AuthStore

logger = logging.getLogger(__name__)

DEVICE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
SAFETY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class OAuthProfile:
    """Endpoints and quirks of one OAuth vendor."""

    vendor: str
    device_code_url: str
    token_url: str
    default_expires_in: int

    def device_endpoint(self, tenant_id: Optional[str] = None) -> str:
        return self.device_code_url.format(tenant=tenant_id or "common")

    def token_endpoint(self, tenant_id: Optional[str] = None) -> str:
        return self.token_url.format(tenant=tenant_id or "common")


GOOGLE = OAuthProfile(
    vendor="google",
    device_code_url="https://oauth2.googleapis.com/device/code",
    token_url="https://oauth2.googleapis.com/token",
    default_expires_in=1800,
)

MICROSOFT = OAuthProfile(
    vendor="microsoft",
    device_code_url="https://login.microsoftonline.com/{tenant}/oauth2/v2.0/devicecode",
    token_url="https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
    default_expires_in=900,
)


class DeviceAuthStart(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str] = None
    interval: int = 5
    expires_in: int


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


class PollResult(BaseModel):
    """Outcome of one device-code poll.

    ``status`` is one of ``complete``, ``pending``, ``slow_down``, ``denied``
    or ``expired``; ``tokens`` is set only when complete.
    """

    status: str
    tokens: Optional[OAuthTokens] = None
    interval: Optional[int] = None

    @property
    def done(self) -> bool:
        return self.status == "complete"


_POLL_ERRORS = {
    "authorization_pending": "pending",
    "slow_down": "slow_down",
    "access_denied": "denied",
    "authorization_declined": "denied",
    "expired_token": "expired",
}


def now_epoch() -> int:
    return int(time.time())


def apply_tokens(details: AuthDetails, tokens: OAuthTokens, *, now: Optional[int] = None) -> None:
    """Write a token response into ``details`` in place."""
    details["access_token"] = tokens.access_token
    if tokens.refresh_token:
        details["refresh_token"] = tokens.refresh_token
    if tokens.expires_in is not None:
        issued = now if now is not None else now_epoch()
        details["expires_at"] = str(issued + int(tokens.expires_in))
    if tokens.token_type:
        details["token_type"] = tokens.token_type


def seconds_left(details: AuthDetails, *, now: Optional[int] = None) -> Optional[int]:
    """Seconds until ``expires_at``; None when the token carries no expiry."""
    raw = details.get("expires_at")
    if not raw:
        return None
    try:
        expires_at = int(float(raw))
    except ValueError:
        return 0
    return expires_at - (now if now is not None else now_epoch())


class OAuthClient:
    """Single-shot HTTP exchanges against one vendor's OAuth endpoints."""

    def __init__(self, profile: OAuthProfile, *, timeout: float = 20.0) -> None:
        self.profile = profile
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers={"Accept": "application/json"})

    async def _post_form(self, url: str, form: Dict[str, str]) -> tuple[int, Dict[str, Any]]:
        try:
            async with self._client() as client:
                resp = await client.post(url, data=form)
        except httpx.HTTPError as e:
            raise HttpRequestError(f"{self.profile.vendor} OAuth request failed: {e}") from e
        try:
            body = resp.json()
        except ValueError as e:
            raise ParseError(
                f"{self.profile.vendor} OAuth endpoint returned non-JSON ({resp.status_code})"
            ) from e
        if not isinstance(body, dict):
            raise ParseError(f"{self.profile.vendor} OAuth endpoint returned non-object JSON")
        return resp.status_code, body

    @staticmethod
    def _tokens(body: Dict[str, Any]) -> OAuthTokens:
        token = body.get("access_token")
        if not isinstance(token, str) or not token:
            raise ParseError("Token response is missing access_token")
        expires_in = body.get("expires_in")
        return OAuthTokens(
            access_token=token,
            refresh_token=body.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            token_type=body.get("token_type"),
            scope=body.get("scope"),
        )

    async def device_authorize(
        self, client_id: str, scopes: str, *, tenant_id: Optional[str] = None
    ) -> DeviceAuthStart:
        """Begin a device authorization; returns the code the user must enter."""
        status, body = await self._post_form(
            self.profile.device_endpoint(tenant_id), {"client_id": client_id, "scope": scopes}
        )
        if status >= 400:
            raise AuthenticationError(f"device authorize failed: {body.get('error') or body}")
        # Google answers with verification_url, Microsoft with verification_uri
        uri = body.get("verification_uri") or body.get("verification_url") or ""
        complete = body.get("verification_uri_complete") or body.get("verification_url_complete")
        try:
            return DeviceAuthStart(
                device_code=body["device_code"],
                user_code=body["user_code"],
                verification_uri=uri,
                verification_uri_complete=complete,
                interval=int(body.get("interval") or 5),
                expires_in=int(body.get("expires_in") or self.profile.default_expires_in),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Malformed device authorization response: {e}") from e

    async def device_poll(
        self,
        client_id: str,
        device_code: str,
        *,
        client_secret: Optional[str] = None,
        tenant_id: Optional[str] = None,
        interval: int = 5,
    ) -> PollResult:
        """Exchange a device code for tokens once."""
        form = {"grant_type": DEVICE_GRANT, "client_id": client_id, "device_code": device_code}
        if client_secret:
            form["client_secret"] = client_secret
        status, body = await self._post_form(self.profile.token_endpoint(tenant_id), form)
        if status < 400 and "access_token" in body:
            return PollResult(status="complete", tokens=self._tokens(body))
        error = str(body.get("error") or "")
        mapped = _POLL_ERRORS.get(error)
        if mapped is None:
            raise OtherError(f"device poll failed: {error or status}")
        if mapped == "slow_down":
            interval += 5
        return PollResult(status=mapped, interval=interval)

    async def refresh(
        self,
        client_id: str,
        refresh_token: str,
        *,
        client_secret: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> OAuthTokens:
        form = {"grant_type": "refresh_token", "client_id": client_id, "refresh_token": refresh_token}
        if client_secret:
            form["client_secret"] = client_secret
        status, body = await self._post_form(self.profile.token_endpoint(tenant_id), form)
        if status < 400:
            return self._tokens(body)
        error = str(body.get("error") or "")
        if error == "invalid_grant" or status in (400, 401):
            raise AuthenticationError(
                f"{self.profile.vendor} refresh token rejected ({error or status}); re-run setup"
            )
        raise OtherError(f"{self.profile.vendor} token refresh failed: {error or status}")


async def poll_until_complete(
    client: OAuthClient,
    client_id: str,
    start: DeviceAuthStart,
    *,
    client_secret: Optional[str] = None,
    tenant_id: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> OAuthTokens:
    """Poll until the user approves, honouring ``slow_down``.

    Cancelling the awaiting task interrupts the sleep between polls; nothing is
    written anywhere until tokens are returned.
    """
    interval = max(1, start.interval)
    deadline = time.monotonic() + start.expires_in
    while time.monotonic() < deadline:
        await sleep(interval)
        result = await client.device_poll(
            client_id,
            start.device_code,
            client_secret=client_secret,
            tenant_id=tenant_id,
            interval=interval,
        )
        if result.done and result.tokens is not None:
            return result.tokens
        if result.status in ("denied", "expired"):
            raise AuthenticationError(f"Device authorization {result.status}")
        interval = result.interval or interval
    raise AuthenticationError("Device authorization expired")


class TokenManager:
    """Keeps one connector's access token fresh.

    Each connector owns its manager, so refreshes serialize per connector
    rather than globally.
    """

    def __init__(
        self,
        client: OAuthClient,
        store: AuthStore,
        *,
        provider: str,
        vendor_key: Optional[str] = None,
        safety_margin: int = SAFETY_MARGIN_SECONDS,
    ) -> None:
        self.client = client
        self.store = store
        self.provider = provider
        self.vendor_key = vendor_key
        self.safety_margin = safety_margin
        self._lock = asyncio.Lock()

    def _fresh_token(self, details: AuthDetails) -> Optional[str]:
        token = details.get("access_token")
        if not token:
            return None
        left = seconds_left(details)
        if left is None or left > self.safety_margin:
            return token
        return None

    async def ensure_fresh(self, details: AuthDetails, *, force: bool = False) -> str:
        """Return a usable access token, refreshing ``details`` in place if needed."""
        issued_before = details.get("access_token")
        if not force:
            token = self._fresh_token(details)
            if token:
                return token
        async with self._lock:
            # Another caller may have refreshed while we waited
            if not force or details.get("access_token") != issued_before:
                token = self._fresh_token(details)
                if token:
                    return token
            refresh_token = details.get("refresh_token")
            client_id = details.get("client_id")
            if not refresh_token:
                raise AuthenticationError("Missing refresh_token; re-run setup")
            if not client_id:
                raise AuthenticationError("Missing client_id for refresh; re-run setup")
            tokens = await self.client.refresh(
                client_id,
                refresh_token,
                client_secret=details.get("client_secret") or None,
                tenant_id=details.get("tenant_id") or None,
            )
            apply_tokens(details, tokens)
            entries = {self.provider: dict(details)}
            if self.vendor_key:
                entries[self.vendor_key] = dict(details)
            await asyncio.to_thread(self.store.save_many, entries)
            logger.info("Refreshed %s access token for %s", self.client.profile.vendor, self.provider)
            return tokens.access_token
