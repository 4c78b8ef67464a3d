"""Microsoft Graph connector for Outlook mail and calendar.

Authentication uses the OAuth device flow: ``auth_start`` returns a user code
and verification URL, the caller then drives ``auth_poll`` until it reports
``complete``. Tokens are stored under both ``microsoft-graph`` and the shared
``microsoft`` vendor key and refreshed transparently before they expire.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from datasourcer.auth.oauth import MICROSOFT, OAuthClient, TokenManager, apply_tokens
from datasourcer.capabilities import ConnectorConfigSchema, Field, FieldType
from datasourcer.connectors.base_connector import (
    RESPONSE_FORMAT_PROPERTY,
    AuthStatus,
    AuthType,
    Connector,
    is_detailed,
)
from datasourcer.connectors.http import RetryPolicy, json_body, make_client, send_with_backoff
from datasourcer.cpu_pool import spawn_cpu
from datasourcer.exceptions import AuthenticationError, InvalidParams, ParseError
from datasourcer.mcp.types import ToolDescriptor
from datasourcer.pagination import Page, decode_cursor, encode_cursor, paginate
from datasourcer.parsers.html_parser import html_to_text

logger = logging.getLogger(__name__)

GRAPH_PAGE_SIZE = 50
MAX_PAGES = 10
MESSAGE_FIELDS = "id,subject,from,toRecipients,receivedDateTime,bodyPreview,isRead,webLink"
EVENT_FIELDS = "id,subject,start,end,location,organizer,webLink,isAllDay"


def _address(entry: Optional[Dict[str, Any]]) -> Optional[str]:
    email = (entry or {}).get("emailAddress") or {}
    name, addr = email.get("name"), email.get("address")
    if name and addr and name != addr:
        return f"{name} <{addr}>"
    return addr or name


def _concise_message(msg: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": msg.get("id"),
        "subject": msg.get("subject"),
        "from": _address(msg.get("from")),
        "received": msg.get("receivedDateTime"),
        "preview": msg.get("bodyPreview"),
        "is_read": msg.get("isRead"),
    }


def _concise_event(event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": event.get("id"),
        "subject": event.get("subject"),
        "start": (event.get("start") or {}).get("dateTime"),
        "end": (event.get("end") or {}).get("dateTime"),
        "location": (event.get("location") or {}).get("displayName"),
        "organizer": _address(event.get("organizer")),
    }


def _paged_schema(extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    properties: Dict[str, Any] = {
        **(extra or {}),
        "limit": {"type": "integer", "minimum": 1, "maximum": 200, "default": 25},
        "cursor": {"type": "string", "description": "next_cursor from a previous call"},
        "response_format": RESPONSE_FORMAT_PROPERTY,
    }
    return {"type": "object", "properties": properties, "additionalProperties": False}


class MicrosoftGraphConnector(Connector):
    name = "microsoft-graph"
    description = "Outlook mail and calendar via Microsoft Graph."
    credential_group = "microsoft"
    auth_type = AuthType.OAUTH
    auth_notes = (
        "Register an app in Entra ID with the device code flow enabled, then call "
        "auth/microsoft-graph/start_device with its client_id and poll until complete."
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.base_url = self.settings.microsoft.graph_base_url.rstrip("/")
        self.retry_policy = RetryPolicy.from_config(self.settings.retry)
        self.oauth = OAuthClient(MICROSOFT, timeout=self.settings.http.timeout)
        self.tokens = TokenManager(
            self.oauth,
            self.store,
            provider=self.name,
            vendor_key=self.credential_group,
            safety_margin=self.settings.auth.safety_margin_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return make_client(self.settings.http, headers={"Accept": "application/json"})

    def config_schema(self) -> ConnectorConfigSchema:
        return ConnectorConfigSchema(
            fields=[
                Field(name="client_id", label="Application (client) ID", required=True),
                Field(name="tenant_id", label="Tenant ID", description="Defaults to 'common'."),
                Field(
                    name="client_secret",
                    label="Client secret",
                    field_type=FieldType.SECRET,
                    description="Only for confidential clients.",
                ),
                Field(name="access_token", label="Access token", field_type=FieldType.SECRET),
                Field(name="refresh_token", label="Refresh token", field_type=FieldType.SECRET),
            ]
        )

    # ----- HTTP -----

    async def _access_token(self) -> str:
        details = await self.load_auth_details()
        if not details.get("access_token"):
            raise AuthenticationError(
                f"{self.name} is not authorized; run auth/{self.name}/start_device first"
            )
        return await self.tokens.ensure_fresh(details, force=self.status is AuthStatus.EXPIRED)

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = await self._access_token()
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"
        async with self._client() as client:
            resp = await send_with_backoff(
                client,
                "GET",
                url,
                policy=self.retry_policy,
                label="Microsoft Graph",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        body = json_body(resp)
        if not isinstance(body, dict):
            raise ParseError("Microsoft Graph returned a non-object response")
        if self.status is AuthStatus.EXPIRED:
            self.status = AuthStatus.AUTHORIZED
        return body

    async def check_auth(self) -> None:
        await self._get("/me", params={"$select": "id,userPrincipalName"})

    def _resume_link(self, cursor: Optional[str]) -> Optional[str]:
        if not cursor:
            return None
        link = decode_cursor(cursor).get("next")
        if not isinstance(link, str) or not link.startswith(self.base_url):
            raise InvalidParams("Cursor does not point at Microsoft Graph")
        return link

    async def _walk(self, path: str, params: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        limit = int(args.get("limit") or 25)

        async def fetch(cursor: Optional[str], remaining: int) -> Page[Dict[str, Any]]:
            if cursor:
                body = await self._get(cursor)
            else:
                body = await self._get(path, params={**params, "$top": min(remaining, GRAPH_PAGE_SIZE)})
            items = body.get("value")
            if not isinstance(items, list):
                raise ParseError("Microsoft Graph page is missing 'value'")
            return Page(items=items, next_cursor=body.get("@odata.nextLink"))

        walked = await paginate(
            fetch,
            desired_items=limit,
            max_pages=MAX_PAGES,
            start_cursor=self._resume_link(args.get("cursor")),
            item_id=lambda item: item.get("id"),
        )
        return {
            "items": walked.items,
            "next_cursor": encode_cursor({"next": walked.next_cursor}) if walked.next_cursor else None,
        }

    # ----- tools -----

    def tools(self) -> List[ToolDescriptor]:
        return [
            ToolDescriptor(
                name="list_messages",
                title="List messages",
                description="List mail in a folder, newest first.",
                input_schema=_paged_schema(
                    {"folder": {"type": "string", "default": "inbox", "description": "Well-known name or folder id"}}
                ),
                annotations={"readOnlyHint": True},
            ),
            ToolDescriptor(
                name="search_messages",
                title="Search messages",
                description="Full-text search across all mail folders, most relevant first.",
                input_schema={
                    **_paged_schema({"query": {"type": "string", "minLength": 1}}),
                    "required": ["query"],
                },
                annotations={"readOnlyHint": True},
            ),
            ToolDescriptor(
                name="get_message",
                title="Get message",
                description="Fetch one message with its body converted to plain text.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "id": {"type": "string", "minLength": 1},
                        "response_format": RESPONSE_FORMAT_PROPERTY,
                    },
                    "required": ["id"],
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True},
            ),
            ToolDescriptor(
                name="list_events",
                title="List events",
                description="List calendar events.",
                input_schema=_paged_schema(),
                annotations={"readOnlyHint": True},
            ),
        ]

    def auth_tools(self) -> List[ToolDescriptor]:
        return [
            ToolDescriptor(
                name="auth_start",
                description="Start the device authorization flow.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "client_id": {"type": "string", "minLength": 1},
                        "tenant_id": {"type": "string"},
                        "scopes": {"type": "string", "description": "Space-separated scopes"},
                    },
                    "required": ["client_id"],
                },
            ),
            ToolDescriptor(
                name="auth_poll",
                description="Poll the device authorization once; persists tokens on completion.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "client_id": {"type": "string", "minLength": 1},
                        "device_code": {"type": "string", "minLength": 1},
                        "tenant_id": {"type": "string"},
                        "client_secret": {"type": "string"},
                        "interval": {"type": "integer", "minimum": 1},
                    },
                    "required": ["client_id", "device_code"],
                },
            ),
        ]

    async def tool_list_messages(self, args: Dict[str, Any]) -> Dict[str, Any]:
        folder = quote(args.get("folder") or "inbox", safe="")
        params: Dict[str, Any] = {"$orderby": "receivedDateTime desc"}
        if not is_detailed(args):
            params["$select"] = MESSAGE_FIELDS
        out = await self._walk(f"/me/mailFolders/{folder}/messages", params, args)
        messages = out.pop("items")
        out["messages"] = messages if is_detailed(args) else [_concise_message(m) for m in messages]
        return out

    async def tool_search_messages(self, args: Dict[str, Any]) -> Dict[str, Any]:
        # Graph rejects $orderby together with $search
        phrase = args["query"].replace('"', "")
        params: Dict[str, Any] = {"$search": f'"{phrase}"'}
        if not is_detailed(args):
            params["$select"] = MESSAGE_FIELDS
        out = await self._walk("/me/messages", params, args)
        messages = out.pop("items")
        out["query"] = args["query"]
        out["messages"] = messages if is_detailed(args) else [_concise_message(m) for m in messages]
        return out

    async def tool_list_events(self, args: Dict[str, Any]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"$orderby": "start/dateTime"}
        if not is_detailed(args):
            params["$select"] = EVENT_FIELDS
        out = await self._walk("/me/events", params, args)
        events = out.pop("items")
        out["events"] = events if is_detailed(args) else [_concise_event(e) for e in events]
        return out

    async def tool_get_message(self, args: Dict[str, Any]) -> Dict[str, Any]:
        msg = await self._get(f"/me/messages/{quote(args['id'], safe='')}")
        body = msg.get("body") or {}
        content = body.get("content") or ""
        if str(body.get("contentType", "")).lower() == "html":
            content = await spawn_cpu(html_to_text, content)
        out = _concise_message(msg)
        out["to"] = [_address(r) for r in msg.get("toRecipients") or []]
        out["body"] = content
        if is_detailed(args):
            out["raw"] = msg
        return out

    async def tool_auth_start(self, args: Dict[str, Any]) -> Dict[str, Any]:
        start = await self.oauth.device_authorize(
            args["client_id"],
            args.get("scopes") or self.settings.microsoft.default_scopes,
            tenant_id=args.get("tenant_id") or self.settings.microsoft.tenant_id,
        )
        out = start.model_dump(exclude_none=True)
        out["message"] = f"Open {start.verification_uri} and enter the code {start.user_code}."
        return out

    async def tool_auth_poll(self, args: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = args.get("tenant_id") or self.settings.microsoft.tenant_id
        result = await self.oauth.device_poll(
            args["client_id"],
            args["device_code"],
            client_secret=args.get("client_secret"),
            tenant_id=tenant_id,
            interval=int(args.get("interval") or 5),
        )
        if not result.done or result.tokens is None:
            return {"status": result.status, "interval": result.interval}

        details = dict(self._details)
        details["client_id"] = args["client_id"]
        if tenant_id:
            details["tenant_id"] = tenant_id
        if args.get("client_secret"):
            details["client_secret"] = args["client_secret"]
        apply_tokens(details, result.tokens)
        await asyncio.to_thread(
            self.store.save_many, {self.name: details, self.credential_group: dict(details)}
        )
        self._details = details
        self.status = AuthStatus.CONFIGURED
        logger.info("Device authorization complete for %s", self.name)
        return {"status": "complete", "ok": True}
