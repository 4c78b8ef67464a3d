"""Base interface shared by every data-source connector.

A connector adapts one external source to a fixed capability set: tools,
resources and prompts, plus the credential plumbing needed to reach the
source. Connectors should be safe to construct without side effects and
should not perform network calls until methods are invoked.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional

import jsonschema

from datasourcer import __version__
from datasourcer.auth.oauth import now_epoch
from datasourcer.capabilities import ConnectorConfigSchema
from datasourcer.config import Settings
from datasourcer.exceptions import (
    AuthenticationError,
    InvalidInput,
    InvalidParams,
    ResourceNotFound,
    ToolNotFound,
)
from datasourcer.mcp.results import structured_result
from datasourcer.mcp.types import (
    CallToolResult,
    Implementation,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListToolsResult,
    Prompt,
    ResourceContents,
    ServerCapabilities,
    ToolDescriptor,
)
from datasourcer.storage.auth_store import AuthDetails, AuthStore, MemoryAuthStore

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

RESPONSE_FORMAT_PROPERTY: Dict[str, Any] = {
    "type": "string",
    "enum": ["concise", "detailed"],
    "default": "concise",
    "description": "concise returns a trimmed subset of fields; detailed returns the full record.",
}


class AuthType(str, Enum):
    NONE = "none"
    API_KEY = "api_key"
    OAUTH = "oauth"


class AuthStatus(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"


def is_detailed(args: Dict[str, Any]) -> bool:
    return args.get("response_format") == "detailed"


class Connector(ABC):
    """Abstract connector.

    Subclasses set the identity class attributes, declare their tools in
    ``tools()`` and implement each one as a coroutine method named
    ``tool_<name>`` taking the validated argument mapping. Handlers may return
    a ``CallToolResult`` or any JSON-compatible value, which is wrapped with
    ``structured_result``.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    credential_group: ClassVar[Optional[str]] = None
    auth_type: ClassVar[AuthType] = AuthType.NONE
    instructions: ClassVar[Optional[str]] = None
    auth_notes: ClassVar[Optional[str]] = None

    def __init__(self, store: Optional[AuthStore] = None, *, settings: Optional[Settings] = None) -> None:
        self.store = store if store is not None else MemoryAuthStore()
        self.settings = settings if settings is not None else Settings()
        self._details: AuthDetails = {}
        self.authorized_at: Optional[int] = None
        self.status = AuthStatus.AUTHORIZED if self.auth_type is AuthType.NONE else AuthStatus.UNCONFIGURED

    # ----- identity & lifecycle -----

    def capabilities(self) -> ServerCapabilities:
        return ServerCapabilities(tools={"listChanged": False})

    async def initialize(self, params: Optional[Dict[str, Any]] = None) -> InitializeResult:  # noqa: ARG002
        return InitializeResult(
            capabilities=self.capabilities(),
            server_info=Implementation(name=self.name, version=__version__),
            instructions=self.instructions,
        )

    # ----- authentication -----

    @property
    def requires_auth(self) -> bool:
        return self.auth_type is not AuthType.NONE

    @property
    def authorized(self) -> bool:
        return self.status is AuthStatus.AUTHORIZED

    def config_schema(self) -> ConnectorConfigSchema:
        return ConnectorConfigSchema()

    async def load_auth_details(self) -> AuthDetails:
        """Resolve credentials: memory, then the store under our name, then the vendor key."""
        if self._details:
            return self._details
        details = await asyncio.to_thread(self.store.load, self.name)
        if not details and self.credential_group:
            details = await asyncio.to_thread(self.store.load, self.credential_group)
        if details:
            self._details = dict(details)
            if self.status is AuthStatus.UNCONFIGURED:
                self.status = AuthStatus.CONFIGURED
        return self._details

    async def get_auth_details(self) -> AuthDetails:
        return dict(await self.load_auth_details())

    async def set_auth_details(self, details: AuthDetails, *, persist: bool = True) -> None:
        missing = [
            f for f in self.config_schema().required_fields() if not str(details.get(f) or "").strip()
        ]
        if missing:
            raise InvalidInput(f"Missing required field(s) for {self.name}: {', '.join(missing)}")
        self._details = dict(details)
        if persist:
            await asyncio.to_thread(self.store.save, self.name, dict(details))
        if self.requires_auth:
            self.status = AuthStatus.CONFIGURED if details else AuthStatus.UNCONFIGURED
            self.authorized_at = None

    async def test_auth(self) -> None:
        """Verify credentials with a cheap upstream round-trip."""
        if self.requires_auth and not await self.load_auth_details():
            raise AuthenticationError(f"{self.name} is not configured; run setup first")
        await self.check_auth()
        self.status = AuthStatus.AUTHORIZED
        self.authorized_at = now_epoch()

    async def check_auth(self) -> None:
        """Connector-specific credential check; the default accepts anything."""

    async def clear_auth(self) -> None:
        """Forget credentials in memory and in the store.

        Both the connector key and the vendor key are removed, so the
        ``load_auth_details`` fallback finds nothing afterwards.
        """
        self._details = {}
        await asyncio.to_thread(self.store.delete, self.name)
        if self.credential_group:
            await asyncio.to_thread(self.store.delete, self.credential_group)
        self.authorized_at = None
        if self.requires_auth:
            self.status = AuthStatus.UNCONFIGURED

    # ----- tools -----

    @abstractmethod
    def tools(self) -> List[ToolDescriptor]:
        """Public tools advertised by ``list_tools``."""

    def auth_tools(self) -> List[ToolDescriptor]:
        """Callable tools kept out of ``list_tools`` (device-flow plumbing)."""
        return []

    async def list_tools(self, cursor: Optional[str] = None) -> ListToolsResult:  # noqa: ARG002
        return ListToolsResult(tools=self.tools())

    def _find_tool(self, name: str) -> ToolDescriptor:
        for tool in [*self.tools(), *self.auth_tools()]:
            if tool.name == name:
                return tool
        raise ToolNotFound(f"Unknown tool for {self.name}: {name}")

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> CallToolResult:
        tool = self._find_tool(name)
        args = {} if arguments is None else arguments
        if not isinstance(args, dict):
            raise InvalidParams(f"Arguments for {self.name}/{name} must be an object")
        try:
            jsonschema.validate(instance=args, schema=tool.input_schema)
        except jsonschema.exceptions.ValidationError as e:
            raise InvalidParams(f"Invalid arguments for {self.name}/{name}: {e.message}") from e

        handler: Optional[ToolHandler] = getattr(self, f"tool_{name}", None)
        if handler is None:
            raise ToolNotFound(f"Tool {name} is declared but not implemented by {self.name}")
        try:
            result = await handler(args)
        except AuthenticationError:
            if self.requires_auth and self.status in (AuthStatus.AUTHORIZED, AuthStatus.CONFIGURED):
                logger.info("%s credentials rejected upstream; marking expired", self.name)
                self.status = AuthStatus.EXPIRED
            raise
        if isinstance(result, CallToolResult):
            return result
        return structured_result(result)

    # ----- resources -----

    async def list_resources(self, cursor: Optional[str] = None) -> ListResourcesResult:  # noqa: ARG002
        return ListResourcesResult()

    async def read_resource(self, uri: str) -> List[ResourceContents]:
        raise ResourceNotFound(f"Resource not found: {uri}")

    # ----- prompts -----

    def prompts(self) -> List[Prompt]:
        return []

    async def list_prompts(self, cursor: Optional[str] = None) -> ListPromptsResult:  # noqa: ARG002
        return ListPromptsResult(prompts=self.prompts())

    async def get_prompt(self, name: str) -> Prompt:
        for prompt in self.prompts():
            if prompt.name == name:
                return prompt
        raise InvalidParams(f"Unknown prompt for {self.name}: {name}")
