"""datasourcer MCP server entrypoint.

``McpServer`` multiplexes every registered connector behind one MCP surface:
tool, prompt and resource names are prefixed with ``<connector>/`` and
credential management is exposed as synthetic ``auth/<connector>/<action>``
tools. ``JsonRpcHandler`` maps JSON-RPC 2.0 messages onto it.

Run with:
  - datasourcer-mcp
  - or: python -m datasourcer.mcp.server (ensure PYTHONPATH includes ./src)
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import jsonschema

from datasourcer import __version__
from datasourcer.config import Settings, configure_logging, load_settings
from datasourcer.connectors.base_connector import AuthType, Connector
from datasourcer.connectors.registry import ProviderRegistry, build_registry
from datasourcer.cpu_pool import configure_cpu_pool
from datasourcer.exceptions import (
    ConnectorError,
    InvalidInput,
    InvalidParams,
    MethodNotFound,
    OtherError,
    ResourceNotFound,
    ToolNotFound,
)
from datasourcer.federated import FederatedSearch, MergeMode, summary_text
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
from datasourcer.resolver import SmartResolver
from datasourcer.storage.auth_store import AuthStore, FileAuthStore, stringify_details

logger = logging.getLogger(__name__)

SERVER_NAME = "datasourcer"
INSTRUCTIONS = (
    "Multi-connector data sourcing server. Tools are named <connector>/<tool>; "
    "configure credentials with auth/<connector>/set (or start_device and poll_device "
    "for OAuth connectors) and verify them with auth/<connector>/test. "
    "datasourcer/resolve routes a URL, path or id to the right tool and "
    "datasourcer/federated_search queries every searchable connector at once."
)
AUTH_PREFIX = "auth"
DEVICE_ACTIONS = {"start_device": "auth_start", "poll_device": "auth_poll"}
EMPTY_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}}


def split_prefixed(name: str) -> Tuple[str, str]:
    """Split ``<connector>/<item>``; anything but two non-empty segments is invalid."""
    parts = name.split("/")
    if len(parts) != 2 or not all(parts):
        raise InvalidInput(f"Invalid name '{name}': expected <connector>/<name>")
    return parts[0], parts[1]


class McpServer:
    """Aggregates connectors into a single MCP server.

    Besides the prefixed connector tools it serves its own ``datasourcer/``
    tools: input resolution and federated search across connectors.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        settings: Optional[Settings] = None,
        resolver: Optional[SmartResolver] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings if settings is not None else Settings()
        self.resolver = resolver if resolver is not None else SmartResolver()
        self.federated = FederatedSearch(registry, timeout=self.settings.federated.timeout_seconds)

    # ----- lifecycle -----

    async def initialize(self, params: Optional[Dict[str, Any]] = None) -> InitializeResult:
        capabilities = ServerCapabilities(tools={"listChanged": False})
        for handle in await self.registry.handles():
            capabilities = capabilities.merge(handle.connector.capabilities())
        return InitializeResult(
            capabilities=capabilities,
            server_info=Implementation(name=SERVER_NAME, version=__version__),
            instructions=INSTRUCTIONS,
        )

    # ----- tools -----

    def _auth_tools(self, connector: Connector) -> List[ToolDescriptor]:
        prefix = f"{AUTH_PREFIX}/{connector.name}"
        tools = [
            ToolDescriptor(
                name=f"{prefix}/set",
                description=f"Store credentials for {connector.name}.",
                input_schema=connector.config_schema().to_json_schema(),
            ),
            ToolDescriptor(
                name=f"{prefix}/test",
                description=f"Verify the stored credentials for {connector.name}.",
                input_schema=dict(EMPTY_SCHEMA),
            ),
            ToolDescriptor(
                name=f"{prefix}/get_schema",
                description=f"Describe the credential fields {connector.name} accepts.",
                input_schema=dict(EMPTY_SCHEMA),
            ),
        ]
        if connector.auth_type is AuthType.OAUTH:
            internal = {t.name: t for t in connector.auth_tools()}
            for action, tool_name in DEVICE_ACTIONS.items():
                inner = internal.get(tool_name)
                if inner is None:
                    continue
                tools.append(
                    ToolDescriptor(
                        name=f"{prefix}/{action}",
                        description=inner.description,
                        input_schema=inner.input_schema,
                    )
                )
        return tools

    def _builtin_tools(self) -> List[ToolDescriptor]:
        default_limit = self.settings.federated.default_limit
        return [
            ToolDescriptor(
                name=f"{SERVER_NAME}/resolve",
                title="Resolve input",
                description=(
                    "Detect which connector tool handles a URL, file path or message id. "
                    "Set execute to run the best match and return its result."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "input": {"type": "string", "minLength": 1},
                        "execute": {"type": "boolean", "default": False},
                    },
                    "required": ["input"],
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True},
            ),
            ToolDescriptor(
                name=f"{SERVER_NAME}/list_patterns",
                title="List input patterns",
                description="Input formats that resolve can route, with an example of each.",
                input_schema=dict(EMPTY_SCHEMA),
                annotations={"readOnlyHint": True},
            ),
            ToolDescriptor(
                name=f"{SERVER_NAME}/federated_search",
                title="Federated search",
                description=(
                    "Run one query against every connector with a search tool, or only the named "
                    "sources. Results are grouped by source or interleaved by reciprocal rank."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "minLength": 1},
                        "sources": {"type": "array", "items": {"type": "string"}, "minItems": 1},
                        "limit": {"type": "integer", "minimum": 1, "maximum": 50, "default": default_limit},
                        "merge_mode": {
                            "type": "string",
                            "enum": [m.value for m in MergeMode],
                            "default": MergeMode.GROUPED.value,
                        },
                        "weights": {
                            "type": "object",
                            "additionalProperties": {"type": "number", "exclusiveMinimum": 0},
                            "description": "Per-source multiplier for interleaved ranking",
                        },
                        "timeout_seconds": {"type": "number", "exclusiveMinimum": 0, "maximum": 120},
                    },
                    "required": ["query"],
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True},
            ),
        ]

    async def list_tools(self) -> ListToolsResult:
        tools: List[ToolDescriptor] = self._builtin_tools()
        for handle in await self.registry.handles():
            async with handle.lock:
                try:
                    listed = await handle.connector.list_tools()
                except Exception:
                    logger.exception("tools/list failed for connector %s", handle.name)
                    continue
            for tool in listed.tools:
                tools.append(tool.model_copy(update={"name": f"{handle.name}/{tool.name}"}))
            tools.extend(self._auth_tools(handle.connector))
        return ListToolsResult(tools=tools)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> CallToolResult:
        parts = name.split("/")
        if len(parts) == 3 and parts[0] == AUTH_PREFIX and parts[1] and parts[2]:
            return await self._call_auth_tool(parts[1], parts[2], arguments or {})
        connector_name, tool_name = split_prefixed(name)
        if connector_name == SERVER_NAME:
            return await self._call_builtin_tool(tool_name, arguments)
        handle = await self.registry.get(connector_name)
        async with handle.lock:
            return await handle.connector.call_tool(tool_name, arguments)

    async def _call_builtin_tool(self, tool_name: str, arguments: Optional[Dict[str, Any]]) -> CallToolResult:
        name = f"{SERVER_NAME}/{tool_name}"
        tool = next((t for t in self._builtin_tools() if t.name == name), None)
        if tool is None:
            raise ToolNotFound(f"Unknown tool: {name}")
        args = {} if arguments is None else arguments
        try:
            jsonschema.validate(instance=args, schema=tool.input_schema)
        except jsonschema.exceptions.ValidationError as e:
            raise InvalidParams(f"Invalid arguments for {name}: {e.message}") from e

        # Connector locks are taken per dispatched call, never here
        if tool_name == "resolve":
            return await self._resolve(args["input"], execute=bool(args.get("execute", False)))
        if tool_name == "list_patterns":
            return structured_result({"patterns": self.resolver.list_patterns(self.registry.names())})
        result = await self.federated.search(
            args["query"],
            sources=args.get("sources"),
            limit=int(args.get("limit") or self.settings.federated.default_limit),
            merge_mode=MergeMode(args.get("merge_mode") or MergeMode.GROUPED.value),
            weights=args.get("weights"),
            timeout=args.get("timeout_seconds"),
        )
        return structured_result(result.to_payload(), text=summary_text(result))

    async def _resolve(self, text: str, *, execute: bool) -> CallToolResult:
        available = self.registry.names()
        if not execute:
            actions = self.resolver.resolve_all(text, available)
            return structured_result({"input": text, "results": [a.model_dump() for a in actions]})
        action = self.resolver.resolve(text, available)
        if action is None:
            raise InvalidInput(f"No connector recognizes this input: {text}")
        logger.info("Resolved input to %s/%s (%s)", action.connector, action.tool, action.pattern)
        inner = await self.call_tool(f"{action.connector}/{action.tool}", action.arguments)
        return structured_result(
            {"input": text, "action": action.model_dump(), "result": inner.structured_content}
        )

    async def _call_auth_tool(self, connector_name: str, action: str, arguments: Dict[str, Any]) -> CallToolResult:
        handle = await self.registry.get(connector_name)
        connector = handle.connector
        async with handle.lock:
            if action == "set":
                await connector.set_auth_details(stringify_details(arguments))
                return structured_result({"ok": True})
            if action == "test":
                await connector.test_auth()
                return structured_result({"ok": True, "status": connector.status.value})
            if action == "get_schema":
                return structured_result(
                    {"provider": connector.name, "schema": connector.config_schema().to_json_schema()}
                )
            if action in DEVICE_ACTIONS and connector.auth_type is AuthType.OAUTH:
                return await connector.call_tool(DEVICE_ACTIONS[action], arguments)
        raise ToolNotFound(f"Unknown auth action for {connector_name}: {action}")

    # ----- resources -----

    async def list_resources(self) -> ListResourcesResult:
        result = ListResourcesResult()
        for handle in await self.registry.handles():
            async with handle.lock:
                try:
                    listed = await handle.connector.list_resources()
                except Exception:
                    logger.exception("resources/list failed for connector %s", handle.name)
                    continue
            result.resources.extend(listed.resources)
        return result

    async def read_resource(self, uri: str) -> List[ResourceContents]:
        for handle in await self.registry.handles():
            async with handle.lock:
                try:
                    return await handle.connector.read_resource(uri)
                except ResourceNotFound:
                    continue
        raise ResourceNotFound(f"Resource not found: {uri}")

    # ----- prompts -----

    async def list_prompts(self) -> ListPromptsResult:
        prompts: List[Prompt] = []
        for handle in await self.registry.handles():
            async with handle.lock:
                try:
                    listed = await handle.connector.list_prompts()
                except Exception:
                    logger.exception("prompts/list failed for connector %s", handle.name)
                    continue
            prompts.extend(p.model_copy(update={"name": f"{handle.name}/{p.name}"}) for p in listed.prompts)
        return ListPromptsResult(prompts=prompts)

    async def get_prompt(self, name: str) -> Prompt:
        connector_name, prompt_name = split_prefixed(name)
        handle = await self.registry.get(connector_name)
        async with handle.lock:
            prompt = await handle.connector.get_prompt(prompt_name)
        return prompt.model_copy(update={"name": name})

    # ----- authorization -----

    async def describe_authorization(self) -> Dict[str, Any]:
        providers = []
        for handle in await self.registry.handles():
            c = handle.connector
            entry: Dict[str, Any] = {
                "provider": c.name,
                "type": c.auth_type.value,
                "fields": [f.model_dump(mode="json", exclude_none=True) for f in c.config_schema().fields],
                "requires_auth": c.requires_auth,
            }
            if c.auth_notes:
                entry["notes"] = c.auth_notes
            providers.append(entry)
        return {"providers": providers}

    async def authorization_status(self) -> Dict[str, Any]:
        providers = []
        for handle in await self.registry.handles():
            c = handle.connector
            providers.append(
                {
                    "provider": c.name,
                    "authorized": c.authorized,
                    "authorized_at": c.authorized_at,
                    "status": c.status.value,
                }
            )
        return {"providers": providers}

    async def set_secrets(self, provider: str, secrets: Dict[str, Any]) -> Dict[str, Any]:
        handle = await self.registry.get(provider)
        async with handle.lock:
            await handle.connector.set_auth_details(stringify_details(secrets))
            await handle.connector.test_auth()
            return {"provider": provider, "authorized": handle.connector.authorized}

    async def delete_secrets(self, provider: str) -> Dict[str, Any]:
        handle = await self.registry.get(provider)
        async with handle.lock:
            await handle.connector.clear_auth()
            return {"provider": provider, "authorized": handle.connector.authorized}


def _require(params: Dict[str, Any], key: str, kind: type = str) -> Any:
    value = params.get(key)
    if not isinstance(value, kind) or (kind is str and not value):
        raise InvalidParams(f"Missing or invalid '{key}'")
    return value


class JsonRpcHandler:
    """Translates JSON-RPC 2.0 request objects into ``McpServer`` calls."""

    def __init__(self, server: McpServer) -> None:
        self.server = server
        self._methods: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "notifications/initialized": self._ping,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/read": self._resources_read,
            "prompts/list": self._prompts_list,
            "prompts/get": self._prompts_get,
            "authorization/describe": self._authorization_describe,
            "authorization/status": self._authorization_status,
            "secrets/set": self._secrets_set,
            "secrets/delete": self._secrets_delete,
        }

    async def handle_request(self, message: Any) -> Optional[Dict[str, Any]]:
        """Handle one decoded message; returns None for notifications."""
        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0" or not isinstance(
            message.get("method"), str
        ):
            req_id = message.get("id") if isinstance(message, dict) else None
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32600, "message": "Invalid Request"}}

        is_notification = "id" not in message
        req_id = message.get("id")
        method = message["method"]
        try:
            params = message.get("params") or {}
            if not isinstance(params, dict):
                raise InvalidParams("params must be an object")
            handler = self._methods.get(method)
            if handler is None:
                raise MethodNotFound(f"Method not found: {method}")
            result = await handler(params)
        except ConnectorError as e:
            if is_notification:
                logger.warning("Notification %s failed: %s", method, e)
                return None
            return {"jsonrpc": "2.0", "id": req_id, "error": e.to_jsonrpc_error()}
        except Exception as e:
            logger.exception("Unhandled error in %s", method)
            if is_notification:
                return None
            return {"jsonrpc": "2.0", "id": req_id, "error": OtherError(str(e)).to_jsonrpc_error()}

        if is_notification:
            return None
        return {"jsonrpc": "2.0", "id": req_id, "result": result}

    async def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return (await self.server.initialize(params)).to_wire()

    async def _ping(self, params: Dict[str, Any]) -> Dict[str, Any]:  # noqa: ARG002
        return {}

    async def _tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:  # noqa: ARG002
        return (await self.server.list_tools()).to_wire()

    async def _tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        arguments = params.get("arguments")
        if arguments is not None and not isinstance(arguments, dict):
            raise InvalidParams("arguments must be an object")
        return (await self.server.call_tool(_require(params, "name"), arguments)).to_wire()

    async def _resources_list(self, params: Dict[str, Any]) -> Dict[str, Any]:  # noqa: ARG002
        return (await self.server.list_resources()).to_wire()

    async def _resources_read(self, params: Dict[str, Any]) -> Dict[str, Any]:
        contents = await self.server.read_resource(_require(params, "uri"))
        return {"contents": [c.to_wire() for c in contents]}

    async def _prompts_list(self, params: Dict[str, Any]) -> Dict[str, Any]:  # noqa: ARG002
        return (await self.server.list_prompts()).to_wire()

    async def _prompts_get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return (await self.server.get_prompt(_require(params, "name"))).to_wire()

    async def _authorization_describe(self, params: Dict[str, Any]) -> Dict[str, Any]:  # noqa: ARG002
        return await self.server.describe_authorization()

    async def _authorization_status(self, params: Dict[str, Any]) -> Dict[str, Any]:  # noqa: ARG002
        return await self.server.authorization_status()

    async def _secrets_set(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.server.set_secrets(_require(params, "provider"), _require(params, "secrets", dict))

    async def _secrets_delete(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.server.delete_secrets(_require(params, "provider"))


# ----- Entrypoint -----


def build_store(settings: Settings) -> AuthStore:
    path = settings.auth.store_path
    return FileAuthStore(Path(path).expanduser() if path else None)


async def serve(settings: Settings) -> None:
    from datasourcer.mcp.transport import StdioTransport

    registry = await build_registry(settings, build_store(settings))
    handler = JsonRpcHandler(McpServer(registry, settings=settings))
    await StdioTransport(handler).serve()


def main() -> None:
    """Load settings and serve JSON-RPC over stdio until EOF."""
    settings = load_settings()
    configure_logging(settings.app.log_level)
    configure_cpu_pool(settings.cpu_pool.workers)
    logger.info("Starting %s %s", settings.app.name, __version__)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")


if __name__ == "__main__":  # pragma: no cover
    main()
