import logging
from typing import Any, Dict, List, Optional, Tuple

import pytest

from datasourcer.capabilities import ConnectorConfigSchema, Field, FieldType
from datasourcer.connectors.base_connector import AuthStatus, AuthType, Connector
from datasourcer.connectors.registry import ProviderRegistry
from datasourcer.exceptions import AuthenticationError, OtherError, ResourceNotFound
from datasourcer.mcp.server import JsonRpcHandler, McpServer
from datasourcer.mcp.types import (
    CallToolResult,
    ListResourcesResult,
    Prompt,
    Resource,
    ResourceContents,
    ServerCapabilities,
    ToolDescriptor,
)
from datasourcer.storage.auth_store import MemoryAuthStore


class FakeConnector(Connector):
    """Records calls; tools are plain names with permissive schemas."""

    def __init__(self, name: str, tools: List[str], **kwargs: Any) -> None:
        self.name = name  # type: ignore[misc]
        super().__init__(MemoryAuthStore())
        self._tool_names = tools
        self.calls: List[Tuple[str, Optional[Dict[str, Any]]]] = []
        self.resources: List[Resource] = kwargs.get("resources", [])
        self.resource_error: Optional[Exception] = kwargs.get("resource_error")

    def tools(self) -> List[ToolDescriptor]:
        return [ToolDescriptor(name=t, description=f"{t} tool") for t in self._tool_names]

    def capabilities(self) -> ServerCapabilities:
        return ServerCapabilities(tools={}, resources={} if self.resources else None)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> CallToolResult:
        self.calls.append((name, arguments))
        return await super().call_tool(name, arguments)

    def __getattr__(self, item: str) -> Any:
        if item.startswith("tool_"):

            async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
                return {"tool": item[5:], "args": args}

            return handler
        raise AttributeError(item)

    async def list_resources(self, cursor: Optional[str] = None) -> ListResourcesResult:
        if self.resource_error is not None:
            raise self.resource_error
        return ListResourcesResult(resources=self.resources)

    async def read_resource(self, uri: str) -> List[ResourceContents]:
        for r in self.resources:
            if r.uri == uri:
                return [ResourceContents(uri=uri, text=f"from {self.name}")]
        raise ResourceNotFound(uri)

    def prompts(self) -> List[Prompt]:
        return [Prompt(name="brief", description="Brief me")]


class KeyedConnector(Connector):
    name = "keyed"
    auth_type = AuthType.API_KEY

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.valid_key = "good"

    def config_schema(self) -> ConnectorConfigSchema:
        return ConnectorConfigSchema(
            fields=[Field(name="api_key", label="API key", field_type=FieldType.SECRET, required=True)]
        )

    def tools(self) -> List[ToolDescriptor]:
        return []

    async def check_auth(self) -> None:
        if self._details.get("api_key") != self.valid_key:
            raise AuthenticationError("invalid api key")


class DeviceConnector(Connector):
    name = "x"
    auth_type = AuthType.OAUTH

    def tools(self) -> List[ToolDescriptor]:
        return []

    def auth_tools(self) -> List[ToolDescriptor]:
        return [
            ToolDescriptor(name="auth_start", input_schema={"type": "object", "properties": {"client_id": {"type": "string"}}}),
            ToolDescriptor(name="auth_poll", input_schema={"type": "object", "properties": {"device_code": {"type": "string"}}}),
        ]

    async def tool_auth_start(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {"user_code": "ABCD", "device_code": "D"}

    async def tool_auth_poll(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {"status": "pending"}


def build(*connectors: Connector) -> Tuple[McpServer, JsonRpcHandler]:
    registry = ProviderRegistry()
    for c in connectors:
        registry.register(c)
    server = McpServer(registry)
    return server, JsonRpcHandler(server)


async def rpc(handler: JsonRpcHandler, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    response = await handler.handle_request({"jsonrpc": "2.0", "id": 1, "method": method, "params": params or {}})
    assert response is not None
    return response


@pytest.mark.asyncio
async def test_tools_are_prefixed_with_connector_name() -> None:
    alpha, beta = FakeConnector("alpha", ["list", "get"]), FakeConnector("beta", ["search"])
    _, handler = build(alpha, beta)

    names = [t["name"] for t in (await rpc(handler, "tools/list"))["result"]["tools"]]

    for expected in ("alpha/list", "alpha/get", "beta/search"):
        assert expected in names
    for c in ("alpha", "beta"):
        for action in ("set", "test", "get_schema"):
            assert f"auth/{c}/{action}" in names
    assert not any(n.endswith("start_device") for n in names)
    # Removing the prefix recovers the original names
    assert sorted(n.split("/", 1)[1] for n in names if n.startswith("alpha/")) == ["get", "list"]


@pytest.mark.asyncio
async def test_call_routes_to_exactly_one_connector() -> None:
    alpha, beta = FakeConnector("alpha", ["list", "get"]), FakeConnector("beta", ["search"])
    _, handler = build(alpha, beta)

    response = await rpc(handler, "tools/call", {"name": "alpha/get", "arguments": {"id": "x"}})

    assert response["result"]["structuredContent"] == {"tool": "get", "args": {"id": "x"}}
    assert alpha.calls == [("get", {"id": "x"})]
    assert beta.calls == []


@pytest.mark.asyncio
async def test_resources_list_skips_failing_connector(caplog: pytest.LogCaptureFixture) -> None:
    resource = Resource(uri="good://r", name="R")
    good = FakeConnector("good", [], resources=[resource])
    bad = FakeConnector("bad", [], resource_error=OtherError("boom"))
    _, handler = build(good, bad)

    with caplog.at_level(logging.ERROR, logger="datasourcer.mcp.server"):
        response = await rpc(handler, "resources/list")

    assert response["result"]["resources"] == [{"uri": "good://r", "name": "R"}]
    assert any("bad" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_resources_read_tries_each_connector() -> None:
    a = FakeConnector("a", [], resources=[Resource(uri="a://1", name="one")])
    b = FakeConnector("b", [], resources=[Resource(uri="b://2", name="two")])
    _, handler = build(a, b)

    found = await rpc(handler, "resources/read", {"uri": "b://2"})
    assert found["result"]["contents"] == [{"uri": "b://2", "text": "from b"}]

    missing = await rpc(handler, "resources/read", {"uri": "nowhere://x"})
    assert missing["error"]["code"] == -32004
    assert missing["error"]["data"]["kind"] == "ResourceNotFound"


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["alpha", "alpha/get/extra", "/get", "alpha/", "auth/alpha", "nope/get"])
async def test_malformed_tool_names_are_invalid_input(name: str) -> None:
    _, handler = build(FakeConnector("alpha", ["get"]))
    response = await rpc(handler, "tools/call", {"name": name, "arguments": {}})
    assert response["error"]["code"] == -32602
    assert response["error"]["data"]["kind"] == "InvalidInput"


@pytest.mark.asyncio
async def test_unknown_tool_and_auth_action() -> None:
    _, handler = build(FakeConnector("alpha", ["get"]))

    missing_tool = await rpc(handler, "tools/call", {"name": "alpha/put"})
    assert missing_tool["error"]["data"]["kind"] == "ToolNotFound"

    bad_action = await rpc(handler, "tools/call", {"name": "auth/alpha/reset"})
    assert bad_action["error"]["code"] == -32601
    assert bad_action["error"]["data"]["kind"] == "ToolNotFound"

    not_oauth = await rpc(handler, "tools/call", {"name": "auth/alpha/start_device"})
    assert not_oauth["error"]["data"]["kind"] == "ToolNotFound"


@pytest.mark.asyncio
async def test_auth_tools_set_test_and_schema() -> None:
    keyed = KeyedConnector(MemoryAuthStore())
    _, handler = build(keyed)

    tools = {t["name"]: t for t in (await rpc(handler, "tools/list"))["result"]["tools"]}
    assert tools["auth/keyed/set"]["inputSchema"] == {
        "type": "object",
        "properties": {"api_key": {"type": "string", "format": "password"}},
        "required": ["api_key"],
    }

    schema = await rpc(handler, "tools/call", {"name": "auth/keyed/get_schema"})
    assert schema["result"]["structuredContent"]["schema"]["required"] == ["api_key"]

    missing = await rpc(handler, "tools/call", {"name": "auth/keyed/set", "arguments": {}})
    assert missing["error"]["data"]["kind"] == "InvalidInput"

    ok = await rpc(handler, "tools/call", {"name": "auth/keyed/set", "arguments": {"api_key": "bad"}})
    assert ok["result"]["structuredContent"] == {"ok": True}
    assert keyed.store.load("keyed") == {"api_key": "bad"}

    failed = await rpc(handler, "tools/call", {"name": "auth/keyed/test"})
    assert failed["error"]["code"] == -32001
    assert failed["error"]["data"]["kind"] == "Authentication"

    await rpc(handler, "tools/call", {"name": "auth/keyed/set", "arguments": {"api_key": "good"}})
    passed = await rpc(handler, "tools/call", {"name": "auth/keyed/test"})
    assert passed["result"]["structuredContent"]["ok"] is True
    assert keyed.authorized


@pytest.mark.asyncio
async def test_device_tools_only_for_oauth_connectors() -> None:
    _, handler = build(DeviceConnector(MemoryAuthStore()), FakeConnector("plain", []))
    names = [t["name"] for t in (await rpc(handler, "tools/list"))["result"]["tools"]]
    assert "auth/x/start_device" in names and "auth/x/poll_device" in names
    assert "auth/plain/start_device" not in names

    started = await rpc(handler, "tools/call", {"name": "auth/x/start_device", "arguments": {"client_id": "c"}})
    assert started["result"]["structuredContent"]["user_code"] == "ABCD"
    polled = await rpc(handler, "tools/call", {"name": "auth/x/poll_device", "arguments": {"device_code": "D"}})
    assert polled["result"]["structuredContent"] == {"status": "pending"}


@pytest.mark.asyncio
async def test_prompts_are_prefixed() -> None:
    _, handler = build(FakeConnector("alpha", []))
    listed = await rpc(handler, "prompts/list")
    assert [p["name"] for p in listed["result"]["prompts"]] == ["alpha/brief"]

    got = await rpc(handler, "prompts/get", {"name": "alpha/brief"})
    assert got["result"]["name"] == "alpha/brief"

    missing = await rpc(handler, "prompts/get", {"name": "alpha/none"})
    assert missing["error"]["data"]["kind"] == "InvalidParams"


@pytest.mark.asyncio
async def test_authorization_describe_and_status() -> None:
    _, handler = build(FakeConnector("alpha", []), KeyedConnector(MemoryAuthStore()))

    described = (await rpc(handler, "authorization/describe"))["result"]["providers"]
    assert [p["provider"] for p in described] == ["alpha", "keyed"]
    keyed = described[1]
    assert keyed["type"] == "api_key" and keyed["requires_auth"] is True
    assert keyed["fields"][0]["name"] == "api_key"

    status = {p["provider"]: p for p in (await rpc(handler, "authorization/status"))["result"]["providers"]}
    assert status["alpha"]["authorized"] is True
    assert status["keyed"]["authorized"] is False
    assert status["keyed"]["authorized_at"] is None


@pytest.mark.asyncio
async def test_secrets_set_and_delete() -> None:
    keyed = KeyedConnector(MemoryAuthStore())
    _, handler = build(keyed)

    done = await rpc(handler, "secrets/set", {"provider": "keyed", "secrets": {"api_key": "good"}})
    assert done["result"] == {"provider": "keyed", "authorized": True}

    removed = await rpc(handler, "secrets/delete", {"provider": "keyed"})
    assert removed["result"] == {"provider": "keyed", "authorized": False}
    assert keyed.store.load("keyed") is None

    bad = await rpc(handler, "secrets/set", {"provider": "keyed", "secrets": "nope"})
    assert bad["error"]["data"]["kind"] == "InvalidParams"


@pytest.mark.asyncio
async def test_initialize_merges_capabilities() -> None:
    _, handler = build(FakeConnector("a", []), FakeConnector("b", [], resources=[Resource(uri="b://1", name="1")]))
    result = (await rpc(handler, "initialize", {"protocolVersion": "2025-06-18"}))["result"]
    assert result["serverInfo"]["name"] == "datasourcer"
    assert "resources" in result["capabilities"] and "tools" in result["capabilities"]
    assert result["instructions"]


@pytest.mark.asyncio
async def test_protocol_level_errors() -> None:
    _, handler = build(FakeConnector("a", []))

    assert (await rpc(handler, "ping"))["result"] == {}
    unknown = await rpc(handler, "frobnicate")
    assert unknown["error"]["code"] == -32601
    assert unknown["error"]["data"]["kind"] == "MethodNotFound"

    invalid = await handler.handle_request({"id": 3, "method": "ping"})
    assert invalid == {"jsonrpc": "2.0", "id": 3, "error": {"code": -32600, "message": "Invalid Request"}}

    assert await handler.handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None


class VendorConnector(Connector):
    name = "vendor-mail"
    credential_group = "vendor"
    auth_type = AuthType.OAUTH

    def tools(self) -> List[ToolDescriptor]:
        return []


@pytest.mark.asyncio
async def test_secrets_delete_also_drops_the_vendor_key() -> None:
    store = MemoryAuthStore()
    bundle = {"client_id": "c", "access_token": "T", "refresh_token": "R"}
    store.save_many({"vendor-mail": bundle, "vendor": bundle})
    connector = VendorConnector(store)
    server, _ = build(connector)
    assert await connector.get_auth_details() == bundle

    removed = await server.delete_secrets("vendor-mail")

    assert removed == {"provider": "vendor-mail", "authorized": False}
    assert await connector.get_auth_details() == {}
    assert connector.status is AuthStatus.UNCONFIGURED
    assert store.load("vendor-mail") is None and store.load("vendor") is None
    # A fresh instance (as after a restart) finds nothing either
    assert await VendorConnector(store).get_auth_details() == {}


@pytest.mark.asyncio
async def test_builtin_tools_are_listed_first() -> None:
    _, handler = build(FakeConnector("alpha", ["get"]))
    names = [t["name"] for t in (await rpc(handler, "tools/list"))["result"]["tools"]]
    assert names[:3] == ["datasourcer/resolve", "datasourcer/list_patterns", "datasourcer/federated_search"]

    missing = await rpc(handler, "tools/call", {"name": "datasourcer/explode"})
    assert missing["error"]["data"]["kind"] == "ToolNotFound"


@pytest.mark.asyncio
async def test_resolve_reports_and_executes_matches() -> None:
    web = FakeConnector("web", ["fetch_page"])
    _, handler = build(web, FakeConnector("alpha", []))

    listed = await rpc(handler, "tools/call", {"name": "datasourcer/resolve", "arguments": {"input": "https://e.test/a"}})
    matches = listed["result"]["structuredContent"]["results"]
    assert [(m["connector"], m["tool"], m["arguments"]) for m in matches] == [
        ("web", "fetch_page", {"url": "https://e.test/a"})
    ]
    assert web.calls == []

    executed = await rpc(
        handler,
        "tools/call",
        {"name": "datasourcer/resolve", "arguments": {"input": "https://e.test/a", "execute": True}},
    )
    content = executed["result"]["structuredContent"]
    assert content["action"]["pattern"] == "web_url"
    assert content["result"] == {"tool": "fetch_page", "args": {"url": "https://e.test/a"}}
    assert web.calls == [("fetch_page", {"url": "https://e.test/a"})]

    # localfs is not registered, so paths resolve to nothing
    unresolved = await rpc(
        handler, "tools/call", {"name": "datasourcer/resolve", "arguments": {"input": "/tmp/a.md", "execute": True}}
    )
    assert unresolved["error"]["data"]["kind"] == "InvalidInput"

    patterns = await rpc(handler, "tools/call", {"name": "datasourcer/list_patterns"})
    assert [p["id"] for p in patterns["result"]["structuredContent"]["patterns"]] == ["web_url"]
