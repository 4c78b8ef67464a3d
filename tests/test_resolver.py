import os

import pytest

from datasourcer.resolver import SmartResolver

MESSAGE_ID = "AAMkAGI2TG93AAA=AAAAAAEMAAAiIsqMbYjsT5e-T7KzowPTAAAAAAAA"


@pytest.mark.parametrize(
    "text,connector,tool,arguments",
    [
        ("file:///home/me/My%20Notes/a.md", "localfs", "read_file", {"path": "/home/me/My Notes/a.md"}),
        ("/var/docs/guide.md", "localfs", "read_file", {"path": "/var/docs/guide.md"}),
        (MESSAGE_ID, "microsoft-graph", "get_message", {"id": MESSAGE_ID}),
        ("  https://example.com/page?x=1  ", "web", "fetch_page", {"url": "https://example.com/page?x=1"}),
    ],
)
def test_resolve_routes_to_connector_tool(text: str, connector: str, tool: str, arguments: dict) -> None:
    action = SmartResolver().resolve(text)
    assert action is not None
    assert (action.connector, action.tool, action.arguments) == (connector, tool, arguments)


def test_home_relative_paths_are_expanded() -> None:
    action = SmartResolver().resolve("~/notes/todo.md")
    assert action is not None
    assert action.arguments == {"path": os.path.expanduser("~/notes/todo.md")}


def test_unrecognized_input_resolves_to_nothing() -> None:
    resolver = SmartResolver()
    assert resolver.resolve("what is the weather") is None
    assert resolver.resolve("   ") is None
    assert resolver.resolve_all("relative/path.md") == []


def test_resolve_skips_unavailable_connectors() -> None:
    resolver = SmartResolver()
    assert resolver.resolve("file:///tmp/a.md", available=["web"]) is None
    assert resolver.resolve("https://example.com", available=["localfs"]) is None
    assert resolver.resolve("https://example.com", available=["web"]).connector == "web"


def test_resolve_all_orders_by_priority() -> None:
    actions = SmartResolver().resolve_all("/tmp/a.md")
    assert [a.pattern for a in actions] == ["local_path"]
    assert actions[0].confidence == 0.9


def test_list_patterns_has_examples_that_resolve() -> None:
    resolver = SmartResolver()
    patterns = resolver.list_patterns()
    assert [p["priority"] for p in patterns] == sorted((p["priority"] for p in patterns), reverse=True)
    for p in patterns:
        action = resolver.resolve(p["example"])
        assert action is not None and action.pattern == p["id"]

    assert {p["connector"] for p in resolver.list_patterns(available=["web"])} == {"web"}
