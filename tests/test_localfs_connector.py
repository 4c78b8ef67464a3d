from pathlib import Path
from typing import Any, Dict

import pytest

from datasourcer.config import LocalFsConfig, Settings
from datasourcer.connectors import localfs
from datasourcer.connectors.localfs import LocalFsConnector
from datasourcer.exceptions import InvalidInput, InvalidParams, IoError, ResourceNotFound
from datasourcer.storage.auth_store import MemoryAuthStore


@pytest.fixture
def docs(tmp_path: Path) -> Path:
    (tmp_path / "guide.md").write_text("# Install Guide\n\nRun the installer, then configure the proxy.\n")
    (tmp_path / "page.html").write_text(
        "<html><head><title>Release notes</title><script>var x=1;</script></head>"
        "<body><h1>Notes</h1><p>Fixed the crash in the exporter.</p></body></html>"
    )
    (tmp_path / "todo.txt").write_text("buy milk\n")
    sub = tmp_path / "sub"
    sub.mkdir()
    for i in range(5):
        (sub / f"n{i}.md").write_text(f"# Note {i}\n\nbody {i}\n")
    (tmp_path / ".hidden").mkdir()
    (tmp_path / ".hidden" / "secret.md").write_text("# hidden\n")
    return tmp_path


def make(root: Path, **cfg: Any) -> LocalFsConnector:
    return LocalFsConnector(MemoryAuthStore(), settings=Settings(localfs=LocalFsConfig(roots=str(root), **cfg)))


async def call(c: LocalFsConnector, tool: str, args: Dict[str, Any]) -> Dict[str, Any]:
    result = await c.call_tool(tool, args)
    assert result.structured_content is not None
    return result.structured_content


@pytest.mark.asyncio
async def test_list_files_paginates_with_cursor(docs: Path) -> None:
    c = make(docs)
    first = await call(c, "list_files", {"recursive": True, "pattern": "*.md", "limit": 4})
    assert [f["relative_path"] for f in first["files"]] == [
        "guide.md",
        "sub/n0.md",
        "sub/n1.md",
        "sub/n2.md",
    ]
    assert first["total_count"] == 6
    assert first["next_cursor"]

    rest = await call(
        c, "list_files", {"recursive": True, "pattern": "*.md", "limit": 4, "cursor": first["next_cursor"]}
    )
    assert [f["relative_path"] for f in rest["files"]] == ["sub/n3.md", "sub/n4.md"]
    assert rest["next_cursor"] is None

    with pytest.raises(InvalidParams):
        await call(c, "list_files", {"pattern": "*.txt", "cursor": first["next_cursor"]})


@pytest.mark.asyncio
async def test_list_files_top_level_only(docs: Path) -> None:
    out = await call(make(docs), "list_files", {})
    assert sorted(f["relative_path"] for f in out["files"]) == ["guide.md", "page.html", "todo.txt"]


@pytest.mark.asyncio
async def test_read_markdown_and_html(docs: Path) -> None:
    c = make(docs)
    md = await call(c, "read_file", {"path": "guide.md"})
    assert md["title"] == "Install Guide"
    assert "configure the proxy" in md["text"]
    assert md["truncated"] is False

    html = await call(c, "read_file", {"path": str(docs / "page.html"), "response_format": "detailed"})
    assert html["title"] == "Release notes"
    assert "var x" not in html["text"]
    assert html["sections"][0]["title"] == "Notes"

    short = await call(c, "read_file", {"path": "todo.txt", "max_chars": 3})
    assert short["text"] == "buy" and short["truncated"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["../outside.md", "/etc/passwd", "sub/../../x"])
async def test_paths_outside_roots_are_rejected(docs: Path, path: str) -> None:
    with pytest.raises(InvalidInput):
        await make(docs).call_tool("read_file", {"path": path})


@pytest.mark.asyncio
async def test_read_file_size_limit(docs: Path) -> None:
    with pytest.raises(InvalidInput):
        await make(docs, max_file_bytes=10).call_tool("read_file", {"path": "guide.md"})


@pytest.mark.asyncio
async def test_search_files_ranks_matching_document(docs: Path) -> None:
    out = await call(make(docs), "search_files", {"query": "exporter crash", "k": 3})
    assert out["results"]
    assert out["results"][0]["location"].endswith("page.html")

    none = await call(make(docs), "search_files", {"query": "zeppelin"})
    assert none["results"] == []
    assert none["no_results"] is True
    assert none["message"] == 'No results found for "zeppelin".'


@pytest.mark.asyncio
async def test_resources_and_prompt(docs: Path) -> None:
    c = make(docs)
    listed = await c.list_resources()
    uris = {r.uri for r in listed.resources}
    guide_uri = (docs / "guide.md").resolve().as_uri()
    assert guide_uri in uris
    assert not any("secret" in u for u in uris)

    contents = await c.read_resource(guide_uri)
    assert contents[0].text.startswith("# Install Guide")

    with pytest.raises(ResourceNotFound):
        await c.read_resource("https://example.com/")
    with pytest.raises(ResourceNotFound):
        await c.read_resource(Path("/etc/hosts").as_uri())

    prompt = await c.get_prompt("summarize_file")
    assert prompt.arguments[0].name == "path"


@pytest.mark.asyncio
async def test_roots_can_be_set_through_auth_details(tmp_path: Path) -> None:
    other = tmp_path / "other"
    other.mkdir()
    (other / "a.txt").write_text("alpha")
    c = LocalFsConnector(MemoryAuthStore(), settings=Settings(localfs=LocalFsConfig(roots=None)))
    with pytest.raises(InvalidInput):
        await c.call_tool("list_files", {})
    await c.set_auth_details({"roots": str(other)})
    out = await call(c, "list_files", {})
    assert [f["relative_path"] for f in out["files"]] == ["a.txt"]


@pytest.mark.asyncio
async def test_list_files_cursor_is_bound_to_recursion(docs: Path) -> None:
    c = make(docs)
    first = await call(c, "list_files", {"recursive": True, "pattern": "*.md", "limit": 4})
    with pytest.raises(InvalidParams):
        await call(c, "list_files", {"recursive": False, "pattern": "*.md", "cursor": first["next_cursor"]})


@pytest.mark.asyncio
async def test_read_file_stat_failure_is_io_error(docs: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # The file disappears between the existence check and the size check
    monkeypatch.setattr(Path, "is_file", lambda self: True)
    with pytest.raises(IoError):
        await make(docs).call_tool("read_file", {"path": "vanished.md"})


@pytest.mark.asyncio
async def test_search_files_stat_failure_is_io_error(docs: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    real_walk = localfs._walk

    def walk_with_vanished_file(base: Path, pattern: str, recursive: bool):  # noqa: ANN202
        return real_walk(base, pattern, recursive) + [base / "vanished.md"]

    monkeypatch.setattr(localfs, "_walk", walk_with_vanished_file)
    with pytest.raises(IoError):
        await make(docs).call_tool("search_files", {"query": "proxy"})
