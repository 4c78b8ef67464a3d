"""Local filesystem connector.

Exposes text files under a set of configured root directories as tools,
``file://`` resources and a summarization prompt. Every path is resolved and
checked against the roots before it is touched.
"""

from __future__ import annotations

import asyncio
import fnmatch
import mimetypes
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

from datasourcer.capabilities import ConnectorConfigSchema, Field
from datasourcer.config import split_csv
from datasourcer.connectors.base_connector import RESPONSE_FORMAT_PROPERTY, Connector, is_detailed
from datasourcer.cpu_pool import spawn_cpu
from datasourcer.exceptions import InvalidInput, InvalidParams, IoError, ResourceNotFound
from datasourcer.mcp.types import (
    ListResourcesResult,
    Prompt,
    PromptArgument,
    Resource,
    ResourceContents,
    ServerCapabilities,
    ToolDescriptor,
)
from datasourcer.pagination import Page, decode_cursor, encode_cursor, paginate
from datasourcer.parsers.base_parser import ParsedDocument
from datasourcer.parsers.markdown_parser import parser_for
from datasourcer.search.ephemeral import search_documents

PAGE_SIZE = 100
DEFAULT_LIMIT = 50
DEFAULT_MAX_CHARS = 20_000
SEARCHABLE_SUFFIXES = {".md", ".markdown", ".mdx", ".txt", ".rst", ".html", ".htm"}


def _walk(base: Path, pattern: str, recursive: bool) -> List[Path]:
    candidates = base.rglob("*") if recursive else base.glob("*")
    out = []
    for p in candidates:
        rel = p.relative_to(base)
        if any(part.startswith(".") for part in rel.parts):
            continue
        if p.is_file() and fnmatch.fnmatch(p.name, pattern):
            out.append(p)
    return sorted(out)


def _file_entry(path: Path, root: Path) -> Dict[str, Any]:
    stat = path.stat()
    return {
        "path": str(path),
        "relative_path": str(path.relative_to(root)),
        "size": stat.st_size,
        "modified": int(stat.st_mtime),
    }


def _parse_files(paths: List[Path]) -> List[ParsedDocument]:
    docs = []
    for p in paths:
        doc = parser_for(p).parse(p)
        doc.metadata["path"] = str(p)
        docs.append(doc)
    return docs


class LocalFsConnector(Connector):
    name = "localfs"
    description = "Read, list and search text files under configured local directories."
    instructions = (
        "Use list_files to browse, read_file to fetch a document and search_files for "
        "keyword search. Paths are absolute or relative to the first configured root."
    )

    # ----- roots -----

    def config_schema(self) -> ConnectorConfigSchema:
        return ConnectorConfigSchema(
            fields=[
                Field(
                    name="roots",
                    label="Root directories",
                    description="Comma-separated directories the connector may read.",
                )
            ]
        )

    def roots(self) -> List[Path]:
        raw = self._details.get("roots") or self.settings.localfs.roots
        return [Path(os.path.expanduser(r)).resolve() for r in split_csv(raw)]

    def _root_for(self, path: Path) -> Optional[Path]:
        for root in self.roots():
            if path == root or path.is_relative_to(root):
                return root
        return None

    def resolve_path(self, raw: Optional[str]) -> Tuple[Path, Path]:
        """Resolve a user path to ``(absolute_path, root)``; reject escapes."""
        roots = self.roots()
        if not roots:
            raise InvalidInput("No root directories configured for localfs")
        candidate = Path(os.path.expanduser(raw)) if raw else roots[0]
        if not candidate.is_absolute():
            candidate = roots[0] / candidate
        resolved = candidate.resolve()
        root = self._root_for(resolved)
        if root is None:
            raise InvalidInput(f"Path is outside the configured roots: {raw}")
        return resolved, root

    def capabilities(self) -> ServerCapabilities:
        return ServerCapabilities(
            tools={"listChanged": False},
            resources={"listChanged": False},
            prompts={"listChanged": False},
        )

    # ----- tools -----

    def tools(self) -> List[ToolDescriptor]:
        max_list = self.settings.localfs.max_list
        return [
            ToolDescriptor(
                name="list_files",
                title="List files",
                description="List files in a directory under the configured roots.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": "Directory; defaults to the first root."},
                        "pattern": {"type": "string", "description": "Glob on file names, e.g. *.md", "default": "*"},
                        "recursive": {"type": "boolean", "default": False},
                        "limit": {"type": "integer", "minimum": 1, "maximum": max_list, "default": DEFAULT_LIMIT},
                        "cursor": {"type": "string", "description": "next_cursor from a previous call"},
                    },
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True},
            ),
            ToolDescriptor(
                name="read_file",
                title="Read file",
                description="Read a text, Markdown or HTML file and return its plain text.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "path": {"type": "string"},
                        "response_format": RESPONSE_FORMAT_PROPERTY,
                        "max_chars": {"type": "integer", "minimum": 1, "default": DEFAULT_MAX_CHARS},
                    },
                    "required": ["path"],
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True},
            ),
            ToolDescriptor(
                name="search_files",
                title="Search files",
                description="Keyword search (BM25) over text files in a directory tree.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "minLength": 1},
                        "path": {"type": "string"},
                        "pattern": {"type": "string", "default": "*"},
                        "k": {"type": "integer", "minimum": 1, "maximum": 50, "default": 5},
                    },
                    "required": ["query"],
                    "additionalProperties": False,
                },
                annotations={"readOnlyHint": True},
            ),
        ]

    async def _listing(self, path: Optional[str], pattern: str, recursive: bool) -> Tuple[Path, Path, List[Path]]:
        base, root = self.resolve_path(path)
        if not base.is_dir():
            raise InvalidInput(f"Not a directory: {path or base}")
        try:
            files = await asyncio.to_thread(_walk, base, pattern, recursive)
        except OSError as e:
            raise IoError(f"Cannot list {base}: {e}") from e
        return base, root, files

    async def tool_list_files(self, args: Dict[str, Any]) -> Dict[str, Any]:
        pattern = args.get("pattern") or "*"
        recursive = bool(args.get("recursive", False))
        limit = int(args.get("limit") or DEFAULT_LIMIT)
        base, root, files = await self._listing(args.get("path"), pattern, recursive)

        start: Optional[str] = None
        if args.get("cursor"):
            state = decode_cursor(args["cursor"])
            bound = (state.get("dir"), state.get("pattern"), state.get("recursive", False))
            if bound != (str(base), pattern, recursive):
                raise InvalidParams("Cursor does not belong to this listing")
            start = args["cursor"]

        async def fetch(cursor: Optional[str], remaining: int) -> Page[Path]:
            offset = int(decode_cursor(cursor).get("offset", 0)) if cursor else 0
            end = offset + min(remaining, PAGE_SIZE)
            nxt = None
            if end < len(files):
                nxt = encode_cursor(
                    {"dir": str(base), "pattern": pattern, "recursive": recursive, "offset": end}
                )
            return Page(items=files[offset:end], next_cursor=nxt)

        pages = -(-limit // PAGE_SIZE)
        walked = await paginate(fetch, desired_items=limit, max_pages=pages, start_cursor=start)
        try:
            entries = [_file_entry(p, root) for p in walked.items]
        except OSError as e:
            raise IoError(f"Cannot stat files under {base}: {e}") from e
        return {
            "directory": str(base),
            "files": entries,
            "total_count": len(files),
            "next_cursor": walked.next_cursor,
        }

    async def _read_document(self, raw_path: str) -> Tuple[Path, ParsedDocument]:
        path, _ = self.resolve_path(raw_path)
        if not path.is_file():
            raise InvalidInput(f"Not a file: {raw_path}")
        try:
            size = path.stat().st_size
        except OSError as e:
            raise IoError(f"Cannot stat {path}: {e}") from e
        limit = self.settings.localfs.max_file_bytes
        if size > limit:
            raise InvalidInput(f"File is too large ({size} bytes > {limit})")
        doc = await spawn_cpu(parser_for(path).parse, path)
        doc.metadata["size"] = size
        return path, doc

    async def tool_read_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        path, doc = await self._read_document(args["path"])
        max_chars = int(args.get("max_chars") or DEFAULT_MAX_CHARS)
        out: Dict[str, Any] = {
            "path": str(path),
            "title": doc.title,
            "text": doc.text[:max_chars],
            "truncated": len(doc.text) > max_chars,
        }
        if is_detailed(args):
            out["sections"] = doc.to_dict(include_text=False)["sections"]
            out["metadata"] = dict(doc.metadata)
            out["length"] = len(doc.text)
        return out

    async def tool_search_files(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = args["query"]
        _, _, files = await self._listing(args.get("path"), args.get("pattern") or "*", True)
        limit = self.settings.localfs.max_file_bytes
        try:
            candidates = [
                p for p in files if p.suffix.lower() in SEARCHABLE_SUFFIXES and p.stat().st_size <= limit
            ][: self.settings.localfs.max_list]
        except OSError as e:
            raise IoError(f"Cannot stat files for search: {e}") from e
        docs = await spawn_cpu(_parse_files, candidates)
        hits = await spawn_cpu(search_documents, docs, query, k=int(args.get("k") or 5))
        return {"query": query, "searched_files": len(candidates), "results": hits}

    # ----- resources -----

    async def list_resources(self, cursor: Optional[str] = None) -> ListResourcesResult:  # noqa: ARG002
        resources: List[Resource] = []
        for root in self.roots():
            if not root.is_dir():
                continue
            try:
                files = await asyncio.to_thread(_walk, root, "*", True)
            except OSError as e:
                raise IoError(f"Cannot list {root}: {e}") from e
            for p in files[: self.settings.localfs.max_list]:
                mime, _ = mimetypes.guess_type(p.name)
                resources.append(
                    Resource(uri=p.as_uri(), name=str(p.relative_to(root)), mime_type=mime or "text/plain")
                )
        return ListResourcesResult(resources=resources)

    async def read_resource(self, uri: str) -> List[ResourceContents]:
        parsed = urlparse(uri)
        if parsed.scheme != "file":
            raise ResourceNotFound(f"Resource not found: {uri}")
        path = Path(unquote(parsed.path)).resolve()
        if self._root_for(path) is None or not path.is_file():
            raise ResourceNotFound(f"Resource not found: {uri}")
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            raise IoError(f"Cannot read {path}: {e}") from e
        mime, _ = mimetypes.guess_type(path.name)
        return [ResourceContents(uri=uri, mime_type=mime or "text/plain", text=text)]

    # ----- prompts -----

    def prompts(self) -> List[Prompt]:
        return [
            Prompt(
                name="summarize_file",
                description="Read a local file with localfs/read_file and summarize it.",
                arguments=[PromptArgument(name="path", description="File to summarize", required=True)],
            )
        ]
