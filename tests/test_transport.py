import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from datasourcer.mcp.transport import StreamTransport


class FakeHandler:
    def __init__(self) -> None:
        self.release = asyncio.Event()

    async def handle_request(self, message: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(message, dict):
            return {"jsonrpc": "2.0", "id": None, "error": {"code": -32600, "message": "Invalid Request"}}
        if "id" not in message:
            return None
        if message["method"] == "slow":
            await self.release.wait()
        if message["method"] == "fast":
            self.release.set()
        return {"jsonrpc": "2.0", "id": message["id"], "result": {"method": message["method"]}}


class BufferWriter:
    def __init__(self) -> None:
        self.chunks: List[bytes] = []

    def write(self, data: bytes) -> None:
        self.chunks.append(data)

    async def drain(self) -> None:
        return None

    def messages(self) -> List[Dict[str, Any]]:
        lines = b"".join(self.chunks).decode().splitlines()
        return [json.loads(line) for line in lines]


async def run(lines: List[bytes], handler: Any) -> BufferWriter:
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(line)
    reader.feed_eof()
    writer = BufferWriter()
    await asyncio.wait_for(StreamTransport(handler, reader, writer).serve(), timeout=5)
    return writer


@pytest.mark.asyncio
async def test_parse_errors_and_notifications() -> None:
    writer = await run(
        [
            b"{this is not json\n",
            b"\n",
            b'{"jsonrpc":"2.0","method":"notifications/initialized"}\n',
            b"[1,2]\n",
            b'{"jsonrpc":"2.0","id":7,"method":"ping"}\n',
        ],
        FakeHandler(),
    )
    messages = writer.messages()
    assert {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}} in messages
    assert any(m.get("error", {}).get("code") == -32600 for m in messages)
    assert {"jsonrpc": "2.0", "id": 7, "result": {"method": "ping"}} in messages
    assert len(messages) == 3


@pytest.mark.asyncio
async def test_requests_run_concurrently() -> None:
    # "slow" only finishes once "fast" has been handled, so a serial loop would hang
    writer = await run(
        [
            b'{"jsonrpc":"2.0","id":1,"method":"slow"}\n',
            b'{"jsonrpc":"2.0","id":2,"method":"fast"}\n',
        ],
        FakeHandler(),
    )
    assert [m["id"] for m in writer.messages()] == [2, 1]
