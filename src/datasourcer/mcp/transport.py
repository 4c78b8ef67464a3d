"""Newline-delimited JSON-RPC framing over asyncio streams."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional, Set

from datasourcer.mcp.server import JsonRpcHandler

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024

PARSE_ERROR = {"code": -32700, "message": "Parse error"}


class StreamTransport:
    """Serve a ``JsonRpcHandler`` over a reader/writer pair.

    Every request line is handled in its own task so slow connectors do not
    block the rest; responses are written one line at a time under a lock.
    """

    def __init__(self, handler: JsonRpcHandler, reader: asyncio.StreamReader, writer: Any) -> None:
        self.handler = handler
        self.reader = reader
        self.writer = writer
        self._write_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    async def serve(self) -> None:
        """Read until EOF, then wait for in-flight requests to finish."""
        try:
            while True:
                try:
                    line = await self.reader.readline()
                except ValueError:
                    logger.warning("Discarding message longer than the stream limit")
                    await self.send({"jsonrpc": "2.0", "id": None, "error": dict(PARSE_ERROR)})
                    continue
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                task = asyncio.create_task(self._dispatch(line))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            if self._tasks:
                await asyncio.gather(*list(self._tasks))
        except asyncio.CancelledError:
            for task in list(self._tasks):
                task.cancel()
            raise

    async def _dispatch(self, raw: bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unparseable message (%d bytes)", len(raw))
            await self.send({"jsonrpc": "2.0", "id": None, "error": dict(PARSE_ERROR)})
            return
        response = await self.handler.handle_request(message)
        if response is not None:
            await self.send(response)

    async def send(self, payload: Dict[str, Any]) -> None:
        data = (json.dumps(payload, ensure_ascii=False, default=str) + "\n").encode("utf-8")
        async with self._write_lock:
            self.writer.write(data)
            await self.writer.drain()


async def open_stdio(limit: int = STREAM_LIMIT) -> "tuple[asyncio.StreamReader, asyncio.StreamWriter]":
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


class StdioTransport:
    """Serve JSON-RPC over the process's stdin and stdout."""

    def __init__(self, handler: JsonRpcHandler) -> None:
        self.handler = handler
        self._stream: Optional[StreamTransport] = None

    async def serve(self) -> None:
        reader, writer = await open_stdio()
        self._stream = StreamTransport(self.handler, reader, writer)
        try:
            await self._stream.serve()
        finally:
            writer.close()
