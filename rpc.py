"""Request/response loop — line-delimited JSON-RPC 2.0 over stdin/stdout.

One request per input line; responses go through the shared OutputChannel,
so they can land before or after a pipeline notification but never inside one.
Returns when stdin reaches EOF, which is the daemon's shutdown trigger.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from typing import Any, TextIO

from output import OutputChannel
from tools import InvalidArguments, ToolRegistry, UnknownTool

log = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "devrelay"
SERVER_VERSION = "1.0.0"

_MAX_LINE_BYTES = 16 * 1024 * 1024

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


def _response(req_id: Any, result: dict) -> dict:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def _error(req_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def _is_tty(stream: TextIO) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


async def _tty_lines(stream: TextIO) -> AsyncIterator[str]:
    """Canonical-mode terminals hand over one line per read, so a readable
    fd means readline() returns without blocking."""
    loop = asyncio.get_running_loop()
    fd = stream.fileno()
    lines: asyncio.Queue[str] = asyncio.Queue()

    def on_readable():
        text = stream.readline()
        lines.put_nowait(text)
        if not text:
            loop.remove_reader(fd)

    loop.add_reader(fd, on_readable)
    try:
        while True:
            text = await lines.get()
            if not text:
                return
            yield text
    finally:
        loop.remove_reader(fd)


async def stdin_lines(stream: TextIO | None = None) -> AsyncIterator[str]:
    """Yield input lines until EOF.

    Pipes are read through the event loop; anything the selector refuses
    (regular files, test buffers) is read line by line in a worker thread.
    A terminal is watched for readability but left in blocking mode: it
    shares its file description with stdout, and O_NONBLOCK there would
    make interactive writes fail with BlockingIOError.
    """
    stream = stream or sys.stdin
    if _is_tty(stream):
        async for line in _tty_lines(stream):
            yield line
        return
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=_MAX_LINE_BYTES)
    try:
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), stream)
    except (OSError, ValueError) as e:
        log.debug("stdin not pollable (%s), using threaded reader", e)
        while True:
            text = await asyncio.to_thread(stream.readline)
            if not text:
                return
            yield text
    else:
        try:
            while True:
                raw = await reader.readline()
                if not raw:
                    return
                yield raw.decode("utf-8", errors="replace")
        finally:
            transport.close()


class RpcServer:
    def __init__(self, registry: ToolRegistry, output: OutputChannel,
                 instructions: str = ""):
        self.registry = registry
        self.output = output
        self.instructions = instructions
        self.requests = 0
        self.initialized = False

    async def serve(self, lines: AsyncIterator[str]) -> None:
        """Handle lines until the source is exhausted."""
        async for line in lines:
            resp = await self.handle_line(line)
            if resp is not None:
                await self.output.write_message(resp)
        log.info("Input closed after %d requests", self.requests)

    async def handle_line(self, line: str) -> dict | None:
        line = line.strip()
        if not line:
            return None
        try:
            msg = json.loads(line)
        except json.JSONDecodeError as e:
            log.warning("Unparseable request line: %s", e)
            return _error(None, PARSE_ERROR, f"Parse error: {e}")
        try:
            return await self.handle_message(msg)
        except Exception as e:
            log.error("Request handling failed: %s", e, exc_info=True)
            req_id = msg.get("id") if isinstance(msg, dict) else None
            return _error(req_id, INTERNAL_ERROR, "Internal error")

    async def handle_message(self, msg: Any) -> dict | None:
        """Handle one decoded message. Returns None for notifications."""
        if not isinstance(msg, dict) or not isinstance(msg.get("method"), str):
            req_id = msg.get("id") if isinstance(msg, dict) else None
            return _error(req_id, INVALID_REQUEST, "Invalid request")

        method = msg["method"]
        params = msg.get("params") or {}

        # No id → notification; never answered
        if "id" not in msg:
            if method in ("notifications/initialized", "initialized"):
                self.initialized = True
                log.info("Client initialization completed")
            else:
                log.debug("Ignoring notification %s", method)
            return None

        req_id = msg["id"]
        self.requests += 1

        if method == "initialize":
            result = {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {
                    "tools": {"listChanged": False},
                    "logging": {},
                },
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            }
            if self.instructions:
                result["instructions"] = self.instructions
            return _response(req_id, result)

        if method == "ping":
            return _response(req_id, {})

        if method == "logging/setLevel":
            return _response(req_id, {})

        if method == "tools/list":
            return _response(req_id, {"tools": self.registry.get_schemas()})

        if method == "tools/call":
            if not isinstance(params, dict):
                return _error(req_id, INVALID_PARAMS, "params must be an object")
            name = params.get("name", "")
            if not isinstance(name, str):
                return _error(req_id, INVALID_PARAMS, "Tool name must be a string")
            arguments = params.get("arguments") or {}
            try:
                result = await self.registry.execute(name, arguments)
            except (UnknownTool, InvalidArguments) as e:
                return _error(req_id, INVALID_PARAMS, str(e))
            return _response(req_id, result.to_mcp())

        return _error(req_id, METHOD_NOT_FOUND, f"Method not found: {method}")
