"""Output channel — the one serialized sink for every outbound protocol line.

Responses from the request loop and notifications from the pipeline both go
through here. One writer at a time; each line is written and flushed whole
before the next writer gets the sink.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, TextIO

log = logging.getLogger(__name__)


class OutputClosed(Exception):
    """The sink is gone. Fatal: nothing the process does is visible any more."""
    pass


class OutputChannel:
    def __init__(self, stream: TextIO):
        self._stream = stream
        self._lock = asyncio.Lock()
        self.closed = asyncio.Event()
        self.lines_written = 0

    def _emit(self, data: str) -> None:
        self._stream.write(data)
        self._stream.flush()

    async def write(self, line: str) -> None:
        """Write one line (terminator appended) with exclusive access to the sink."""
        if "\n" in line:
            raise ValueError("output lines must not contain newlines")
        if self.closed.is_set():
            raise OutputClosed("output channel is closed")
        async with self._lock:
            if self.closed.is_set():
                raise OutputClosed("output channel is closed")
            # Blocking write off-loop; the lock stays held until the flush lands.
            pending = asyncio.ensure_future(asyncio.to_thread(self._emit, line + "\n"))
            try:
                await asyncio.shield(pending)
            except asyncio.CancelledError:
                await self._settle_abandoned(pending)
                raise
            except (BrokenPipeError, OSError, ValueError) as e:
                raise self._fail(e) from e
            self.lines_written += 1

    def _fail(self, e: BaseException) -> OutputClosed:
        self.closed.set()
        log.error("Output sink failed: %s", e)
        return OutputClosed(str(e))

    async def _settle_abandoned(self, pending: asyncio.Future) -> None:
        """Hold the sink until a cancelled writer's thread has returned.

        The thread cannot be interrupted, so the next writer waits for it.
        """
        while not pending.done():
            try:
                await asyncio.wait({pending})
            except asyncio.CancelledError:
                continue
        if pending.cancelled():
            return
        exc = pending.exception()
        if exc is None:
            self.lines_written += 1
        elif isinstance(exc, (BrokenPipeError, OSError, ValueError)):
            self._fail(exc)

    async def write_message(self, message: dict[str, Any]) -> None:
        """Serialize a JSON object compactly and write it as one line."""
        await self.write(json.dumps(message, separators=(",", ":"), ensure_ascii=False))
