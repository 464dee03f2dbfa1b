"""Notification pipeline — merges webhook and poll events into one stream.

Both producers hand RunCompletionEvents to the pipeline. The poller awaits
submit(), which writes the notification before returning. The webhook
listener uses offer(), which queues the notification for the writer task
(run()) so an HTTP reply never waits on stdout. Either way the dedup decision (evict → look up → insert) runs inside a single
asyncio.Lock critical section, so for any (run_id, conclusion) pair the first
submission wins and every later one within the eviction horizon is dropped,
whichever producer it came from.

Eviction makes delivery at-least-once: a key that has aged out of the
horizon may notify again if the provider keeps reporting it after a gap.
Each duplicate observation refreshes the key's last-seen time, so a run that
stays on the provider's "recent runs" page is not re-notified.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from output import OutputChannel, OutputClosed

log = logging.getLogger(__name__)

STATUSES = frozenset({"queued", "in_progress", "completed", "waiting", "requested", "pending"})
CONCLUSIONS = frozenset({
    "success", "failure", "cancelled", "neutral", "skipped",
    "timed_out", "action_required", "stale", "startup_failure",
})
SOURCES = frozenset({"webhook", "poll"})


class MalformedEvent(ValueError):
    """Run payload does not have the shape of a workflow run."""
    pass


@dataclass(frozen=True)
class RunCompletionEvent:
    run_id: str
    workflow_name: str
    status: str
    conclusion: str | None
    source: str
    observed_at: float = field(default_factory=time.time)
    url: str = ""

    @property
    def dedup_key(self) -> tuple[str, str | None]:
        return (self.run_id, self.conclusion)

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @classmethod
    def from_run(cls, run: Any, source: str) -> RunCompletionEvent:
        """Parse a provider workflow-run object (webhook or REST shape).

        Unknown shapes are rejected here rather than carried inward.
        """
        if source not in SOURCES:
            raise MalformedEvent(f"unknown source: {source!r}")
        if not isinstance(run, dict):
            raise MalformedEvent(f"workflow run must be an object, got {type(run).__name__}")
        run_id = run.get("id")
        if run_id is None or isinstance(run_id, bool) or not isinstance(run_id, int | str):
            raise MalformedEvent("workflow run has no id")
        status = run.get("status")
        if status not in STATUSES:
            raise MalformedEvent(f"unknown run status: {status!r}")
        conclusion = run.get("conclusion")
        if conclusion is not None and conclusion not in CONCLUSIONS:
            raise MalformedEvent(f"unknown run conclusion: {conclusion!r}")
        name = run.get("name")
        if name is not None and not isinstance(name, str):
            raise MalformedEvent("workflow name must be a string")
        url = run.get("html_url") or ""
        return cls(
            run_id=str(run_id),
            workflow_name=name or "",
            status=status,
            conclusion=conclusion,
            source=source,
            url=url if isinstance(url, str) else "",
        )


@dataclass(frozen=True)
class NotificationMessage:
    level: str
    message: str
    logger: str = "devrelay.ci"

    @classmethod
    def for_event(cls, event: RunCompletionEvent) -> NotificationMessage:
        ref = event.url or f"run {event.run_id}"
        return cls(
            level="info" if event.conclusion == "success" else "error",
            message=f"Workflow '{event.workflow_name}' {event.conclusion}: {ref}",
        )

    def to_dict(self) -> dict:
        return {
            "jsonrpc": "2.0",
            "method": "notifications/message",
            "params": {"level": self.level, "logger": self.logger, "message": self.message},
        }


class NotificationPipeline:
    """Dedup + emit. The only owner of the dedup state."""

    def __init__(
        self,
        output: OutputChannel,
        horizon: float = 3600.0,
        max_entries: int = 1000,
        history_size: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._output = output
        self.horizon = horizon
        self.max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()
        # key → last-seen (clock time), ordered oldest sighting first
        self._seen: collections.OrderedDict[tuple[str, str | None], float] = collections.OrderedDict()
        self._history: collections.deque[dict] = collections.deque(maxlen=history_size)
        self._pending: asyncio.Queue[NotificationMessage] = asyncio.Queue()
        self.submitted = 0
        self.emitted = 0
        self.duplicates = 0
        self.dropped = 0

    def _evict_expired(self, now: float) -> None:
        # Refreshed keys move to the end, so the front is always the oldest.
        while self._seen:
            key, last_seen = next(iter(self._seen.items()))
            if now - last_seen <= self.horizon:
                break
            del self._seen[key]
            log.debug("Evicted dedup key %s", key)

    async def _accept(self, event: RunCompletionEvent) -> NotificationMessage | None:
        """Dedup decision. Returns the message to emit, or None."""
        self.submitted += 1
        if not event.completed:
            return None
        if not event.workflow_name or not event.conclusion:
            self.dropped += 1
            log.warning("Dropping malformed completed run %s from %s (name=%r conclusion=%r)",
                        event.run_id, event.source, event.workflow_name, event.conclusion)
            return None

        key = event.dedup_key
        async with self._lock:
            now = self._clock()
            self._evict_expired(now)
            if key in self._seen:
                self._seen[key] = now
                self._seen.move_to_end(key)
                self.duplicates += 1
                log.debug("Duplicate run %s (%s) from %s", event.run_id, event.conclusion, event.source)
                return None
            while self._seen and len(self._seen) >= self.max_entries:
                self._seen.popitem(last=False)
            self._seen[key] = now

        message = NotificationMessage.for_event(event)
        self.emitted += 1
        self._history.append({
            "run_id": event.run_id,
            "workflow": event.workflow_name,
            "conclusion": event.conclusion,
            "source": event.source,
            "level": message.level,
            "message": message.message,
            "observed_at": event.observed_at,
        })
        log.info("Notify [%s via %s] %s", message.level, event.source, message.message)
        return message

    async def submit(self, event: RunCompletionEvent) -> bool:
        """Offer an event and write its notification before returning.

        Returns True if it produced a notification.
        """
        message = await self._accept(event)
        if message is None:
            return False
        await self._output.write_message(message.to_dict())
        return True

    async def offer(self, event: RunCompletionEvent) -> bool:
        """Offer an event without waiting on the sink; run() writes it later."""
        message = await self._accept(event)
        if message is None:
            return False
        self._pending.put_nowait(message)
        return True

    async def run(self) -> None:
        """Write queued notifications until cancelled or the sink fails."""
        while True:
            message = await self._pending.get()
            try:
                await self._output.write_message(message.to_dict())
            except OutputClosed:
                self._discard_pending()
                return
            finally:
                self._pending.task_done()

    def _discard_pending(self) -> None:
        while not self._pending.empty():
            self._pending.get_nowait()
            self._pending.task_done()
            log.warning("Output closed; notification not delivered")

    async def drain(self) -> None:
        """Wait until every queued notification has been written."""
        await self._pending.join()

    @property
    def queued(self) -> int:
        return self._pending.qsize()

    def recent(self, limit: int | None = None) -> list[dict]:
        """Most recent emitted notifications, newest first."""
        items = list(reversed(self._history))
        return items[:limit] if limit else items

    def stats(self) -> dict:
        return {
            "submitted": self.submitted,
            "emitted": self.emitted,
            "duplicates": self.duplicates,
            "dropped": self.dropped,
            "tracked_keys": len(self._seen),
            "queued": self._pending.qsize(),
            "horizon_seconds": self.horizon,
        }
