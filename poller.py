"""Workflow run poller — fixed-interval GitHub Actions queries.

Runs alongside the webhook listener, unsynchronized with it. Each tick asks
for the newest runs and feeds the completed ones into the pipeline; the
pipeline's dedup absorbs runs already reported by the webhook or by an
earlier tick.

Ticks never overlap: the loop awaits each tick before scheduling the next,
and a tick that overruns its slot skips the missed slots instead of firing
them back to back.
"""

from __future__ import annotations

import asyncio
import logging
import time

from github import GitHubClient, GitHubError
from pipeline import MalformedEvent, NotificationPipeline, RunCompletionEvent

log = logging.getLogger(__name__)


class RunPoller:
    def __init__(
        self,
        client: GitHubClient,
        pipeline: NotificationPipeline,
        repo: str,
        interval: float = 30.0,
        page_size: int = 5,
    ):
        self.client = client
        self.pipeline = pipeline
        self.repo = repo
        self.interval = interval
        self.page_size = page_size
        self.ticks = 0
        self.failures = 0
        self.last_tick_at: float | None = None
        self.last_error: str = ""
        self.running = False

    @property
    def enabled(self) -> bool:
        return bool(self.repo and self.client.configured)

    async def tick(self) -> int:
        """One poll. Returns how many notifications it produced."""
        self.ticks += 1
        self.last_tick_at = time.time()
        try:
            runs = await self.client.list_recent_runs(self.repo, per_page=self.page_size)
        except GitHubError as e:
            self.failures += 1
            self.last_error = str(e)
            log.warning("Poll of %s failed (%s): %s", self.repo, e.kind, e)
            return 0

        self.last_error = ""
        emitted = 0
        for run in runs:
            try:
                event = RunCompletionEvent.from_run(run, source="poll")
            except MalformedEvent as e:
                log.warning("Skipping polled run: %s", e)
                continue
            if not event.completed or event.conclusion is None:
                continue
            if await self.pipeline.submit(event):
                emitted += 1
        log.debug("Poll of %s: %d runs, %d new", self.repo, len(runs), emitted)
        return emitted

    async def run(self, stop: asyncio.Event) -> None:
        """Tick every interval until stop is set. First tick fires immediately."""
        if not self.enabled:
            log.info("GitHub polling disabled - no token or repo configured. Webhook-only mode.")
            return

        log.info("Polling %s every %.0fs", self.repo, self.interval)
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        self.running = True
        try:
            while not stop.is_set():
                await self.tick()
                next_at += self.interval
                now = loop.time()
                if next_at < now:
                    skipped = int((now - next_at) // self.interval) + 1
                    log.debug("Poll tick overran; skipping %d slot(s)", skipped)
                    next_at += skipped * self.interval
                try:
                    await asyncio.wait_for(stop.wait(), timeout=next_at - now)
                except TimeoutError:
                    pass
        finally:
            self.running = False
            log.info("Poller stopped")

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "running": self.running,
            "repo": self.repo,
            "interval_seconds": self.interval,
            "ticks": self.ticks,
            "failures": self.failures,
            "last_tick_at": self.last_tick_at,
            "last_error": self.last_error,
        }
