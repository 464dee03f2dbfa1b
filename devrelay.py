#!/usr/bin/env python3
"""devrelay — developer-tooling actions over stdio, with CI run notifications.

Entry point. Wires config → output channel → pipeline → webhook listener +
poller → tool registry → request loop. Handles logging, Unix signals and
the shutdown sequence.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import TextIO

# Add devrelay directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from config import Config, ConfigError, load_config
from github import GitHubClient
from output import OutputChannel, OutputClosed
from pipeline import NotificationPipeline
from poller import RunPoller
from rpc import RpcServer, stdin_lines
from tools import ToolRegistry
from webhook import WebhookListener

log = logging.getLogger("devrelay")

_INSTRUCTIONS = (
    "devrelay exposes GitHub Actions, git and S3 tools, and pushes "
    "notifications/message lines when a workflow run completes."
)


class DevRelayDaemon:
    def __init__(self, config: Config, stdin: TextIO | None = None,
                 stdout: TextIO | None = None):
        self.config = config
        self._stdin = stdin or sys.stdin
        self.output = OutputChannel(stdout or sys.stdout)
        self.stop_event = asyncio.Event()
        self.exit_code = 0
        self.github: GitHubClient | None = None
        self.pipeline: NotificationPipeline | None = None
        self.listener: WebhookListener | None = None
        self.poller: RunPoller | None = None
        self.tool_registry: ToolRegistry | None = None
        self.rpc: RpcServer | None = None

    def _setup_logging(self) -> None:
        """Configure logging to stderr (+ optional file). Stdout is the protocol."""
        cfg = self.config
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        root = logging.getLogger()
        root.setLevel(logging.DEBUG)

        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(cfg.log_level)
        root.addHandler(sh)

        if cfg.log_file:
            cfg.log_file.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(
                cfg.log_file, maxBytes=cfg.log_max_bytes,
                backupCount=cfg.log_backup_count, encoding="utf-8",
            )
            fh.setFormatter(fmt)
            fh.setLevel(logging.DEBUG)
            root.addHandler(fh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "botocore", "boto3", "urllib3", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _init_pipeline(self) -> None:
        cfg = self.config
        self.pipeline = NotificationPipeline(
            self.output,
            horizon=cfg.dedup_horizon,
            max_entries=cfg.dedup_max_entries,
            history_size=cfg.history_size,
        )

    def _init_producers(self) -> None:
        cfg = self.config
        self.github = GitHubClient(
            cfg.github_token,
            base_url=cfg.github_api_url,
            timeout=cfg.poll_timeout,
            connect_timeout=cfg.poll_connect_timeout,
        )
        if cfg.webhook_enabled:
            self.listener = WebhookListener(
                self.pipeline,
                host=cfg.webhook_host,
                port=cfg.webhook_port,
                path=cfg.webhook_path,
                secret=cfg.webhook_secret,
                max_body_bytes=cfg.webhook_max_body_bytes,
                grace_period=cfg.webhook_grace_period,
            )
        self.poller = RunPoller(
            self.github,
            self.pipeline,
            repo=cfg.github_repo if cfg.poll_enabled else "",
            interval=cfg.poll_interval,
            page_size=cfg.poll_page_size,
        )

    def _init_tools(self) -> None:
        """Register every tool module with its runtime collaborators."""
        cfg = self.config
        self.tool_registry = ToolRegistry(truncation_limit=cfg.tool_truncation_limit)

        from tools import ci, git, notify, s3
        ci.configure(self.github)
        git.configure(cfg.git_workdir, timeout=cfg.git_timeout)
        s3.configure(region=cfg.s3_region)
        notify.configure(self.pipeline, listener=self.listener, poller=self.poller)

        for module in (notify, ci, git, s3):
            self.tool_registry.register_many(module.TOOLS)
        log.info("Tools registered: %s", ", ".join(self.tool_registry.tool_names))

        self.rpc = RpcServer(self.tool_registry, self.output, instructions=_INSTRUCTIONS)

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigterm():
            log.info("Termination signal: shutting down gracefully")
            self.stop_event.set()

        try:
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run(self) -> int:
        """Start all components, run until stdin closes or a stop signal, then drain."""
        cfg = self.config
        self._setup_logging()
        log.info("Starting devrelay (PID %d)", os.getpid())

        self._init_pipeline()
        self._init_producers()
        self._init_tools()

        if self.listener is not None:
            try:
                await self.listener.start()
            except OSError as e:
                log.critical("Cannot bind webhook listener on %s:%d: %s",
                             cfg.webhook_host, cfg.webhook_port, e)
                await self.github.close()
                return 1

        self._setup_signals(asyncio.get_running_loop())

        emit_task = asyncio.create_task(self.pipeline.run(), name="notify-writer")
        rpc_task = asyncio.create_task(self.rpc.serve(stdin_lines(self._stdin)), name="rpc")
        poll_task = asyncio.create_task(self.poller.run(self.stop_event), name="poller")
        poll_task.add_done_callback(self._on_poller_done)
        stop_task = asyncio.create_task(self.stop_event.wait(), name="stop")
        closed_task = asyncio.create_task(self.output.closed.wait(), name="output-closed")

        try:
            done, _ = await asyncio.wait(
                {rpc_task, stop_task, closed_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if closed_task in done or self.output.closed.is_set():
                log.error("Output sink closed; shutting down")
                self.exit_code = 1
            elif rpc_task in done:
                exc = rpc_task.exception()
                if exc is not None:
                    log.error("Request loop failed: %s", exc, exc_info=exc)
                    self.exit_code = 1
                else:
                    log.info("Input stream closed, exiting")
        finally:
            await self._shutdown(rpc_task, poll_task, stop_task, closed_task, emit_task)
        return self.exit_code

    def _on_poller_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if not isinstance(exc, OutputClosed):
            log.error("Poller failed: %s", exc, exc_info=exc)
        self.exit_code = 1
        self.stop_event.set()

    async def _shutdown(self, *tasks: asyncio.Task) -> None:
        """Stop the timer, close the accept loop (with grace), drop the reader."""
        self.stop_event.set()
        if self.listener is not None:
            await self.listener.stop()
        if self.pipeline is not None and not self.output.closed.is_set():
            try:
                await asyncio.wait_for(self.pipeline.drain(),
                                       timeout=self.config.webhook_grace_period)
            except TimeoutError:
                log.warning("Shutting down with %d notifications unwritten",
                            self.pipeline.queued)
        for task in tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, OutputClosed):
                log.debug("Task ended with %r during shutdown", result)
        if self.github is not None:
            await self.github.close()
        log.info("devrelay stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="devrelay — developer-tooling actions over stdio with CI notifications",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("DEVRELAY_CONFIG"),
        help="Path to TOML config file (default: $DEVRELAY_CONFIG; environment only if unset)",
    )
    parser.add_argument(
        "--no-webhook", action="store_true",
        help="Do not start the webhook listener",
    )
    parser.add_argument(
        "--no-poll", action="store_true",
        help="Do not poll GitHub for workflow runs",
    )
    args = parser.parse_args()

    overrides = {}
    if args.no_webhook:
        overrides["webhook.enabled"] = False
    if args.no_poll:
        overrides["poller.enabled"] = False

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    daemon = DevRelayDaemon(config)
    try:
        code = asyncio.run(daemon.run())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
