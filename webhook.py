"""Webhook listener for GitHub workflow_run deliveries.

Endpoints:
    POST /webhook  — provider push; workflow_run completions feed the pipeline
    GET  /health   — liveness + listener stats

Other methods on /webhook get 405 from the router. The reply waits only for
the pipeline's dedup decision; the notification itself is queued and written
by the pipeline's writer task.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

from aiohttp import web

from pipeline import MalformedEvent, NotificationPipeline, RunCompletionEvent

log = logging.getLogger(__name__)

_EVENT_HEADER = "X-GitHub-Event"
_DELIVERY_HEADER = "X-GitHub-Delivery"
_SIGNATURE_HEADER = "X-Hub-Signature-256"


def sign_payload(secret: str, body: bytes) -> str:
    """GitHub-style signature header value for a body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookListener:
    """aiohttp server that turns workflow_run deliveries into pipeline events."""

    def __init__(
        self,
        pipeline: NotificationPipeline,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        path: str = "/webhook",
        secret: str = "",
        max_body_bytes: int = 5 * 1024 * 1024,
        grace_period: float = 5.0,
    ):
        self.pipeline = pipeline
        self.host = host
        self.port = port
        self.path = path
        self.secret = secret
        self._max_body_bytes = max_body_bytes
        self._grace_period = grace_period
        self._runner: web.AppRunner | None = None
        self.started_at: float | None = None
        self.deliveries = 0
        self.accepted = 0
        self.rejected = 0

    @property
    def running(self) -> bool:
        return self._runner is not None

    @property
    def url(self) -> str:
        host = "localhost" if self.host in ("0.0.0.0", "") else self.host  # noqa: S104
        return f"http://{host}:{self.port}{self.path}"

    # ─── Lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self._max_body_bytes)
        app.router.add_post(self.path, self._handle_webhook)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        """Bind and start serving. A port already in use raises OSError."""
        runner = web.AppRunner(self.build_app(), access_log=None,
                               shutdown_timeout=self._grace_period)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self.started_at = time.time()
        # Port 0 binds an ephemeral port; report the real one
        if self.port == 0 and runner.addresses:
            self.port = runner.addresses[0][1]
        log.info("Webhook listener on %s:%d%s", self.host, self.port, self.path)

    async def stop(self) -> None:
        """Stop accepting; in-flight requests get the grace period to finish."""
        if self._runner:
            runner, self._runner = self._runner, None
            await runner.cleanup()
        log.info("Webhook listener stopped")

    # ─── Endpoints ────────────────────────────────────────────────

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        """POST /webhook — GitHub delivery."""
        self.deliveries += 1
        body = await request.read()
        event_type = request.headers.get(_EVENT_HEADER, "")
        delivery = request.headers.get(_DELIVERY_HEADER, "-")

        if self.secret:
            signature = request.headers.get(_SIGNATURE_HEADER, "")
            if not hmac.compare_digest(signature, sign_payload(self.secret, body)):
                self.rejected += 1
                log.warning("Webhook signature mismatch from %s (delivery %s)",
                            request.remote, delivery)
                return web.Response(status=401, text="bad signature")

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self.rejected += 1
            log.warning("Webhook body parse failed (delivery %s): %s", delivery, e)
            return web.Response(status=500, text="invalid payload")

        if event_type != "workflow_run":
            log.debug("Ignoring %s event (delivery %s)", event_type or "untyped", delivery)
            return web.Response(status=200, text="OK")

        run = payload.get("workflow_run") if isinstance(payload, dict) else None
        try:
            event = RunCompletionEvent.from_run(run, source="webhook")
        except MalformedEvent as e:
            log.warning("Unusable workflow_run delivery %s: %s", delivery, e)
            return web.Response(status=200, text="OK")

        if event.completed and event.conclusion is not None:
            self.accepted += 1
            await self.pipeline.offer(event)
        return web.Response(status=200, text="OK")

    async def _handle_health(self, request: web.Request) -> web.Response:
        """GET /health — listener stats."""
        return web.json_response(self.status())

    def status(self) -> dict:
        return {
            "running": self.running,
            "url": self.url,
            "deliveries": self.deliveries,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "signature_required": bool(self.secret),
        }
