"""Notification tools — service health, recent notifications, listener status."""

from __future__ import annotations

import json
import time
from typing import Any

_pipeline: Any = None
_listener: Any = None
_poller: Any = None
_started_at: float = time.time()


def configure(pipeline: Any, listener: Any = None, poller: Any = None) -> None:
    global _pipeline, _listener, _poller, _started_at
    _pipeline = pipeline
    _listener = listener
    _poller = poller
    _started_at = time.time()


async def tool_health_check() -> str:
    lines = ["Notification service status:", ""]
    if _poller is not None and _poller.enabled:
        st = _poller.status()
        lines.append(f"GitHub configuration: OK (repository {st['repo']})")
        state = "active" if st["running"] else "idle"
        lines.append(f"Polling: {state} (every {st['interval_seconds']:.0f}s, "
                     f"{st['ticks']} ticks, {st['failures']} failed)")
        if st["last_error"]:
            lines.append(f"Last poll error: {st['last_error']}")
    else:
        lines.append("GitHub configuration: missing GITHUB_TOKEN or GITHUB_REPO")
        lines.append("Polling: disabled")

    if _listener is not None and _listener.running:
        lines.append(f"Webhook server: running on {_listener.url}")
    else:
        lines.append("Webhook server: not running")

    if _pipeline is not None:
        s = _pipeline.stats()
        lines.append(f"Notifications: {s['emitted']} sent, {s['duplicates']} duplicates "
                     f"suppressed, {s['dropped']} dropped")
    lines.append(f"Uptime: {int(time.time() - _started_at)}s")
    return "\n".join(lines)


async def tool_get_notifications(limit: int = 10) -> str:
    if _pipeline is None:
        return "Notification pipeline not running"
    items = _pipeline.recent(max(1, int(limit)))
    if not items:
        return "No workflow notifications yet."
    return json.dumps(items, indent=2)


async def tool_webhook_status() -> str:
    if _listener is None or not _listener.running:
        return "Webhook server not running"
    st = _listener.status()
    return (
        f"Webhook server running on {st['url']}\n"
        f"Deliveries: {st['deliveries']} ({st['accepted']} workflow completions, "
        f"{st['rejected']} rejected)\n"
        f"Signature check: {'on' if st['signature_required'] else 'off'}"
    )


TOOLS = [
    {
        "name": "health_check",
        "description": "Check notification service status: GitHub config, poller, webhook, counters.",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_health_check,
    },
    {
        "name": "get_notifications",
        "description": "Get recent workflow run notifications (newest first, in-memory only).",
        "input_schema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "How many to return (default 10)"},
            },
        },
        "function": tool_get_notifications,
    },
    {
        "name": "webhook_status",
        "description": "Check webhook server status.",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_webhook_status,
    },
]
