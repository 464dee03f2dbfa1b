"""Tests for webhook.py — workflow_run deliveries, method/parse handling, signatures."""

import asyncio
import contextlib
import io
import json
import socket
import threading

import pytest
from aiohttp.test_utils import TestClient, TestServer
from conftest import make_run, sink_lines

from output import OutputChannel
from pipeline import NotificationPipeline
from webhook import WebhookListener, sign_payload

# ─── Fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def listener(pipeline):
    return WebhookListener(pipeline, host="127.0.0.1", port=0)


@pytest.fixture
def signed_listener(pipeline):
    return WebhookListener(pipeline, host="127.0.0.1", port=0, secret="s3cret")


@contextlib.asynccontextmanager
async def _serve(listener: WebhookListener):
    """Test client plus the pipeline's writer task; queued lines are flushed on exit."""
    writer = asyncio.create_task(listener.pipeline.run())
    try:
        async with TestClient(TestServer(listener.build_app())) as client:
            yield client
        await asyncio.wait_for(listener.pipeline.drain(), timeout=5)
    finally:
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer


class _StalledSink(io.StringIO):
    """A stdout whose reader has stopped: writes block until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def write(self, s):
        self.release.wait(timeout=10)
        return super().write(s)


def _delivery(run: dict, action="completed") -> dict:
    return {"action": action, "workflow_run": run, "repository": {"full_name": "acme/app"}}


def _headers(event="workflow_run") -> dict:
    return {"X-GitHub-Event": event, "Content-Type": "application/json"}


# ─── Methods ──────────────────────────────────────────────────────


class TestMethods:
    @pytest.mark.asyncio
    async def test_get_rejected_405(self, listener, sink):
        async with _serve(listener) as client:
            resp = await client.get("/webhook")
            assert resp.status == 405
        assert sink.getvalue() == ""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["PUT", "DELETE", "PATCH"])
    async def test_other_methods_405(self, listener, method):
        async with _serve(listener) as client:
            resp = await client.request(method, "/webhook")
            assert resp.status == 405
        assert listener.deliveries == 0

    @pytest.mark.asyncio
    async def test_unknown_path_404(self, listener):
        async with _serve(listener) as client:
            resp = await client.post("/elsewhere", json={})
            assert resp.status == 404


# ─── Deliveries ───────────────────────────────────────────────────


class TestWorkflowRunDeliveries:
    @pytest.mark.asyncio
    async def test_completed_run_notifies(self, listener, sink):
        async with _serve(listener) as client:
            resp = await client.post("/webhook", json=_delivery(make_run(run_id=5)),
                                     headers=_headers())
            assert resp.status == 200
            assert await resp.text() == "OK"
        lines = sink_lines(sink)
        assert len(lines) == 1
        msg = json.loads(lines[0])
        assert msg["method"] == "notifications/message"
        assert msg["params"]["level"] == "info"
        assert "Workflow 'CI' success" in msg["params"]["message"]
        assert msg["params"]["message"].endswith("/runs/5")

    @pytest.mark.asyncio
    async def test_failure_is_error_level(self, listener, sink):
        async with _serve(listener) as client:
            await client.post("/webhook", json=_delivery(make_run(conclusion="failure")),
                              headers=_headers())
        assert json.loads(sink_lines(sink)[0])["params"]["level"] == "error"

    @pytest.mark.asyncio
    async def test_redelivery_deduplicated(self, listener, sink):
        async with _serve(listener) as client:
            for _ in range(3):
                resp = await client.post("/webhook", json=_delivery(make_run()),
                                         headers=_headers())
                assert resp.status == 200
        assert len(sink_lines(sink)) == 1
        assert listener.accepted == 3

    @pytest.mark.asyncio
    async def test_in_progress_ignored(self, listener, sink):
        run = make_run(status="in_progress", conclusion=None)
        async with _serve(listener) as client:
            resp = await client.post("/webhook", json=_delivery(run, action="in_progress"),
                                     headers=_headers())
            assert resp.status == 200
        assert sink.getvalue() == ""

    @pytest.mark.asyncio
    async def test_completed_without_conclusion_ignored(self, listener, sink):
        run = make_run(conclusion=None)
        async with _serve(listener) as client:
            resp = await client.post("/webhook", json=_delivery(run), headers=_headers())
            assert resp.status == 200
        assert sink.getvalue() == ""

    @pytest.mark.asyncio
    async def test_other_event_types_ignored(self, listener, sink):
        async with _serve(listener) as client:
            resp = await client.post("/webhook", json=_delivery(make_run()),
                                     headers=_headers("push"))
            assert resp.status == 200
            resp = await client.post("/webhook", json={"zen": "Keep it simple."},
                                     headers=_headers("ping"))
            assert resp.status == 200
        assert sink.getvalue() == ""

    @pytest.mark.asyncio
    async def test_missing_event_header_ignored(self, listener, sink):
        async with _serve(listener) as client:
            resp = await client.post("/webhook", json=_delivery(make_run()))
            assert resp.status == 200
        assert sink.getvalue() == ""

    @pytest.mark.asyncio
    async def test_malformed_run_answered_ok_without_event(self, listener, sink):
        async with _serve(listener) as client:
            resp = await client.post("/webhook", json={"workflow_run": "nope"},
                                     headers=_headers())
            assert resp.status == 200
            resp = await client.post("/webhook", json=["not", "an", "object"],
                                     headers=_headers())
            assert resp.status == 200
        assert sink.getvalue() == ""


class TestStalledOutput:
    @pytest.mark.asyncio
    async def test_reply_does_not_wait_for_stdout(self, clock):
        sink = _StalledSink()
        pipeline = NotificationPipeline(OutputChannel(sink), clock=clock)
        listener = WebhookListener(pipeline, host="127.0.0.1", port=0)
        try:
            async with _serve(listener) as client:
                for run_id in (1, 2, 3):
                    resp = await asyncio.wait_for(
                        client.post("/webhook", json=_delivery(make_run(run_id=run_id)),
                                    headers=_headers()),
                        timeout=2,
                    )
                    assert resp.status == 200
                assert pipeline.emitted == 3
                assert sink.getvalue() == ""
                sink.release.set()
        finally:
            sink.release.set()
        assert len(sink_lines(sink)) == 3


class TestParseFailure:
    @pytest.mark.asyncio
    async def test_invalid_json_500(self, listener, sink):
        async with _serve(listener) as client:
            resp = await client.post("/webhook", data=b"{not json",
                                     headers=_headers())
            assert resp.status == 500
        assert sink.getvalue() == ""
        assert listener.rejected == 1

    @pytest.mark.asyncio
    async def test_empty_body_500(self, listener):
        async with _serve(listener) as client:
            resp = await client.post("/webhook", data=b"", headers=_headers())
            assert resp.status == 500


# ─── Signatures ───────────────────────────────────────────────────


class TestSignature:
    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self, signed_listener, sink):
        body = json.dumps(_delivery(make_run())).encode()
        headers = {**_headers(), "X-Hub-Signature-256": sign_payload("s3cret", body)}
        async with _serve(signed_listener) as client:
            resp = await client.post("/webhook", data=body, headers=headers)
            assert resp.status == 200
        assert len(sink_lines(sink)) == 1

    @pytest.mark.asyncio
    async def test_missing_signature_401(self, signed_listener, sink):
        async with _serve(signed_listener) as client:
            resp = await client.post("/webhook", json=_delivery(make_run()), headers=_headers())
            assert resp.status == 401
        assert sink.getvalue() == ""

    @pytest.mark.asyncio
    async def test_wrong_secret_401(self, signed_listener, sink):
        body = json.dumps(_delivery(make_run())).encode()
        headers = {**_headers(), "X-Hub-Signature-256": sign_payload("other", body)}
        async with _serve(signed_listener) as client:
            resp = await client.post("/webhook", data=body, headers=headers)
            assert resp.status == 401
        assert signed_listener.rejected == 1

    def test_sign_payload_format(self):
        sig = sign_payload("k", b"body")
        assert sig.startswith("sha256=")
        assert len(sig) == len("sha256=") + 64


# ─── Health + lifecycle ───────────────────────────────────────────


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_reports_counters(self, listener):
        async with _serve(listener) as client:
            await client.post("/webhook", json=_delivery(make_run()), headers=_headers())
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()
        assert body["deliveries"] == 1
        assert body["accepted"] == 1
        assert body["signature_required"] is False


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_on_ephemeral_port_and_stop(self, listener):
        await listener.start()
        try:
            assert listener.running
            assert listener.port != 0
            assert listener.url == f"http://127.0.0.1:{listener.port}/webhook"
        finally:
            await listener.stop()
        assert not listener.running

    @pytest.mark.asyncio
    async def test_port_in_use_raises(self, pipeline):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            s.listen(1)
            port = s.getsockname()[1]
            busy = WebhookListener(pipeline, host="127.0.0.1", port=port)
            with pytest.raises(OSError):
                await busy.start()
            assert not busy.running

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, listener):
        await listener.stop()
        assert not listener.running
