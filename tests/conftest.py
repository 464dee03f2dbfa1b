"""Shared fixtures for the devrelay test suite.

All tests use in-memory sinks, mock transports and temporary directories.
Nothing talks to GitHub, AWS or a real stdin.
"""

import io
import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))


class FakeClock:
    """Injectable monotonic clock for dedup-horizon tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_run(run_id=1, name="CI", status="completed", conclusion="success",
             url=None) -> dict:
    """Workflow-run object as GitHub returns it (REST and webhook shape)."""
    return {
        "id": run_id,
        "name": name,
        "status": status,
        "conclusion": conclusion,
        "html_url": url if url is not None else f"https://github.com/acme/app/actions/runs/{run_id}",
        "created_at": "2026-10-19T08:00:00Z",
        "updated_at": "2026-10-19T08:05:00Z",
    }


def sink_lines(sink: io.StringIO) -> list[str]:
    return [line for line in sink.getvalue().split("\n") if line]


@pytest.fixture
def sink():
    """In-memory stand-in for stdout."""
    return io.StringIO()


@pytest.fixture
def output(sink):
    from output import OutputChannel
    return OutputChannel(sink)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pipeline(output, clock):
    from pipeline import NotificationPipeline
    return NotificationPipeline(output, horizon=600.0, clock=clock)


@pytest.fixture
def tool_registry():
    """ToolRegistry with a sync + async dummy tool registered."""
    from tools import ToolRegistry

    reg = ToolRegistry(truncation_limit=100)

    def sync_tool(text: str = "default") -> str:
        return f"sync:{text}"

    async def async_tool(text: str = "default") -> str:
        return f"async:{text}"

    reg.register("sync_echo", "A sync echo tool", {
        "type": "object",
        "properties": {"text": {"type": "string"}},
    }, sync_tool)
    reg.register("async_echo", "An async echo tool", {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }, async_tool)
    return reg
