"""GitHub Actions REST client (httpx async).

Used by the poller for recent-run queries and by the CI tools. Every failure
is normalized to GitHubError with a kind: "transport" (network, timeout,
unparseable body), "auth" (401/403), or "status" (any other unexpected code).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

log = logging.getLogger(__name__)

_ACCEPT = "application/vnd.github+json"
_API_VERSION = "2022-11-28"

# Fields kept from a workflow-run object
_RUN_FIELDS = ("id", "name", "status", "conclusion", "html_url", "created_at", "updated_at")


class GitHubError(Exception):
    def __init__(self, kind: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


def _slim_run(run: dict) -> dict:
    return {k: run.get(k) for k in _RUN_FIELDS}


class GitHubClient:
    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        timeout: float = 10.0,
        connect_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": _ACCEPT, "X-GitHub-Api-Version": _API_VERSION,
                       "User-Agent": "devrelay"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=headers,
                timeout=self._timeout, transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, path: str, expect: int = 200, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GitHubError("transport", f"{method} {path}: {str(e) or type(e).__name__}") from e

        if resp.status_code in (401, 403):
            raise GitHubError("auth", f"GitHub API authentication failed. Status: {resp.status_code}",
                              resp.status_code)
        if resp.status_code != expect:
            raise GitHubError("status", f"GitHub API error: {resp.status_code}", resp.status_code)
        return resp

    async def _get_json(self, path: str, **params) -> Any:
        resp = await self._request("GET", path, params=params or None)
        try:
            return resp.json()
        except ValueError as e:
            raise GitHubError("transport", f"GET {path}: non-JSON response") from e

    # ─── Runs ─────────────────────────────────────────────────────

    async def list_recent_runs(self, repo: str, per_page: int = 5) -> list[dict]:
        """Newest workflow runs for a repository, any workflow."""
        data = await self._get_json(f"/repos/{repo}/actions/runs", per_page=per_page)
        runs = data.get("workflow_runs") if isinstance(data, dict) else None
        if not isinstance(runs, list):
            raise GitHubError("transport", "runs response has no workflow_runs list")
        return [_slim_run(r) for r in runs if isinstance(r, dict)]

    async def list_runs(self, repo: str, workflow_id: str | None = None,
                        per_page: int = 30) -> list[dict]:
        if workflow_id:
            path = f"/repos/{repo}/actions/workflows/{workflow_id}/runs"
        else:
            path = f"/repos/{repo}/actions/runs"
        data = await self._get_json(path, per_page=per_page)
        return [_slim_run(r) for r in data.get("workflow_runs", [])]

    async def get_run(self, repo: str, run_id: str) -> dict:
        return _slim_run(await self._get_json(f"/repos/{repo}/actions/runs/{run_id}"))

    async def list_artifacts(self, repo: str, run_id: str) -> list[dict]:
        data = await self._get_json(f"/repos/{repo}/actions/runs/{run_id}/artifacts")
        return [
            {
                "id": a.get("id"),
                "name": a.get("name"),
                "size_in_bytes": a.get("size_in_bytes"),
                "created_at": a.get("created_at"),
                "download_url": a.get("archive_download_url"),
            }
            for a in data.get("artifacts", [])
        ]

    async def cancel_run(self, repo: str, run_id: str) -> None:
        await self._request("POST", f"/repos/{repo}/actions/runs/{run_id}/cancel", expect=202)

    # ─── Workflows ────────────────────────────────────────────────

    async def list_workflows(self, repo: str) -> list[dict]:
        data = await self._get_json(f"/repos/{repo}/actions/workflows")
        return [
            {k: w.get(k) for k in ("id", "name", "path", "state")}
            for w in data.get("workflows", [])
        ]

    async def dispatch_workflow(self, repo: str, workflow_id: str, ref: str = "main",
                                inputs: dict | None = None) -> None:
        body: dict[str, Any] = {"ref": ref}
        if inputs:
            body["inputs"] = inputs
        await self._request("POST", f"/repos/{repo}/actions/workflows/{workflow_id}/dispatches",
                            expect=204, json=body)

    # ─── Identity ─────────────────────────────────────────────────

    async def get_user(self) -> dict:
        return await self._get_json("/user")
