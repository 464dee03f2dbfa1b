"""CI tools — GitHub Actions workflow control."""

from __future__ import annotations

import json

from github import GitHubClient, GitHubError

from . import ToolError

_client: GitHubClient | None = None


def configure(client: GitHubClient | None) -> None:
    global _client
    _client = client


def _require_client() -> GitHubClient:
    if _client is None or not _client.configured:
        raise ToolError("GitHub token not configured. Set GITHUB_TOKEN environment variable.")
    return _client


def _repo(owner: str, repo: str) -> str:
    return f"{owner}/{repo}"


async def tool_ci_health_check() -> str:
    """Check GitHub API connectivity with the configured token."""
    client = _require_client()
    try:
        user = await client.get_user()
    except GitHubError as e:
        if e.kind == "auth":
            raise ToolError(str(e)) from e
        raise ToolError(f"GitHub API connection failed: {e}") from e
    return f"GitHub API connected successfully! User: {user.get('login', '?')}"


async def tool_list_workflows(owner: str, repo: str) -> str:
    client = _require_client()
    try:
        workflows = await client.list_workflows(_repo(owner, repo))
    except GitHubError as e:
        raise ToolError(f"Failed to list workflows: {e}") from e
    return json.dumps(workflows, indent=2)


async def tool_trigger_workflow(owner: str, repo: str, workflow_id: str,
                                ref: str = "main") -> str:
    client = _require_client()
    try:
        await client.dispatch_workflow(_repo(owner, repo), workflow_id, ref=ref or "main")
    except GitHubError as e:
        raise ToolError(f"Failed to trigger workflow: {e}") from e
    return f"Workflow {workflow_id} triggered on {ref or 'main'}"


async def tool_get_workflow_runs(owner: str, repo: str, workflow_id: str | None = None,
                                 limit: int = 30) -> str:
    client = _require_client()
    try:
        runs = await client.list_runs(_repo(owner, repo), workflow_id or None,
                                      per_page=max(1, min(int(limit), 100)))
    except GitHubError as e:
        raise ToolError(f"Failed to get workflow runs: {e}") from e
    return json.dumps(runs, indent=2)


async def tool_get_run_status(owner: str, repo: str, run_id: str) -> str:
    client = _require_client()
    try:
        run = await client.get_run(_repo(owner, repo), str(run_id))
    except GitHubError as e:
        raise ToolError(f"Failed to get run status: {e}") from e
    return json.dumps(run, indent=2)


async def tool_get_run_artifacts(owner: str, repo: str, run_id: str) -> str:
    client = _require_client()
    try:
        artifacts = await client.list_artifacts(_repo(owner, repo), str(run_id))
    except GitHubError as e:
        raise ToolError(f"Failed to get artifacts: {e}") from e
    if not artifacts:
        return f"Run {run_id} has no artifacts"
    return json.dumps(artifacts, indent=2)


async def tool_cancel_workflow_run(owner: str, repo: str, run_id: str) -> str:
    client = _require_client()
    try:
        await client.cancel_run(_repo(owner, repo), str(run_id))
    except GitHubError as e:
        raise ToolError(f"Failed to cancel run: {e}") from e
    return f"Workflow run {run_id} cancelled"


_OWNER = {"type": "string", "description": "Repository owner"}
_REPO = {"type": "string", "description": "Repository name"}
_RUN_ID = {"type": "string", "description": "Run ID"}

TOOLS = [
    {
        "name": "ci_health_check",
        "description": "Check GitHub API connectivity and token validity.",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_ci_health_check,
    },
    {
        "name": "list_workflows",
        "description": "List GitHub Actions workflows in a repository.",
        "input_schema": {
            "type": "object",
            "properties": {"owner": _OWNER, "repo": _REPO},
            "required": ["owner", "repo"],
        },
        "function": tool_list_workflows,
    },
    {
        "name": "trigger_workflow",
        "description": "Trigger a workflow_dispatch run.",
        "input_schema": {
            "type": "object",
            "properties": {
                "owner": _OWNER,
                "repo": _REPO,
                "workflow_id": {"type": "string", "description": "Workflow ID or filename"},
                "ref": {"type": "string", "description": "Git reference (branch/tag), default main"},
            },
            "required": ["owner", "repo", "workflow_id"],
        },
        "function": tool_trigger_workflow,
    },
    {
        "name": "get_workflow_runs",
        "description": "Get workflow run history, for one workflow or the whole repository.",
        "input_schema": {
            "type": "object",
            "properties": {
                "owner": _OWNER,
                "repo": _REPO,
                "workflow_id": {"type": "string", "description": "Workflow ID (optional)"},
                "limit": {"type": "integer", "description": "Runs to return (default 30, max 100)"},
            },
            "required": ["owner", "repo"],
        },
        "function": tool_get_workflow_runs,
    },
    {
        "name": "get_run_status",
        "description": "Get the status of a specific workflow run.",
        "input_schema": {
            "type": "object",
            "properties": {"owner": _OWNER, "repo": _REPO, "run_id": _RUN_ID},
            "required": ["owner", "repo", "run_id"],
        },
        "function": tool_get_run_status,
    },
    {
        "name": "get_run_artifacts",
        "description": "List artifacts produced by a workflow run.",
        "input_schema": {
            "type": "object",
            "properties": {"owner": _OWNER, "repo": _REPO, "run_id": _RUN_ID},
            "required": ["owner", "repo", "run_id"],
        },
        "function": tool_get_run_artifacts,
    },
    {
        "name": "cancel_workflow_run",
        "description": "Cancel an in-progress workflow run.",
        "input_schema": {
            "type": "object",
            "properties": {"owner": _OWNER, "repo": _REPO, "run_id": _RUN_ID},
            "required": ["owner", "repo", "run_id"],
        },
        "function": tool_cancel_workflow_run,
    },
]
