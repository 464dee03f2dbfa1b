"""Git tools — local repository operations via the git CLI.

Commands run as argv lists (never through a shell) in the configured
working directory.
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path

from . import ToolError

_workdir: Path = Path.cwd()
_timeout: float = 60.0


def configure(workdir: str | Path | None = None, timeout: float = 60.0) -> None:
    global _workdir, _timeout
    _workdir = Path(workdir) if workdir else Path.cwd()
    _timeout = timeout


async def _git(*args: str) -> str:
    """Run git with args; return stdout, raise ToolError on non-zero exit."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=str(_workdir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise ToolError("git executable not found") from e
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_timeout)
    except TimeoutError:
        try:
            # Kill entire process group to prevent orphans
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await proc.wait()
        raise ToolError(f"git {args[0]} timed out after {_timeout:.0f}s") from None

    out = stdout.decode("utf-8", errors="replace") if stdout else ""
    if proc.returncode != 0:
        err = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
        raise ToolError(f"git {args[0]} failed (exit {proc.returncode}): {err or out.strip()}")
    return out


async def tool_git_status() -> str:
    output = await _git("status", "--porcelain")
    if not output.strip():
        return "Working directory clean"
    return f"Git Status:\n{output}"


async def tool_git_log(limit: int = 10) -> str:
    limit = max(1, min(int(limit), 500))
    output = await _git("log", "--oneline", f"-{limit}")
    return f"Recent Commits:\n{output}" if output.strip() else "No commits yet"


async def tool_git_branch(branch_name: str | None = None) -> str:
    if not branch_name:
        return f"Branches:\n{await _git('branch', '-a')}"
    await _git("checkout", "-b", branch_name)
    return f"Created and switched to branch: {branch_name}"


async def tool_git_add(files: str) -> str:
    paths = files.split()
    await _git("add", "--", *paths)
    return f"Added files: {files}"


async def tool_git_commit(message: str) -> str:
    output = await _git("commit", "-m", message)
    return f"Committed: {message}\n{output}"


async def tool_git_push(remote: str = "origin", branch: str | None = None) -> str:
    args = ["push", remote or "origin"]
    if branch:
        args.append(branch)
    output = await _git(*args)
    return f"Pushed to {remote or 'origin'}\n{output}"


async def tool_git_pull() -> str:
    return f"Pulled changes:\n{await _git('pull')}"


async def tool_git_diff(file: str | None = None) -> str:
    args = ["diff"]
    if file:
        args += ["--", file]
    output = await _git(*args)
    if not output.strip():
        return "No differences found"
    return f"Differences:\n{output}"


async def tool_get_repo_info() -> str:
    try:
        remote = (await _git("remote", "get-url", "origin")).strip()
    except ToolError:
        remote = "(no origin remote)"
    branch = (await _git("branch", "--show-current")).strip()
    try:
        last_commit = (await _git("log", "-1", "--oneline")).strip()
    except ToolError:
        last_commit = "(no commits)"
    return (
        "Repository Information:\n\n"
        f"Remote: {remote}\n"
        f"Current Branch: {branch or '(detached)'}\n"
        f"Last Commit: {last_commit}\n"
        f"Working Directory: {_workdir}"
    )


TOOLS = [
    {
        "name": "git_status",
        "description": "Get git repository status (porcelain).",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_git_status,
    },
    {
        "name": "git_log",
        "description": "Get git commit history.",
        "input_schema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "Number of commits to show (default 10)"},
            },
        },
        "function": tool_git_log,
    },
    {
        "name": "git_branch",
        "description": "List branches, or create and switch to a new one.",
        "input_schema": {
            "type": "object",
            "properties": {
                "branch_name": {"type": "string", "description": "Branch name to create"},
            },
        },
        "function": tool_git_branch,
    },
    {
        "name": "git_add",
        "description": "Add files to staging.",
        "input_schema": {
            "type": "object",
            "properties": {
                "files": {"type": "string", "description": "Files to add, space separated (. for all)"},
            },
            "required": ["files"],
        },
        "function": tool_git_add,
    },
    {
        "name": "git_commit",
        "description": "Commit staged changes.",
        "input_schema": {
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "Commit message"},
            },
            "required": ["message"],
        },
        "function": tool_git_commit,
    },
    {
        "name": "git_push",
        "description": "Push commits to a remote.",
        "input_schema": {
            "type": "object",
            "properties": {
                "remote": {"type": "string", "description": "Remote name (default origin)"},
                "branch": {"type": "string", "description": "Branch name"},
            },
        },
        "function": tool_git_push,
    },
    {
        "name": "git_pull",
        "description": "Pull changes from the remote.",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_git_pull,
    },
    {
        "name": "git_diff",
        "description": "Show unstaged differences.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file": {"type": "string", "description": "Specific file to diff"},
            },
        },
        "function": tool_git_diff,
    },
    {
        "name": "get_repo_info",
        "description": "Get remote, current branch and last commit.",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_get_repo_info,
    },
]
