"""Task context for the conversation preamble.

The issue tracker is an external CLI treated as an opaque request/response
call: ``<command> list --json --limit N --status S`` prints a JSON array of
issues. The conversation supervisor only needs a short rendered summary of
in-progress and open work.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Mapping, Protocol

import anyio
from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import TaskContextError

__all__ = [
    "Issue",
    "TaskContextProvider",
    "IssueTrackerCLI",
    "build_task_context",
    "render_task_context",
]

logger = logging.getLogger(__name__)

DEFAULT_TRACKER_TIMEOUT = 30.0  # seconds
IN_PROGRESS_LIMIT = 20
OPEN_LIMIT = 50
OPEN_DISPLAY_LIMIT = 30


class Issue(BaseModel):
    """The fields of a tracker issue the preamble uses."""

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    priority: int = 2
    status: str = "open"


class TaskContextProvider(Protocol):
    """Anything that can list issues by status."""

    async def list_issues(self, status: str, limit: int) -> list[Issue]:
        ...


class IssueTrackerCLI:
    """Issue tracker reached through its command-line client.

    Example:
        tracker = IssueTrackerCLI(cwd=Path("/repo"))
        issues = await tracker.list_issues("open", limit=50)
    """

    def __init__(
        self,
        command: str = "bd",
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_TRACKER_TIMEOUT,
    ) -> None:
        self._command = command
        self._cwd = Path(cwd) if cwd is not None else Path.cwd()
        self._env = dict(env or {})
        self._timeout = timeout

    async def list_issues(self, status: str, limit: int) -> list[Issue]:
        """List issues with the given status.

        Raises:
            TaskContextError: The CLI failed, timed out or printed bad JSON
        """
        args = ["list", "--json", "--limit", str(limit), "--status", status]
        output = await self._exec(args)
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise TaskContextError(f"{self._command} returned invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise TaskContextError(f"{self._command} list did not return an array")
        try:
            return [Issue.model_validate(item) for item in data]
        except ValidationError as e:
            raise TaskContextError(f"{self._command} returned malformed issue: {e}") from e

    async def _exec(self, args: list[str]) -> str:
        argv = [self._command, *args]
        logger.debug(f"Tracker call: {' '.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env={**os.environ, **self._env},
            )
        except OSError as e:
            raise TaskContextError(f"Failed to run {self._command}: {e}") from e

        try:
            with anyio.fail_after(self._timeout):
                stdout, stderr = await process.communicate()
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise TaskContextError(
                f"{self._command} {args[0]} timed out after {self._timeout}s"
            ) from e

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise TaskContextError(
                f"{self._command} exited with code {process.returncode}: {detail}"
            )
        return stdout.decode("utf-8", errors="replace")


def render_task_context(in_progress: list[Issue], open_issues: list[Issue]) -> str:
    """Render the "Current Tasks" section appended to the system prompt.

    Returns:
        Markdown section, or "" if there are no issues
    """
    if not in_progress and not open_issues:
        return ""

    parts = ["\n\n## Current Tasks\n\n"]

    if in_progress:
        parts.append("### In Progress\n")
        for issue in in_progress:
            parts.append(f"- [{issue.id}] {issue.title} (P{issue.priority})\n")
        parts.append("\n")

    if open_issues:
        parts.append("### Open\n")
        for issue in open_issues[:OPEN_DISPLAY_LIMIT]:
            parts.append(f"- [{issue.id}] {issue.title} (P{issue.priority})\n")
        if len(open_issues) > OPEN_DISPLAY_LIMIT:
            parts.append(f"... and {len(open_issues) - OPEN_DISPLAY_LIMIT} more\n")

    return "".join(parts)


async def build_task_context(provider: TaskContextProvider) -> str:
    """Fetch open and in-progress issues concurrently and render them."""
    open_issues, in_progress = await asyncio.gather(
        provider.list_issues("open", OPEN_LIMIT),
        provider.list_issues("in_progress", IN_PROGRESS_LIMIT),
    )
    return render_task_context(in_progress, open_issues)
