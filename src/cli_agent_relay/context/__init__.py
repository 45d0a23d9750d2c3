"""Conversation preamble collaborators.

- system_prompt: base instruction document
- task_context: issue tracker summary
"""

from __future__ import annotations

from .system_prompt import (
    FALLBACK_SYSTEM_PROMPT,
    init_system_prompt,
    load_system_prompt,
)
from .task_context import (
    Issue,
    IssueTrackerCLI,
    TaskContextProvider,
    build_task_context,
    render_task_context,
)

__all__ = [
    "FALLBACK_SYSTEM_PROMPT",
    "init_system_prompt",
    "load_system_prompt",
    "Issue",
    "IssueTrackerCLI",
    "TaskContextProvider",
    "build_task_context",
    "render_task_context",
]
