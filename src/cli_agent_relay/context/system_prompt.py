"""Conversation system prompt loading.

A workspace may customise the prompt in ``<cwd>/.relay/task-chat-system.md``;
otherwise the default shipped with the package is used.
"""

from __future__ import annotations

import shutil
from pathlib import Path

__all__ = [
    "SYSTEM_PROMPT_FILENAME",
    "FALLBACK_SYSTEM_PROMPT",
    "get_custom_prompt_path",
    "get_default_prompt_path",
    "load_system_prompt",
    "init_system_prompt",
]

SYSTEM_PROMPT_FILENAME = "task-chat-system.md"

# Used when no prompt file can be read at all
FALLBACK_SYSTEM_PROMPT = (
    "You are a task management assistant. Help users manage their issues and tasks."
)

_DEFAULT_PROMPT_PATH = Path(__file__).resolve().parent.parent / "prompts" / SYSTEM_PROMPT_FILENAME


def get_custom_prompt_path(cwd: Path | str) -> Path:
    """Path of the per-workspace prompt override."""
    return Path(cwd) / ".relay" / SYSTEM_PROMPT_FILENAME


def get_default_prompt_path() -> Path:
    return _DEFAULT_PROMPT_PATH


def load_system_prompt(cwd: Path | str) -> str:
    """Load the conversation system prompt.

    Args:
        cwd: Workspace directory to look for the override in

    Returns:
        Prompt text

    Raises:
        FileNotFoundError: Neither the override nor the default exists
    """
    custom_path = get_custom_prompt_path(cwd)
    if custom_path.is_file():
        return custom_path.read_text(encoding="utf-8")

    if _DEFAULT_PROMPT_PATH.is_file():
        return _DEFAULT_PROMPT_PATH.read_text(encoding="utf-8")

    raise FileNotFoundError(
        f"System prompt not found at {custom_path} or {_DEFAULT_PROMPT_PATH}"
    )


def init_system_prompt(cwd: Path | str) -> tuple[Path, bool]:
    """Copy the default prompt into the workspace for customisation.

    Returns:
        (path, created) where created is False if the override already existed

    Raises:
        FileNotFoundError: The packaged default is missing
    """
    custom_path = get_custom_prompt_path(cwd)
    if custom_path.exists():
        return custom_path, False

    if not _DEFAULT_PROMPT_PATH.is_file():
        raise FileNotFoundError(f"Default system prompt not found at {_DEFAULT_PROMPT_PATH}")

    custom_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(_DEFAULT_PROMPT_PATH, custom_path)
    return custom_path, True
