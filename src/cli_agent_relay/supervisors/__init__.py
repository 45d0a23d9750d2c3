"""Worker supervisors.

- WorkerSupervisor: one long-lived worker with pause/resume and buffering
- ConversationSupervisor: one short-lived worker per conversation message
"""

from __future__ import annotations

from .conversation import ConversationSupervisor
from .worker import WorkerSupervisor

__all__ = ["ConversationSupervisor", "WorkerSupervisor"]
