"""Subagents: coding-CLI runs supervised out of process, one workspace each."""

from agenthub.subagents.models import (
    LogEvent,
    LogsPage,
    SpawnRequest,
    SpawnResult,
    SubagentListItem,
    SubagentState,
    SubagentStatus,
)
from agenthub.subagents.orchestrator import SubagentOrchestrator, derive_status, is_pid_alive

__all__ = [
    "LogEvent",
    "LogsPage",
    "SpawnRequest",
    "SpawnResult",
    "SubagentListItem",
    "SubagentOrchestrator",
    "SubagentState",
    "SubagentStatus",
    "derive_status",
    "is_pid_alive",
]
