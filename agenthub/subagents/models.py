"""
Subagent data models — the on-disk contract of a workspace.

``state.json``, ``progress.json`` and every ``history.jsonl`` line keep the
snake_case keys migration tooling expects; these models only give them types.
Unknown keys on disk are preserved on rewrite.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

CliName = Literal["claude", "codex", "droid", "gemini"]
RunMode = Literal["worktree", "main-run", "none"]
SubagentStatus = Literal["idle", "running", "replied", "error"]
RunOutcome = Literal["replied", "error", "interrupted"]
LogEventType = Literal[
    "user",
    "assistant",
    "tool_call",
    "tool_output",
    "diff",
    "stdout",
    "stderr",
    "message",
    "error",
    "session",
    "skip",
]

STATE_FILE = "state.json"
PROGRESS_FILE = "progress.json"
HISTORY_FILE = "history.jsonl"
LOGS_FILE = "logs.jsonl"


class SubagentState(BaseModel):
    """``state.json`` — one per workspace, owned by the orchestrator."""

    session_id: str = ""
    supervisor_pid: int = 0
    started_at: str = ""
    last_error: str = ""
    cli: Optional[CliName] = None
    run_mode: RunMode = "worktree"
    worktree_path: Optional[str] = None
    base_branch: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class ProgressRecord(BaseModel):
    """``progress.json`` — overwritten on each activity tick."""

    last_active: str = ""
    tool_calls: int = 0


class HistoryEvent(BaseModel):
    """One ``history.jsonl`` line."""

    ts: str = ""
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class ToolRef(BaseModel):
    name: Optional[str] = None
    id: Optional[str] = None


class DiffRef(BaseModel):
    path: Optional[str] = None
    summary: Optional[str] = None


class LogEvent(BaseModel):
    """A normalized event produced from one raw ``logs.jsonl`` line."""

    type: LogEventType
    ts: Optional[str] = None
    text: Optional[str] = None
    tool: Optional[ToolRef] = None
    diff: Optional[DiffRef] = None


class LogsPage(BaseModel):
    """Result of one ``fetch_logs`` call."""

    cursor: int
    events: list[LogEvent] = Field(default_factory=list)


class SpawnRequest(BaseModel):
    slug: str
    cli: CliName
    prompt: str
    mode: Optional[RunMode] = None
    base_branch: Optional[str] = None
    resume: bool = False


class SpawnResult(BaseModel):
    slug: str
    supervisor_pid: int
    workspace: Path
    session_id: str = ""


class SubagentListItem(BaseModel):
    """Status row for one workspace."""

    project_id: str
    slug: str
    status: SubagentStatus
    cli: Optional[str] = None
    run_mode: Optional[str] = None
    session_id: Optional[str] = None
    supervisor_pid: int = 0
    last_active: Optional[str] = None
    run_started_at: Optional[str] = None
    base_branch: Optional[str] = None
    worktree_path: Optional[str] = None
    last_error: Optional[str] = None
    tool_calls: int = 0
    archived: bool = False
