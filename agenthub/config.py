# agenthub/config.py
"""
Configuration for AgentHub.

Scalar settings are pydantic-settings classes fed from environment variables
(and a project ``.env``). Agent definitions live in ``agenthub.toml`` as
``[[agents]]`` tables; the same file may carry ``[projects]``, ``[sessions]``,
``[heartbeat]``, ``[subagents]`` and ``[daemon]`` sections that override the
factory defaults. An environment variable that is explicitly set always wins
over the TOML value for the same field.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Annotated, Any, Literal, Optional

import structlog
from pydantic import BaseModel, BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings

from agenthub.config_file import find_config, load_config

logger = structlog.get_logger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

RunMode = Literal["worktree", "main-run", "none"]


def _coerce_str_list(value: object) -> list[str]:
    """Coerce config values into a list of stripped, non-empty strings.

    Accepts a bare string, a comma-separated string, or a list.
    """
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return []


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


class ProjectsConfig(BaseSettings):
    """Where project checkouts (and their subagent workspaces) live."""

    root: Path = Field(Path("~/projects"), alias="AGENTHUB_PROJECTS_ROOT")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


class SessionsConfig(BaseSettings):
    """Lead-agent session store: idle rotation and reset/abort triggers."""

    store_path: Path = Field(Path("~/.agenthub/sessions.json"), alias="AGENTHUB_SESSIONS_PATH")
    idle_minutes: int = Field(360, alias="AGENTHUB_SESSION_IDLE_MINUTES")
    reset_triggers: StrList = Field(
        default_factory=lambda: ["/new", "/reset"], alias="AGENTHUB_SESSION_RESET_TRIGGERS"
    )
    abort_triggers: StrList = Field(
        default_factory=lambda: ["/abort"], alias="AGENTHUB_SESSION_ABORT_TRIGGERS"
    )

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "SessionsConfig":
        self.idle_minutes = max(1, int(self.idle_minutes))
        return self


class HeartbeatConfig(BaseSettings):
    """Process-wide heartbeat scheduler settings."""

    # Initial value of the global toggle; flipped at runtime via set_heartbeats_enabled().
    enabled: bool = Field(True, alias="AGENTHUB_HEARTBEATS_ENABLED")
    default_every: str = Field("30m", alias="AGENTHUB_HEARTBEAT_EVERY")
    ack_max_chars: int = Field(300, alias="AGENTHUB_HEARTBEAT_ACK_MAX_CHARS")
    # "package.module:callable" returning the async turn runner for the daemon.
    turn_runner: Optional[str] = Field(None, alias="AGENTHUB_TURN_RUNNER")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "HeartbeatConfig":
        self.ack_max_chars = max(0, int(self.ack_max_chars))
        self.default_every = self.default_every.strip() or "30m"
        if isinstance(self.turn_runner, str):
            self.turn_runner = self.turn_runner.strip() or None
        return self


class SubagentConfig(BaseSettings):
    """Subagent process supervision defaults."""

    kill_grace_seconds: float = Field(5.0, alias="AGENTHUB_KILL_GRACE_SECONDS")
    default_mode: RunMode = Field("worktree", alias="AGENTHUB_SUBAGENT_MODE")
    default_base_branch: str = Field("main", alias="AGENTHUB_BASE_BRANCH")
    python_executable: str = Field(sys.executable, alias="AGENTHUB_PYTHON")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "SubagentConfig":
        self.kill_grace_seconds = max(0.0, float(self.kill_grace_seconds))
        self.default_base_branch = self.default_base_branch.strip() or "main"
        return self


class DaemonConfig(BaseSettings):
    """Configuration for the long-running heartbeat host."""

    pid_file: Path = Field(Path("~/.agenthub/agenthub.pid"), alias="AGENTHUB_DAEMON_PID_FILE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


class AgentHeartbeat(BaseModel):
    """The ``heartbeat`` block of one agent definition."""

    every: Optional[str] = None
    prompt: Optional[str] = None
    ack_max_chars: Optional[int] = None


class AgentConfig(BaseModel):
    """One lead agent as declared in ``[[agents]]``."""

    id: str
    name: str = ""
    workspace: Optional[Path] = None
    # Channel the daemon broadcasts heartbeat alerts to; no channel means no heartbeat turns.
    broadcast_channel: Optional[str] = None
    heartbeat: Optional[AgentHeartbeat] = None

    model_config = {"extra": "ignore"}

    @model_validator(mode="after")
    def expand_workspace(self) -> "AgentConfig":
        if self.workspace is not None:
            self.workspace = self.workspace.expanduser()
        if not self.name:
            self.name = self.id
        return self


def _toml_overrides(settings_cls: type[BaseSettings], section: Any) -> dict[str, Any]:
    """Keep the TOML keys whose env alias is not explicitly set."""
    if not isinstance(section, dict):
        return {}
    overrides: dict[str, Any] = {}
    for name, field in settings_cls.model_fields.items():
        if name not in section:
            continue
        if field.alias and field.alias in os.environ:
            continue
        overrides[name] = section[name]
    unknown = set(section) - set(settings_cls.model_fields)
    if unknown:
        logger.warning(
            "config.unknown_keys", section=settings_cls.__name__, keys=sorted(unknown)
        )
    return overrides


class HubConfig:
    """
    Master configuration that composes all subsystem configs plus the agent
    definitions. Every component receives its config from here.
    """

    def __init__(self, data: dict[str, Any] | None = None, *, path: Path | None = None) -> None:
        if data is None:
            path = path or find_config()
            data = load_config(path) if path is not None else {}
        self.source: Path | None = path

        self.projects = ProjectsConfig(**_toml_overrides(ProjectsConfig, data.get("projects")))
        self.sessions = SessionsConfig(**_toml_overrides(SessionsConfig, data.get("sessions")))
        self.heartbeat = HeartbeatConfig(**_toml_overrides(HeartbeatConfig, data.get("heartbeat")))
        self.subagents = SubagentConfig(**_toml_overrides(SubagentConfig, data.get("subagents")))
        self.daemon = DaemonConfig(**_toml_overrides(DaemonConfig, data.get("daemon")))
        self.agents: list[AgentConfig] = [
            AgentConfig(**raw) for raw in data.get("agents", []) if isinstance(raw, dict)
        ]

        self._resolve_paths()

    def _resolve_paths(self) -> None:
        """Expand ``~`` so components never depend on the shell."""
        self.projects.root = self.projects.root.expanduser()
        self.sessions.store_path = self.sessions.store_path.expanduser()
        self.daemon.pid_file = self.daemon.pid_file.expanduser()

    def __repr__(self) -> str:
        return (
            f"HubConfig(projects_root={self.projects.root}, "
            f"agents={[a.id for a in self.agents]}, "
            f"idle_minutes={self.sessions.idle_minutes})"
        )
