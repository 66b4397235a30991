"""Exception taxonomy shared by the orchestrator, session store and CLI."""

from __future__ import annotations


class HubError(RuntimeError):
    """Base class for every error raised on purpose by agenthub."""


class CliNotFoundError(HubError):
    """The requested coding CLI could not be resolved to an executable."""

    def __init__(self, cli: str, searched: list[str] | None = None) -> None:
        self.cli = cli
        self.searched = list(searched or [])
        super().__init__(f"CLI not found: {cli}")


class GitError(HubError):
    """A git worktree or branch operation failed."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"{message}{detail}")


class NotFoundError(HubError):
    """The operation targets a workspace (or project) that does not exist."""


class ProjectNotFoundError(NotFoundError):
    """No project directory matches the given project id."""


class ConcurrentRunError(HubError):
    """A subagent run is already in flight for this workspace."""

    def __init__(self, project_id: str, slug: str, pid: int) -> None:
        self.project_id = project_id
        self.slug = slug
        self.pid = pid
        detail = f"pid {pid}" if pid else "spawn in progress"
        super().__init__(f"Subagent {project_id}/{slug} is already running ({detail})")
