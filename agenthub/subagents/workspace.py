"""
Project and workspace layout under the projects root.

    {root}/{project_id}[_suffix]/README.md              project checkout metadata
    {root}/.workspaces/{project_id}/{slug}/             live workspace
    {root}/.workspaces/{project_id}/.archived/{slug}/   archived workspace

A project's README.md carries YAML frontmatter (``repo``, ``title``,
``status``); the repo path is where worktrees are branched from.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog
import yaml
from pydantic import BaseModel, Field

from agenthub._fileio import append_jsonl, now_iso
from agenthub.errors import NotFoundError, ProjectNotFoundError
from agenthub.subagents.models import (
    HISTORY_FILE,
    LOGS_FILE,
    PROGRESS_FILE,
    STATE_FILE,
    HistoryEvent,
)

logger = structlog.get_logger(__name__)

WORKSPACES_DIR = ".workspaces"
ARCHIVED_DIR = ".archived"

_FRONTMATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---\r?\n?(.*)$", re.DOTALL)
_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ProjectDoc(BaseModel):
    """Parsed README.md (or SPECS.md) of a project directory."""

    frontmatter: dict[str, Any] = Field(default_factory=dict)
    title: str = ""
    content: str = ""

    @property
    def repo(self) -> Optional[Path]:
        repo = self.frontmatter.get("repo")
        if isinstance(repo, str) and repo.strip():
            return Path(repo.strip()).expanduser()
        return None

    @property
    def status(self) -> str:
        status = self.frontmatter.get("status")
        return status if isinstance(status, str) else ""

    def summary(self) -> str:
        """Preamble prepended to every subagent prompt for this project."""
        lines = ["Let's tackle the following project:", "", self.title, self.status, self.content]
        return "\n".join(lines).rstrip()


def parse_markdown(raw: str, fallback_title: str = "") -> ProjectDoc:
    """Split YAML frontmatter from the body and pick a title.

    Title order: frontmatter ``title``, first non-empty body line with any
    heading marks removed, then *fallback_title*.
    """
    frontmatter: dict[str, Any] = {}
    content = raw
    match = _FRONTMATTER_RE.match(raw)
    if match:
        try:
            loaded = yaml.safe_load(match.group(1))
        except yaml.YAMLError as e:
            logger.warning("workspace.frontmatter_invalid", error=str(e))
            loaded = None
        if isinstance(loaded, dict):
            frontmatter = loaded
        content = match.group(2)

    first_line = next((line.strip() for line in content.splitlines() if line.strip()), "")
    title = frontmatter.get("title")
    if not isinstance(title, str) or not title:
        title = re.sub(r"^#+\s*", "", first_line) or fallback_title
    return ProjectDoc(frontmatter=frontmatter, title=title, content=content)


def validate_slug(slug: str) -> str:
    """Reject slugs that could escape the workspaces directory."""
    if not _SLUG_RE.match(slug or "") or slug in (".", ".."):
        raise ValueError(f"Invalid subagent slug: {slug!r}")
    return slug


class ProjectLayout:
    """Path arithmetic for one projects root."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def find_project_dir(self, project_id: str) -> Path | None:
        """A directory named ``project_id`` or starting with ``project_id_``."""
        if not self.root.is_dir():
            return None
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir():
                continue
            if entry.name == project_id or entry.name.startswith(f"{project_id}_"):
                return entry
        return None

    def require_project_dir(self, project_id: str) -> Path:
        project_dir = self.find_project_dir(project_id)
        if project_dir is None:
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        return project_dir

    def load_project_doc(self, project_id: str) -> ProjectDoc:
        """Parse README.md (falling back to SPECS.md); empty doc if neither exists."""
        project_dir = self.require_project_dir(project_id)
        for name in ("README.md", "SPECS.md"):
            path = project_dir / name
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("workspace.readme_unreadable", path=str(path), error=str(e))
                continue
            return parse_markdown(raw, fallback_title=project_dir.name)
        return ProjectDoc(title=project_dir.name)

    # ------------------------------------------------------------------
    # Workspace paths
    # ------------------------------------------------------------------

    def workspaces_root(self, project_id: str) -> Path:
        return self.root / WORKSPACES_DIR / project_id

    def workspace_dir(self, project_id: str, slug: str) -> Path:
        return self.workspaces_root(project_id) / validate_slug(slug)

    def archived_dir(self, project_id: str, slug: str) -> Path:
        return self.workspaces_root(project_id) / ARCHIVED_DIR / validate_slug(slug)

    def iter_workspaces(
        self, project_id: str, include_archived: bool = False
    ) -> Iterator[tuple[Path, bool]]:
        """Yield ``(workspace_dir, archived)`` for every workspace of a project."""
        base = self.workspaces_root(project_id)
        groups = [(base, False)]
        if include_archived:
            groups.append((base / ARCHIVED_DIR, True))
        for directory, archived in groups:
            if not directory.is_dir():
                continue
            for entry in sorted(directory.iterdir()):
                if entry.is_dir() and not entry.name.startswith("."):
                    yield entry, archived

    def iter_project_ids(self) -> Iterator[str]:
        """Project ids that have at least one workspace."""
        base = self.root / WORKSPACES_DIR
        if not base.is_dir():
            return
        for entry in sorted(base.iterdir()):
            if entry.is_dir() and not entry.name.startswith("."):
                yield entry.name


class WorkspaceFiles:
    """The four files of one workspace."""

    def __init__(self, directory: Path) -> None:
        self.dir = Path(directory)
        self.state = self.dir / STATE_FILE
        self.progress = self.dir / PROGRESS_FILE
        self.history = self.dir / HISTORY_FILE
        self.logs = self.dir / LOGS_FILE

    def record(self, event_type: str, data: dict[str, Any], ts: str | None = None) -> HistoryEvent:
        """Append one lifecycle event to ``history.jsonl``."""
        event = HistoryEvent(ts=ts or now_iso(), type=event_type, data=data)
        append_jsonl(self.history, event.model_dump())
        return event

    def require_state(self) -> Path:
        if not self.state.is_file():
            raise NotFoundError(f"No subagent state in {self.dir}")
        return self.state
