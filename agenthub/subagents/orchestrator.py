"""
Subagent Orchestrator — spawn, observe and tear down coding-CLI runs.

Every subagent lives in its own workspace directory:

    {projects_root}/.workspaces/{project_id}/{slug}/
        state.json      who is running, which CLI, which session
        progress.json   last activity and tool-call count
        history.jsonl   lifecycle events (append-only)
        logs.jsonl      raw CLI output plus wrapped user/stderr/session lines

Process ownership is a value on disk (``state.supervisor_pid``), never an
in-memory handle: the spawned supervisor runs in its own session and keeps
going if this process exits. Liveness is re-derived on every query with an
OS process-exists probe, so a restarted hub sees exactly what the previous
one left behind.

Single-flight: a spawn against a workspace whose recorded supervisor is
still alive is rejected with :class:`ConcurrentRunError`.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import subprocess
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import structlog

from agenthub._fileio import append_jsonl, now_iso, read_json, write_json_atomic
from agenthub.config import HubConfig, SubagentConfig
from agenthub.errors import ConcurrentRunError, GitError, HubError, NotFoundError
from agenthub.events import Listeners, SubagentChangedEvent
from agenthub.subagents import git
from agenthub.subagents.cli_resolver import build_args, resolve_cli
from agenthub.subagents.logs import read_last_outcome, read_logs
from agenthub.subagents.models import (
    LogsPage,
    ProgressRecord,
    RunMode,
    SpawnRequest,
    SpawnResult,
    SubagentListItem,
    SubagentState,
    SubagentStatus,
)
from agenthub.subagents.workspace import ProjectDoc, ProjectLayout, WorkspaceFiles, validate_slug

logger = structlog.get_logger(__name__)

_PACKAGE_PARENT = Path(__file__).resolve().parents[2]
KILL_POLL_INTERVAL = 0.1
_DEFERRED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def is_pid_alive(pid: int) -> bool:
    """True if a process with ``pid`` exists (signal 0 probe)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else.
        return True
    return True


def derive_status(state: SubagentState, alive: bool, outcome: Optional[str]) -> SubagentStatus:
    """Map on-disk facts to the status shown to callers."""
    if alive:
        return "running"
    if state.last_error:
        return "error"
    if outcome == "error":
        return "error"
    if outcome == "replied":
        return "replied"
    return "idle"


def _load_state(files: WorkspaceFiles) -> SubagentState:
    raw = read_json(files.state, {})
    if not isinstance(raw, dict):
        raw = {}
    return SubagentState.model_validate(raw)


def _update_state(files: WorkspaceFiles, **changes: Any) -> None:
    """Read-modify-write of ``state.json``; unknown keys survive."""
    raw = read_json(files.state, {})
    if not isinstance(raw, dict):
        raw = {}
    raw.update(changes)
    write_json_atomic(files.state, raw)


def _reap(proc: subprocess.Popen) -> None:
    threading.Thread(target=proc.wait, name=f"reap-{proc.pid}", daemon=True).start()


@contextmanager
def _signals_deferred() -> Iterator[None]:
    """Block SIGTERM/SIGINT in this thread; children started inside inherit the mask."""
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, _DEFERRED_SIGNALS)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


class SubagentOrchestrator:
    """Owns every subagent workspace below one projects root."""

    def __init__(self, layout: ProjectLayout, settings: SubagentConfig | None = None) -> None:
        self.layout = layout
        self.settings = settings or SubagentConfig()
        self._listeners: Listeners[SubagentChangedEvent] = Listeners()
        self._spawning: set[Path] = set()

    @classmethod
    def from_config(cls, config: HubConfig) -> "SubagentOrchestrator":
        return cls(ProjectLayout(config.projects.root), config.subagents)

    def on_event(self, listener: Callable[[SubagentChangedEvent], object]) -> Callable[[], None]:
        """Subscribe to lifecycle changes. Returns an unsubscribe callable."""
        return self._listeners.add(listener)

    def _emit(self, project_id: str, slug: str, action: str, **data: Any) -> None:
        self._listeners.emit(
            SubagentChangedEvent(project_id=project_id, slug=slug, action=action, data=data)
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _locate(self, project_id: str, slug: str) -> tuple[Path, bool]:
        """Workspace directory for a slug, live first, then archived."""
        live = self.layout.workspace_dir(project_id, slug)
        if live.is_dir():
            return live, False
        archived = self.layout.archived_dir(project_id, slug)
        if archived.is_dir():
            return archived, True
        raise NotFoundError(f"Subagent not found: {project_id}/{slug}")

    def _item(self, project_id: str, directory: Path, archived: bool) -> SubagentListItem:
        files = WorkspaceFiles(directory)
        state = _load_state(files)
        raw_progress = read_json(files.progress, {})
        progress = ProgressRecord.model_validate(raw_progress if isinstance(raw_progress, dict) else {})
        alive = is_pid_alive(state.supervisor_pid)
        status = derive_status(state, alive, read_last_outcome(files.history))
        return SubagentListItem(
            project_id=project_id,
            slug=directory.name,
            status=status,
            cli=state.cli,
            run_mode=state.run_mode,
            session_id=state.session_id or None,
            supervisor_pid=state.supervisor_pid,
            last_active=progress.last_active or None,
            run_started_at=state.started_at or None,
            base_branch=state.base_branch,
            worktree_path=state.worktree_path,
            last_error=state.last_error or None,
            tool_calls=progress.tool_calls,
            archived=archived,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, project_id: str, slug: str) -> SubagentListItem:
        directory, archived = self._locate(project_id, slug)
        WorkspaceFiles(directory).require_state()
        return self._item(project_id, directory, archived)

    def list_subagents(self, project_id: str, include_archived: bool = False) -> list[SubagentListItem]:
        items = []
        for directory, archived in self.layout.iter_workspaces(project_id, include_archived):
            if not WorkspaceFiles(directory).state.is_file():
                continue
            items.append(self._item(project_id, directory, archived))
        return items

    def list_all_subagents(self, include_archived: bool = False) -> list[SubagentListItem]:
        items = []
        for project_id in self.layout.iter_project_ids():
            items.extend(self.list_subagents(project_id, include_archived))
        return items

    def fetch_logs(
        self, project_id: str, slug: str, since: int = 0, limit: int | None = None
    ) -> LogsPage:
        """Normalized log events after byte cursor ``since``."""
        directory, _ = self._locate(project_id, slug)
        return read_logs(WorkspaceFiles(directory).logs, since=since, limit=limit)

    async def list_project_branches(self, project_id: str) -> list[str]:
        """Local branches of the project's repo; empty if it is not a git checkout."""
        doc = self.layout.load_project_doc(project_id)
        repo = doc.repo or self.layout.require_project_dir(project_id)
        if not (repo / ".git").exists():
            return []
        return await git.list_branches(repo)

    # ------------------------------------------------------------------
    # Spawn
    # ------------------------------------------------------------------

    async def spawn(self, project_id: str, request: SpawnRequest) -> SpawnResult:
        """Start (or resume) a subagent run. Returns once the supervisor is launched."""
        slug = validate_slug(request.slug)
        doc = self.layout.load_project_doc(project_id)
        mode = request.mode or self.settings.default_mode
        base_branch = request.base_branch or self.settings.default_base_branch
        if mode in ("worktree", "main-run") and doc.repo is None:
            raise HubError(f"Project repo not set: {project_id}")

        workspace = self.layout.workspace_dir(project_id, slug)
        if workspace in self._spawning:
            raise ConcurrentRunError(project_id, slug, 0)
        self._spawning.add(workspace)
        try:
            return await self._spawn(project_id, slug, request, doc, mode, base_branch, workspace)
        finally:
            self._spawning.discard(workspace)

    async def _spawn(
        self,
        project_id: str,
        slug: str,
        request: SpawnRequest,
        doc: ProjectDoc,
        mode: RunMode,
        base_branch: str,
        workspace: Path,
    ) -> SpawnResult:
        files = WorkspaceFiles(workspace)
        previous = _load_state(files) if files.state.is_file() else None
        if previous is not None and is_pid_alive(previous.supervisor_pid):
            raise ConcurrentRunError(project_id, slug, previous.supervisor_pid)

        session_id = previous.session_id if (request.resume and previous) else ""
        prompt = request.prompt
        summary = doc.summary()
        if summary:
            prompt = f"{summary}\n\n{prompt}"

        # Resolve before touching disk so a missing CLI leaves nothing behind.
        executable = await asyncio.to_thread(resolve_cli, request.cli)
        argv = [executable, *build_args(request.cli, prompt, session_id or None)]

        created = not workspace.exists()
        workspace.mkdir(parents=True, exist_ok=True)
        if mode == "none":
            cwd = workspace
        elif mode == "main-run":
            cwd = doc.repo
        else:
            cwd = workspace
            if not (workspace / ".git").exists():
                try:
                    await git.worktree_add(doc.repo, workspace, f"{project_id}/{slug}", base_branch)
                except GitError:
                    if created:
                        shutil.rmtree(workspace, ignore_errors=True)
                    raise

        run_id = uuid.uuid4().hex
        proc = self._launch_supervisor(files, request.cli, cwd, run_id, argv)
        try:
            started_at = now_iso()
            state = SubagentState(
                session_id=session_id,
                supervisor_pid=proc.pid,
                started_at=started_at,
                last_error="",
                cli=request.cli,
                run_mode=mode,
                worktree_path=str(cwd),
                base_branch=base_branch,
            )
            write_json_atomic(files.state, state.model_dump())
            write_json_atomic(files.progress, ProgressRecord(last_active=started_at).model_dump())
            files.record(
                "worker.started",
                {
                    "action": "follow_up" if session_id else "started",
                    "harness": request.cli,
                    "session_id": session_id,
                    "run_id": run_id,
                },
                ts=started_at,
            )
            append_jsonl(files.logs, {"ts": started_at, "type": "user", "text": request.prompt})
        except BaseException:
            proc.kill()
            raise
        finally:
            # Closing stdin lets the supervisor start the run.
            proc.stdin.close()
            _reap(proc)

        logger.info(
            "subagent.spawned",
            project_id=project_id,
            slug=slug,
            cli=request.cli,
            mode=mode,
            pid=proc.pid,
            resumed=bool(session_id),
        )
        self._emit(project_id, slug, "spawned", pid=proc.pid, cli=request.cli, run_mode=mode)
        return SpawnResult(slug=slug, supervisor_pid=proc.pid, workspace=workspace, session_id=session_id)

    def _launch_supervisor(
        self, files: WorkspaceFiles, cli: str, cwd: Path, run_id: str, argv: list[str]
    ) -> subprocess.Popen:
        """Start a supervisor that waits on its stdin before running anything."""
        command = [
            self.settings.python_executable,
            "-m",
            "agenthub.subagents.supervisor",
            "--workspace",
            str(files.dir),
            "--cli",
            cli,
            "--cwd",
            str(cwd),
            "--run-id",
            run_id,
            "--wait-stdin",
            "--",
            *argv,
        ]
        env = dict(os.environ)
        python_path = env.get("PYTHONPATH")
        env["PYTHONPATH"] = (
            f"{_PACKAGE_PARENT}{os.pathsep}{python_path}" if python_path else str(_PACKAGE_PARENT)
        )
        with _signals_deferred():
            return subprocess.Popen(
                command,
                cwd=str(files.dir),
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
            )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def interrupt(self, project_id: str, slug: str) -> bool:
        """Ask a running subagent to stop. Returns False if it was not running.

        The ``worker.interrupt`` history line is written before the signal.
        """
        directory, _ = self._locate(project_id, slug)
        files = WorkspaceFiles(directory)
        files.require_state()
        state = _load_state(files)
        pid = state.supervisor_pid
        if not is_pid_alive(pid):
            return False

        files.record(
            "worker.interrupt",
            {"action": "requested", "signal": "SIGTERM", "supervisor_pid": pid},
        )
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        logger.info("subagent.interrupted", project_id=project_id, slug=slug, pid=pid)
        self._emit(project_id, slug, "interrupted", pid=pid)
        return True

    async def _terminate(self, pid: int) -> None:
        """SIGTERM, wait up to the grace period, then SIGKILL the process group."""
        if not is_pid_alive(pid):
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.kill_grace_seconds
        while loop.time() < deadline:
            if not is_pid_alive(pid):
                return
            await asyncio.sleep(KILL_POLL_INTERVAL)
        logger.warning("subagent.force_kill", pid=pid)
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    async def _worktree_repo(self, project_id: str, workspace: Path) -> Path | None:
        # Without its own .git, rev-parse would report an enclosing repository.
        if (workspace / ".git").exists():
            repo = await git.find_worktree_repo(workspace)
            if repo is not None:
                return repo
        if self.layout.find_project_dir(project_id) is None:
            return None
        return self.layout.load_project_doc(project_id).repo

    async def kill(self, project_id: str, slug: str) -> None:
        """Stop the run and delete the workspace (and its worktree branch)."""
        directory, _ = self._locate(project_id, slug)
        files = WorkspaceFiles(directory)
        files.require_state()
        state = _load_state(files)

        await self._terminate(state.supervisor_pid)

        if state.run_mode == "worktree":
            repo = await self._worktree_repo(project_id, directory)
            if repo is not None:
                try:
                    await git.worktree_remove(repo, directory)
                except GitError as e:
                    logger.warning("subagent.worktree_remove_failed", error=str(e))
                shutil.rmtree(directory, ignore_errors=True)
                await git.worktree_prune(repo)
                try:
                    await git.branch_delete(repo, f"{project_id}/{slug}")
                except GitError as e:
                    logger.warning("subagent.branch_delete_failed", error=str(e))
        shutil.rmtree(directory, ignore_errors=True)

        logger.info("subagent.killed", project_id=project_id, slug=slug)
        self._emit(project_id, slug, "killed")

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    async def _move(self, project_id: str, src: Path, dst: Path) -> None:
        files = WorkspaceFiles(src)
        files.require_state()
        state = _load_state(files)
        if is_pid_alive(state.supervisor_pid):
            raise ConcurrentRunError(project_id, src.name, state.supervisor_pid)
        if dst.exists():
            raise HubError(f"Destination already exists: {dst}")
        dst.parent.mkdir(parents=True, exist_ok=True)

        if state.run_mode == "worktree" and (src / ".git").exists():
            repo = await self._worktree_repo(project_id, src)
            if repo is None:
                raise GitError(f"Cannot find repository for worktree {src}")
            await git.worktree_move(repo, src, dst)
            _update_state(WorkspaceFiles(dst), worktree_path=str(dst))
        else:
            os.replace(src, dst)
            if state.run_mode == "none":
                _update_state(WorkspaceFiles(dst), worktree_path=str(dst))

    async def archive(self, project_id: str, slug: str) -> Path:
        src = self.layout.workspace_dir(project_id, slug)
        if not src.is_dir():
            raise NotFoundError(f"Subagent not found: {project_id}/{slug}")
        dst = self.layout.archived_dir(project_id, slug)
        await self._move(project_id, src, dst)
        logger.info("subagent.archived", project_id=project_id, slug=slug)
        self._emit(project_id, slug, "archived")
        return dst

    async def unarchive(self, project_id: str, slug: str) -> Path:
        src = self.layout.archived_dir(project_id, slug)
        if not src.is_dir():
            raise NotFoundError(f"Archived subagent not found: {project_id}/{slug}")
        dst = self.layout.workspace_dir(project_id, slug)
        await self._move(project_id, src, dst)
        logger.info("subagent.unarchived", project_id=project_id, slug=slug)
        self._emit(project_id, slug, "unarchived")
        return dst
