"""
Tests for agenthub.subagents.orchestrator.

Covers:
- status derivation and the liveness check
- listing, status and logs over hand-built workspaces
- spawn validation (missing repo, missing CLI, single-flight)
- end-to-end runs through the detached supervisor with fake CLIs
- interrupt, kill, archive/unarchive
- worktree mode against a real git repository
"""

from __future__ import annotations

import asyncio
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

import agenthub.subagents.orchestrator as orchestrator_module
from agenthub.config import SubagentConfig
from agenthub.errors import CliNotFoundError, ConcurrentRunError, HubError, NotFoundError
from agenthub.subagents import SpawnRequest, SubagentOrchestrator, derive_status, is_pid_alive
from agenthub.subagents.models import SubagentState
from agenthub.subagents.workspace import ProjectLayout

from conftest import init_repo, requires_git


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _records(path: Path) -> list[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def _write_workspace(
    directory: Path,
    state: dict,
    history: list[dict] | None = None,
    logs: list[dict] | None = None,
    progress: dict | None = None,
) -> Path:
    directory.mkdir(parents=True)
    (directory / "state.json").write_text(json.dumps(state))
    if history:
        (directory / "history.jsonl").write_text("".join(json.dumps(h) + "\n" for h in history))
    if logs:
        (directory / "logs.jsonl").write_text("".join(json.dumps(l) + "\n" for l in logs))
    if progress:
        (directory / "progress.json").write_text(json.dumps(progress))
    return directory


def _finished(outcome: str) -> dict:
    return {"ts": "2026-01-01T00:00:00.000Z", "type": "worker.finished", "data": {"outcome": outcome}}


async def _wait_for(predicate, timeout: float = 20.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.05)


def _history_types(workspace: Path) -> list[str]:
    return [r["type"] for r in _records(workspace / "history.jsonl")]


@pytest.fixture()
def layout(projects_root: Path) -> ProjectLayout:
    return ProjectLayout(projects_root)


@pytest.fixture()
def orch(layout: ProjectLayout) -> SubagentOrchestrator:
    return SubagentOrchestrator(layout, SubagentConfig(kill_grace_seconds=2.0))


@pytest.fixture()
def events(orch: SubagentOrchestrator) -> list[tuple[str, str]]:
    seen: list[tuple[str, str]] = []
    orch.on_event(lambda e: seen.append((e.slug, e.action)))
    return seen


@pytest.fixture()
def cli_on_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, fake_cli):
    """Install a fake ``codex`` first on PATH."""

    def _install(body: str) -> Path:
        script = fake_cli("codex", body)
        monkeypatch.setenv("PATH", f"{script.parent}{os.pathsep}{os.environ.get('PATH', '')}")
        return script

    return _install


CODEX_REPLY = """
resumed = "resume" in sys.argv
print(json.dumps({"type": "thread.started", "thread_id": "th-1"}), flush=True)
text = ("resumed: " if resumed else "fresh: ") + sys.argv[-1]
print(json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": text}}), flush=True)
"""

CODEX_SLEEP = """
print(json.dumps({"type": "thread.started", "thread_id": "th-sleep"}), flush=True)
time.sleep(60)
"""


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestDeriveStatus:

    @pytest.mark.parametrize(
        "alive,last_error,outcome,expected",
        [
            (True, "boom", "error", "running"),
            (False, "boom", "replied", "error"),
            (False, "", "error", "error"),
            (False, "", "replied", "replied"),
            (False, "", "interrupted", "idle"),
            (False, "", None, "idle"),
        ],
    )
    def test_table(self, alive, last_error, outcome, expected):
        assert derive_status(SubagentState(last_error=last_error), alive, outcome) == expected


class TestIsPidAlive:

    def test_self_is_alive(self):
        assert is_pid_alive(os.getpid())

    def test_non_positive(self):
        assert not is_pid_alive(0)
        assert not is_pid_alive(-1)

    def test_reaped_process(self):
        assert not is_pid_alive(_dead_pid())


# ---------------------------------------------------------------------------
# Queries over hand-built workspaces
# ---------------------------------------------------------------------------

class TestQueries:

    def test_list_and_status(self, orch: SubagentOrchestrator, layout: ProjectLayout):
        dead = _dead_pid()
        _write_workspace(
            layout.workspace_dir("P", "done"),
            {"cli": "codex", "run_mode": "none", "supervisor_pid": dead, "session_id": "s1"},
            history=[_finished("replied")],
            progress={"last_active": "2026-01-01T00:00:01.000Z", "tool_calls": 4},
        )
        _write_workspace(
            layout.workspace_dir("P", "broken"),
            {"cli": "claude", "supervisor_pid": dead, "last_error": "auth failed"},
        )
        _write_workspace(layout.workspace_dir("P", "live"), {"cli": "codex", "supervisor_pid": os.getpid()})
        layout.workspace_dir("P", "no-state").mkdir(parents=True)
        _write_workspace(layout.archived_dir("P", "old"), {"cli": "codex", "supervisor_pid": dead})

        items = {i.slug: i for i in orch.list_subagents("P")}
        assert set(items) == {"done", "broken", "live"}
        assert items["done"].status == "replied"
        assert items["done"].session_id == "s1"
        assert items["done"].tool_calls == 4
        assert items["broken"].status == "error"
        assert items["broken"].last_error == "auth failed"
        assert items["live"].status == "running"

        with_archived = orch.list_subagents("P", include_archived=True)
        assert [i.slug for i in with_archived if i.archived] == ["old"]
        assert orch.status("P", "old").archived is True
        assert {i.project_id for i in orch.list_all_subagents()} == {"P"}

    def test_status_not_found(self, orch: SubagentOrchestrator, layout: ProjectLayout):
        with pytest.raises(NotFoundError):
            orch.status("P", "ghost")
        layout.workspace_dir("P", "empty").mkdir(parents=True)
        with pytest.raises(NotFoundError):
            orch.status("P", "empty")

    def test_fetch_logs(self, orch: SubagentOrchestrator, layout: ProjectLayout):
        _write_workspace(
            layout.workspace_dir("P", "s"),
            {"cli": "codex"},
            logs=[{"ts": "t", "type": "user", "text": "go"}, {"ts": "t", "type": "stderr", "text": "warn"}],
        )
        page = orch.fetch_logs("P", "s")
        assert [e.type for e in page.events] == ["user", "stderr"]
        assert orch.fetch_logs("P", "s", since=page.cursor).events == []
        assert len(orch.fetch_logs("P", "s", limit=1).events) == 1
        with pytest.raises(NotFoundError):
            orch.fetch_logs("P", "nope")

    @pytest.mark.asyncio
    async def test_branches_without_git(self, orch: SubagentOrchestrator, make_project):
        make_project("PRO-1")
        assert await orch.list_project_branches("PRO-1") == []


# ---------------------------------------------------------------------------
# Spawn validation
# ---------------------------------------------------------------------------

class TestSpawnValidation:

    @pytest.mark.asyncio
    async def test_unknown_project(self, orch: SubagentOrchestrator):
        with pytest.raises(HubError):
            await orch.spawn("NOPE", SpawnRequest(slug="s", cli="codex", prompt="p", mode="none"))

    @pytest.mark.asyncio
    async def test_invalid_slug(self, orch: SubagentOrchestrator, make_project):
        make_project("PRO-1")
        with pytest.raises(ValueError):
            await orch.spawn("PRO-1", SpawnRequest(slug="../x", cli="codex", prompt="p", mode="none"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["worktree", "main-run"])
    async def test_mode_requires_repo(
        self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, mode: str
    ):
        make_project("PRO-1")
        with pytest.raises(HubError, match="repo not set"):
            await orch.spawn("PRO-1", SpawnRequest(slug="s", cli="codex", prompt="p", mode=mode))
        assert not layout.workspace_dir("PRO-1", "s").exists()

    @pytest.mark.asyncio
    async def test_missing_cli_leaves_no_workspace(
        self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, monkeypatch
    ):
        make_project("PRO-1")

        def not_found(name):
            raise CliNotFoundError(name, [])

        monkeypatch.setattr(orchestrator_module, "resolve_cli", not_found)
        with pytest.raises(CliNotFoundError):
            await orch.spawn("PRO-1", SpawnRequest(slug="s", cli="codex", prompt="p", mode="none"))
        assert not layout.workspace_dir("PRO-1", "s").exists()

    @pytest.mark.asyncio
    async def test_single_flight(self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project):
        make_project("PRO-1")
        _write_workspace(layout.workspace_dir("PRO-1", "busy"), {"cli": "codex", "supervisor_pid": os.getpid()})
        with pytest.raises(ConcurrentRunError) as excinfo:
            await orch.spawn("PRO-1", SpawnRequest(slug="busy", cli="codex", prompt="p", mode="none"))
        assert excinfo.value.pid == os.getpid()
        assert _history_types(layout.workspace_dir("PRO-1", "busy")) == []


# ---------------------------------------------------------------------------
# End-to-end through the detached supervisor
# ---------------------------------------------------------------------------

class TestSpawnRuns:

    @pytest.mark.asyncio
    async def test_fresh_then_resumed_run(
        self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, cli_on_path, events
    ):
        make_project("PRO-1")
        cli_on_path(CODEX_REPLY)
        ws = layout.workspace_dir("PRO-1", "fix")

        result = await orch.spawn("PRO-1", SpawnRequest(slug="fix", cli="codex", prompt="fix CI", mode="none"))
        assert result.workspace == ws
        assert result.supervisor_pid > 0
        assert result.session_id == ""
        await _wait_for(lambda: "worker.finished" in _history_types(ws))
        await _wait_for(lambda: not is_pid_alive(result.supervisor_pid))

        item = orch.status("PRO-1", "fix")
        assert item.status == "replied"
        assert item.session_id == "th-1"
        assert item.run_mode == "none"
        assert item.worktree_path == str(ws)

        page = orch.fetch_logs("PRO-1", "fix")
        assert page.events[0].type == "user"
        assert page.events[0].text == "fix CI"
        replies = [e.text for e in page.events if e.type == "assistant"]
        assert len(replies) == 1
        assert replies[0].startswith("fresh: Let's tackle the following project:")
        assert replies[0].endswith("fix CI")

        started = [r for r in _records(ws / "history.jsonl") if r["type"] == "worker.started"]
        assert started[0]["data"]["action"] == "started"
        assert started[0]["data"]["harness"] == "codex"

        await orch.spawn(
            "PRO-1", SpawnRequest(slug="fix", cli="codex", prompt="again", mode="none", resume=True)
        )
        await _wait_for(lambda: _history_types(ws).count("worker.finished") == 2)
        started = [r for r in _records(ws / "history.jsonl") if r["type"] == "worker.started"]
        assert started[1]["data"]["action"] == "follow_up"
        assert started[1]["data"]["session_id"] == "th-1"
        replies = [e.text for e in orch.fetch_logs("PRO-1", "fix").events if e.type == "assistant"]
        assert replies[-1].startswith("resumed: ")
        assert [action for _, action in events] == ["spawned", "spawned"]

    @pytest.mark.asyncio
    async def test_interrupt(self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, cli_on_path, events):
        make_project("PRO-1")
        cli_on_path(CODEX_SLEEP)
        ws = layout.workspace_dir("PRO-1", "slow")

        await orch.spawn("PRO-1", SpawnRequest(slug="slow", cli="codex", prompt="wait", mode="none"))
        await _wait_for(lambda: orch.status("PRO-1", "slow").session_id == "th-sleep")
        assert orch.status("PRO-1", "slow").status == "running"

        assert orch.interrupt("PRO-1", "slow") is True
        await _wait_for(lambda: "worker.finished" in _history_types(ws))

        types = _history_types(ws)
        assert types.index("worker.interrupt") < types.index("worker.finished")
        finished = [r for r in _records(ws / "history.jsonl") if r["type"] == "worker.finished"][0]
        assert finished["data"]["outcome"] == "interrupted"

        pid = orch.status("PRO-1", "slow").supervisor_pid
        await _wait_for(lambda: not is_pid_alive(pid))
        assert orch.status("PRO-1", "slow").status == "idle"
        assert orch.interrupt("PRO-1", "slow") is False
        assert ("slow", "interrupted") in events

    @pytest.mark.asyncio
    async def test_interrupt_right_after_spawn(
        self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, cli_on_path
    ):
        make_project("PRO-1")
        cli_on_path(CODEX_SLEEP)
        ws = layout.workspace_dir("PRO-1", "early")

        result = await orch.spawn("PRO-1", SpawnRequest(slug="early", cli="codex", prompt="p", mode="none"))
        assert orch.interrupt("PRO-1", "early") is True
        await _wait_for(lambda: "worker.finished" in _history_types(ws))

        assert _history_types(ws) == ["worker.started", "worker.interrupt", "worker.finished"]
        finished = _records(ws / "history.jsonl")[-1]
        assert finished["data"]["outcome"] == "interrupted"
        await _wait_for(lambda: not is_pid_alive(result.supervisor_pid))

    @pytest.mark.asyncio
    async def test_state_records_pid_before_spawn_returns(
        self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, cli_on_path
    ):
        make_project("PRO-1")
        cli_on_path(CODEX_REPLY)
        ws = layout.workspace_dir("PRO-1", "pid")

        result = await orch.spawn("PRO-1", SpawnRequest(slug="pid", cli="codex", prompt="p", mode="none"))
        state = json.loads((ws / "state.json").read_text())
        assert state["supervisor_pid"] == result.supervisor_pid
        assert _history_types(ws) == ["worker.started"]

        await _wait_for(lambda: "worker.finished" in _history_types(ws))
        await _wait_for(lambda: not is_pid_alive(result.supervisor_pid))
        state = json.loads((ws / "state.json").read_text())
        assert state["supervisor_pid"] == result.supervisor_pid
        assert state["session_id"] == "th-1"

    @pytest.mark.asyncio
    async def test_concurrent_spawns_in_one_process(
        self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, cli_on_path
    ):
        make_project("PRO-1")
        cli_on_path(CODEX_REPLY)
        ws = layout.workspace_dir("PRO-1", "race")
        request = SpawnRequest(slug="race", cli="codex", prompt="p", mode="none")

        results = await asyncio.gather(
            orch.spawn("PRO-1", request), orch.spawn("PRO-1", request), return_exceptions=True
        )
        assert sum(isinstance(r, ConcurrentRunError) for r in results) == 1
        launched = [r for r in results if not isinstance(r, BaseException)]
        assert len(launched) == 1

        await _wait_for(lambda: "worker.finished" in _history_types(ws))
        assert _history_types(ws).count("worker.started") == 1
        await _wait_for(lambda: not is_pid_alive(launched[0].supervisor_pid))

    @pytest.mark.asyncio
    async def test_kill_running(self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, cli_on_path, events):
        make_project("PRO-1")
        cli_on_path(CODEX_SLEEP)
        ws = layout.workspace_dir("PRO-1", "doomed")

        result = await orch.spawn("PRO-1", SpawnRequest(slug="doomed", cli="codex", prompt="p", mode="none"))
        await _wait_for(lambda: orch.status("PRO-1", "doomed").session_id == "th-sleep")

        await orch.kill("PRO-1", "doomed")
        assert not ws.exists()
        await _wait_for(lambda: not is_pid_alive(result.supervisor_pid))
        assert events[-1] == ("doomed", "killed")
        with pytest.raises(NotFoundError):
            await orch.kill("PRO-1", "doomed")


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------

class TestArchive:

    @pytest.mark.asyncio
    async def test_round_trip_mode_none(self, orch: SubagentOrchestrator, layout: ProjectLayout, events):
        ws = _write_workspace(
            layout.workspace_dir("P", "s"),
            {"cli": "codex", "run_mode": "none", "supervisor_pid": _dead_pid(), "worktree_path": "x"},
        )
        archived = await orch.archive("P", "s")
        assert archived == layout.archived_dir("P", "s")
        assert not ws.exists()
        assert json.loads((archived / "state.json").read_text())["worktree_path"] == str(archived)
        assert [i.slug for i in orch.list_subagents("P")] == []

        restored = await orch.unarchive("P", "s")
        assert restored == ws
        assert json.loads((ws / "state.json").read_text())["worktree_path"] == str(ws)
        assert [a for _, a in events] == ["archived", "unarchived"]

    @pytest.mark.asyncio
    async def test_refuses_running(self, orch: SubagentOrchestrator, layout: ProjectLayout):
        _write_workspace(layout.workspace_dir("P", "s"), {"run_mode": "none", "supervisor_pid": os.getpid()})
        with pytest.raises(ConcurrentRunError):
            await orch.archive("P", "s")

    @pytest.mark.asyncio
    async def test_refuses_existing_destination(self, orch: SubagentOrchestrator, layout: ProjectLayout):
        _write_workspace(layout.workspace_dir("P", "s"), {"run_mode": "none"})
        layout.archived_dir("P", "s").mkdir(parents=True)
        with pytest.raises(HubError, match="already exists"):
            await orch.archive("P", "s")

    @pytest.mark.asyncio
    async def test_missing(self, orch: SubagentOrchestrator):
        with pytest.raises(NotFoundError):
            await orch.archive("P", "none")
        with pytest.raises(NotFoundError):
            await orch.unarchive("P", "none")


# ---------------------------------------------------------------------------
# Worktree mode
# ---------------------------------------------------------------------------

def _branches(repo: Path) -> list[str]:
    out = subprocess.run(
        ["git", "-C", str(repo), "branch", "--format=%(refname:short)"],
        check=True,
        capture_output=True,
        text=True,
    ).stdout
    return out.split()


@requires_git
class TestWorktreeMode:

    @pytest.mark.asyncio
    async def test_spawn_archive_kill(
        self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, cli_on_path, tmp_path: Path
    ):
        repo = init_repo(tmp_path / "repo")
        make_project("PRO-1", repo=repo)
        cli_on_path(CODEX_REPLY)
        ws = layout.workspace_dir("PRO-1", "feat")

        await orch.spawn("PRO-1", SpawnRequest(slug="feat", cli="codex", prompt="add feature"))
        assert (ws / ".git").exists()
        assert (ws / "hello.txt").read_text() == "hello\n"
        assert "PRO-1/feat" in _branches(repo)
        assert set(await orch.list_project_branches("PRO-1")) >= {"main", "PRO-1/feat"}

        await _wait_for(lambda: "worker.finished" in _history_types(ws))
        await _wait_for(lambda: not is_pid_alive(orch.status("PRO-1", "feat").supervisor_pid))
        item = orch.status("PRO-1", "feat")
        assert item.status == "replied"
        assert item.base_branch == "main"
        assert item.worktree_path == str(ws)

        archived = await orch.archive("PRO-1", "feat")
        assert (archived / ".git").exists()
        assert json.loads((archived / "state.json").read_text())["worktree_path"] == str(archived)
        await orch.unarchive("PRO-1", "feat")

        await orch.kill("PRO-1", "feat")
        assert not ws.exists()
        assert "PRO-1/feat" not in _branches(repo)
        assert _branches(repo) == ["main"]

    @pytest.mark.asyncio
    async def test_bad_base_branch_cleans_up(
        self, orch: SubagentOrchestrator, layout: ProjectLayout, make_project, cli_on_path, tmp_path: Path
    ):
        from agenthub.errors import GitError

        repo = init_repo(tmp_path / "repo")
        make_project("PRO-1", repo=repo)
        cli_on_path(CODEX_REPLY)
        with pytest.raises(GitError):
            await orch.spawn(
                "PRO-1", SpawnRequest(slug="feat", cli="codex", prompt="p", base_branch="no-such-branch")
            )
        assert not layout.workspace_dir("PRO-1", "feat").exists()
