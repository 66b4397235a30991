"""
Shared fixtures for the agenthub test suite.

Provides an isolated environment (no AGENTHUB_* variables, no user config
file), a projects root with one project checkout, and helpers for writing
fake coding-CLI executables.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

from agenthub.config import AgentConfig, AgentHeartbeat
from agenthub.sessions import SessionStore

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Strip AGENTHUB_* variables and point config discovery at nothing."""
    for key in list(os.environ):
        if key.startswith("AGENTHUB_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("AGENTHUB_CONFIG", str(tmp_path / "no-such-agenthub.toml"))


# ---------------------------------------------------------------------------
# Sessions and agents
# ---------------------------------------------------------------------------

@pytest.fixture()
def session_store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "sessions.json", idle_minutes=60)


@pytest.fixture()
def make_agent(tmp_path: Path):
    """Factory for AgentConfig with a heartbeat block."""

    def _make(
        agent_id: str = "lead",
        every: str | None = "1m",
        channel: str | None = "telegram",
        prompt: str | None = None,
        ack_max_chars: int | None = None,
        heartbeat: bool = True,
    ) -> AgentConfig:
        block = (
            AgentHeartbeat(every=every, prompt=prompt, ack_max_chars=ack_max_chars)
            if heartbeat
            else None
        )
        return AgentConfig(
            id=agent_id,
            workspace=tmp_path / f"ws-{agent_id}",
            broadcast_channel=channel,
            heartbeat=block,
        )

    return _make


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

def _git(*args: str, cwd: Path) -> None:
    subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )


def init_repo(path: Path) -> Path:
    """A git repository with one commit on branch ``main``."""
    path.mkdir(parents=True, exist_ok=True)
    _git("init", "-q", cwd=path)
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=path)
    _git("config", "user.email", "test@example.com", cwd=path)
    _git("config", "user.name", "Test", cwd=path)
    _git("config", "commit.gpgsign", "false", cwd=path)
    (path / "hello.txt").write_text("hello\n")
    _git("add", "hello.txt", cwd=path)
    _git("commit", "-q", "-m", "initial", cwd=path)
    return path


@pytest.fixture()
def projects_root(tmp_path: Path) -> Path:
    root = tmp_path / "projects"
    root.mkdir()
    return root


@pytest.fixture()
def make_project(projects_root: Path):
    """Create ``{root}/{project_id}_{name}/README.md`` with a ``repo`` frontmatter key."""

    def _make(project_id: str = "PRO-1", repo: Path | None = None, title: str = "Fix the build") -> Path:
        project_dir = projects_root / f"{project_id}_demo"
        project_dir.mkdir()
        lines = ["---", f"title: {title}", "status: in_progress"]
        if repo is not None:
            lines.append(f"repo: {repo}")
        lines += ["---", "", "Make CI green again.", ""]
        (project_dir / "README.md").write_text("\n".join(lines))
        return project_dir

    return _make


@pytest.fixture()
def fake_cli(tmp_path: Path):
    """Write an executable Python script standing in for a coding CLI.

    The script body receives ``sys.argv`` and may print stream-json lines.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> Path:
        path = bin_dir / name
        script = f"#!{sys.executable}\nimport json, sys, time\n" + textwrap.dedent(body)
        path.write_text(script)
        path.chmod(0o755)
        return path

    return _make
