"""
Coding-CLI resolution and argv construction.

Each supported CLI is described as data: where it is usually installed,
how to start a fresh run, how to resume a session, and how it announces the
session id on stdout. Resolution tries candidate strategies in order and
the first executable wins:

    1. an explicit path (if the name contains a separator)
    2. every directory on ``PATH``
    3. the tool's well-known install locations under ``$HOME``
    4. generic user bin directories, then system bin directories
    5. ``command -v`` in the user's login shell
"""

from __future__ import annotations

import json
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from agenthub.errors import CliNotFoundError

logger = structlog.get_logger(__name__)

_PROMPT = "{prompt}"
_SESSION = "{session_id}"


class CliSpec(BaseModel):
    name: str
    # Paths relative to $HOME, tried before the generic locations.
    home_candidates: tuple[str, ...] = ()
    fresh_args: tuple[str, ...]
    resume_args: tuple[str, ...]


CLI_SPECS: dict[str, CliSpec] = {
    "claude": CliSpec(
        name="claude",
        home_candidates=(".claude/local/claude", ".claude/local/bin/claude", ".local/bin/claude"),
        fresh_args=("-p", _PROMPT, "--output-format", "stream-json"),
        resume_args=("-r", _SESSION, "-p", _PROMPT, "--output-format", "stream-json"),
    ),
    "codex": CliSpec(
        name="codex",
        home_candidates=(".local/bin/codex", ".cargo/bin/codex"),
        fresh_args=("exec", "--json", _PROMPT),
        resume_args=("exec", "--json", "resume", _SESSION, _PROMPT),
    ),
    "droid": CliSpec(
        name="droid",
        home_candidates=(".local/bin/droid",),
        fresh_args=("exec", _PROMPT, "--output-format", "stream-json"),
        resume_args=("exec", "--session-id", _SESSION, _PROMPT, "--output-format", "stream-json"),
    ),
    "gemini": CliSpec(
        name="gemini",
        home_candidates=(".local/bin/gemini",),
        fresh_args=("-p", _PROMPT, "--output-format", "stream-json"),
        resume_args=("--resume", _SESSION, "--prompt", _PROMPT),
    ),
}

_GENERIC_HOME_DIRS = (".local/bin", "bin", ".cargo/bin")
_SHELL_WORD_RE = re.compile(r"^[A-Za-z0-9._+-]+$")
LOGIN_SHELL_TIMEOUT = 10.0


def _is_executable(path: Path) -> bool:
    try:
        return path.is_file() and os.access(path, os.X_OK)
    except OSError:
        return False


def candidate_paths(name: str, home: Path | None = None, env_path: str | None = None) -> list[Path]:
    """Every location probed for ``name``, in probe order, without duplicates."""
    candidates: list[Path] = []
    path_value = os.environ.get("PATH", "") if env_path is None else env_path
    for part in path_value.split(os.pathsep):
        if part:
            candidates.append(Path(part) / name)

    home = Path.home() if home is None else home
    spec = CLI_SPECS.get(name)
    if spec is not None:
        candidates.extend(home / rel for rel in spec.home_candidates)
    candidates.extend(home / rel / name for rel in _GENERIC_HOME_DIRS)

    if sys.platform == "darwin":
        candidates.append(Path("/opt/homebrew/bin") / name)
    candidates.append(Path("/usr/local/bin") / name)

    seen: set[Path] = set()
    unique: list[Path] = []
    for candidate in candidates:
        if candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique


def _login_shell() -> str | None:
    shell = os.environ.get("SHELL")
    if shell and _is_executable(Path(shell)):
        return shell
    for candidate in ("/bin/zsh", "/bin/bash", "/bin/sh"):
        if _is_executable(Path(candidate)):
            return candidate
    return None


def resolve_via_login_shell(name: str, timeout: float = LOGIN_SHELL_TIMEOUT) -> str | None:
    """Ask the user's login shell where ``name`` lives.

    Covers tools whose directory is only added to PATH by shell profiles,
    which a daemon started with a minimal environment never sees. Profiles
    may print banners, so the last absolute, executable path wins.
    """
    if not _SHELL_WORD_RE.match(name):
        return None
    shell = _login_shell()
    if shell is None:
        return None
    try:
        result = subprocess.run(
            [shell, "-l", "-c", f"command -v {name}"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("cli_resolver.login_shell_failed", shell=shell, cli=name, error=str(e))
        return None
    if result.returncode != 0:
        return None
    for line in reversed(result.stdout.splitlines()):
        found = line.strip()
        if found.startswith("/") and _is_executable(Path(found)):
            return found
    return None


def resolve_cli(
    name: str,
    home: Path | None = None,
    env_path: str | None = None,
    login_shell: bool = True,
) -> str:
    """Return the absolute path of the first executable candidate for ``name``.

    When no candidate exists the login shell is consulted last.
    """
    if os.sep in name or (os.altsep and os.altsep in name):
        if _is_executable(Path(name)):
            return name
        raise CliNotFoundError(name, [name])

    candidates = candidate_paths(name, home=home, env_path=env_path)
    for candidate in candidates:
        if _is_executable(candidate):
            return str(candidate)
    if login_shell:
        found = resolve_via_login_shell(name)
        if found is not None:
            logger.info("cli_resolver.found_via_login_shell", cli=name, path=found)
            return found
    raise CliNotFoundError(name, [str(c) for c in candidates])


def build_args(cli: str, prompt: str, session_id: Optional[str] = None) -> list[str]:
    """Argv (without the executable) for a fresh run or a resumed session."""
    spec = CLI_SPECS.get(cli)
    if spec is None:
        raise CliNotFoundError(cli)
    template = spec.resume_args if session_id else spec.fresh_args
    values = {_PROMPT: prompt, _SESSION: session_id or ""}
    return [values.get(arg, arg) for arg in template]


def extract_session_id(cli: str, line: str) -> Optional[str]:
    """Session id announced by one stdout line, if it is a session marker.

    codex prints ``{"type": "thread.started", "thread_id": ...}``; the
    stream-json CLIs emit an init/system event carrying ``session_id``.
    """
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        event: Any = json.loads(line)
    except ValueError:
        return None
    if not isinstance(event, dict):
        return None

    if cli == "codex":
        thread_id = event.get("thread_id")
        if event.get("type") == "thread.started" and isinstance(thread_id, str) and thread_id:
            return thread_id
        return None

    if event.get("type") in ("system", "init", "session"):
        for key in ("session_id", "sessionId"):
            value = event.get(key)
            if isinstance(value, str) and value:
                return value
    return None
