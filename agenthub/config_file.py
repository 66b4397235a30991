"""
``agenthub.toml`` discovery, loading and editing.

The file is read with the stdlib ``tomllib`` and written with ``tomli-w``
through the same temp-file-and-rename path as every other state file.
Dotted keys (``sessions.idle_minutes``) address nested tables; ``[[agents]]``
arrays are left to the config layer.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Iterator

import tomli_w

from agenthub._fileio import atomic_writer

CONFIG_FILENAME = "agenthub.toml"
CONFIG_ENV = "AGENTHUB_CONFIG"

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _search_paths() -> Iterator[Path]:
    yield Path.cwd() / CONFIG_FILENAME
    yield Path.home() / ".config" / "agenthub" / CONFIG_FILENAME
    yield _PROJECT_ROOT / CONFIG_FILENAME


def find_config() -> Path | None:
    """Locate ``agenthub.toml``.

    ``$AGENTHUB_CONFIG`` is authoritative when set: a missing file there
    means "no config", not "keep looking". Otherwise the first existing file
    among the working directory, ``~/.config/agenthub/`` and the checkout
    root wins.
    """
    explicit = os.environ.get(CONFIG_ENV)
    if explicit:
        candidate = Path(explicit).expanduser()
        return candidate if candidate.is_file() else None
    return next((p for p in _search_paths() if p.is_file()), None)


def load_config(path: Path) -> dict:
    with open(path, "rb") as f:
        return tomllib.load(f)


def write_config(path: Path, data: dict) -> None:
    with atomic_writer(path, binary=True) as f:
        tomli_w.dump(data, f)


def _split_key(dotted_key: str) -> list[str]:
    keys = dotted_key.strip().split(".") if dotted_key else []
    if not keys or not all(keys):
        raise ValueError(f"Invalid config key: {dotted_key!r}")
    return keys


def _table_for(data: dict, keys: list[str], create: bool) -> dict:
    """The table holding ``keys[-1]``; KeyError when a parent is missing."""
    table = data
    for key in keys[:-1]:
        child = table.get(key)
        if not isinstance(child, dict):
            if not create:
                raise KeyError(".".join(keys))
            child = table[key] = {}
        table = child
    return table


def get_value(data: dict, dotted_key: str) -> Any:
    keys = _split_key(dotted_key)
    table = _table_for(data, keys, create=False)
    if keys[-1] not in table:
        raise KeyError(dotted_key)
    return table[keys[-1]]


def set_value(data: dict, dotted_key: str, value: Any) -> dict:
    """Set ``dotted_key``, replacing any scalar that sits where a table is needed."""
    keys = _split_key(dotted_key)
    _table_for(data, keys, create=True)[keys[-1]] = value
    return data


def delete_value(data: dict, dotted_key: str) -> dict:
    keys = _split_key(dotted_key)
    table = _table_for(data, keys, create=False)
    if keys[-1] not in table:
        raise KeyError(dotted_key)
    del table[keys[-1]]
    return data


def generate_template() -> str:
    """Starter ``agenthub.toml``: every section present, every value commented out."""
    return '''\
# AgentHub configuration
# Environment variables (AGENTHUB_*) override the values in this file.

[projects]
# root = "~/projects"

[sessions]
# store_path = "~/.agenthub/sessions.json"
# idle_minutes = 360
# reset_triggers = ["/new", "/reset"]
# abort_triggers = ["/abort"]

[heartbeat]
# enabled = true
# default_every = "30m"
# ack_max_chars = 300
# turn_runner = "mypackage.turns:make_turn_runner"

[subagents]
# kill_grace_seconds = 5.0
# default_mode = "worktree"
# default_base_branch = "main"

[daemon]
# pid_file = "~/.agenthub/agenthub.pid"

# [[agents]]
# id = "lead"
# workspace = "~/agents/lead"
# broadcast_channel = "telegram"
# heartbeat = { every = "30m" }
'''
