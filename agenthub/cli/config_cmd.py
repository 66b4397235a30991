"""``agenthub config``: inspect and edit agenthub.toml by dotted key."""

from __future__ import annotations

import math
import os
import tomllib
from pathlib import Path
from typing import Any, Callable

import click

from agenthub import config_file


def _require_config() -> Path:
    path = config_file.find_config()
    if path is None:
        raise click.ClickException(f"No {config_file.CONFIG_FILENAME} found")
    return path


def _edit_target() -> Path:
    """Where ``config set`` writes: the discovered file, else $AGENTHUB_CONFIG, else ./agenthub.toml."""
    found = config_file.find_config()
    if found is not None:
        return found
    explicit = os.environ.get(config_file.CONFIG_ENV)
    return Path(explicit).expanduser() if explicit else Path(config_file.CONFIG_FILENAME)


def _edit(path: Path, key: str, change: Callable[[dict], Any]) -> None:
    data = config_file.load_config(path) if path.is_file() else {}
    try:
        change(data)
    except KeyError:
        raise click.ClickException(f"Key not found: {key}")
    except ValueError as e:
        raise click.ClickException(str(e))
    config_file.write_config(path, data)


def _parse_value(raw: str) -> Any:
    """Read *raw* as a TOML literal; anything that is not one stays a string."""
    try:
        value = tomllib.loads(f"v = {raw}")["v"]
    except tomllib.TOMLDecodeError:
        return raw
    if isinstance(value, float) and not math.isfinite(value):
        raise click.ClickException(f"Invalid float value: {raw}")
    return value


def _echo_entries(data: dict) -> None:
    for section, values in sorted(data.items()):
        if isinstance(values, dict):
            for name, value in sorted(values.items()):
                click.echo(f"  {section}.{name} = {value!r}")
        elif isinstance(values, list):
            click.echo(f"  {section} = [{len(values)} entries]")
        else:
            click.echo(f"  {section} = {values!r}")


def _show_all() -> None:
    path = config_file.find_config()
    click.echo(f"TOML file: {path or '(none)'}")
    data = config_file.load_config(path) if path else {}
    if data:
        _echo_entries(data)
    else:
        click.echo("  (no TOML overrides)")


@click.group("config", invoke_without_command=True)
@click.pass_context
def config_group(ctx: click.Context) -> None:
    """Manage AgentHub configuration (agenthub.toml)."""
    if ctx.invoked_subcommand is None:
        _show_all()


@config_group.command("list")
def config_list() -> None:
    """List every value set in agenthub.toml."""
    _show_all()


@config_group.command("get")
@click.argument("key")
def config_get(key: str) -> None:
    """Print one value by dotted key."""
    data = config_file.load_config(_require_config())
    try:
        click.echo(repr(config_file.get_value(data, key)))
    except (KeyError, ValueError):
        raise click.ClickException(f"Key not found: {key}")


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set a value by dotted key, creating the file if needed."""
    path = _edit_target()
    parsed = _parse_value(value)
    _edit(path, key, lambda data: config_file.set_value(data, key, parsed))
    click.echo(f"Set {key} = {parsed!r} in {path}")


@config_group.command("unset")
@click.argument("key")
def config_unset(key: str) -> None:
    """Remove a value by dotted key."""
    path = _require_config()
    _edit(path, key, lambda data: config_file.delete_value(data, key))
    click.echo(f"Removed {key} from {path}")


@config_group.command("init")
def config_init() -> None:
    """Write a commented agenthub.toml template into the current directory."""
    target = Path(config_file.CONFIG_FILENAME)
    if target.exists():
        raise click.ClickException(f"{target} already exists")
    target.write_text(config_file.generate_template())
    click.echo(f"Created {target}")


@config_group.command("validate")
def config_validate() -> None:
    """Load the effective configuration and report problems."""
    from agenthub.config import HubConfig

    try:
        config = HubConfig()
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    click.echo(f"Configuration is valid: {config!r}")
