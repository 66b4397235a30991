"""Session commands — inspect and rotate lead-agent sessions."""

from __future__ import annotations

import click

from agenthub.cli.app import load_hub_config
from agenthub.cli.formatters import build_table, emit_json, get_console
from agenthub.sessions import (
    DEFAULT_SESSION_KEY,
    SessionStore,
    format_session_timestamp,
    is_abort_trigger,
    parse_think_directive,
)


def _store(config) -> SessionStore:
    return SessionStore(
        config.sessions.store_path,
        idle_minutes=config.sessions.idle_minutes,
        reset_triggers=config.sessions.reset_triggers,
    )


@click.group("session")
def session_group() -> None:
    """Inspect lead-agent sessions."""


@session_group.command("show")
@click.argument("agent_id")
@click.option("--key", "session_key", default=DEFAULT_SESSION_KEY, show_default=True)
@click.pass_context
def show_cmd(ctx: click.Context, agent_id: str, session_key: str) -> None:
    """Show the stored session entry for AGENT_ID."""
    entry = _store(load_hub_config()).get_entry(agent_id, session_key)
    if entry is None:
        raise click.ClickException(f"No session for {agent_id}:{session_key}")
    if ctx.obj.get("json"):
        emit_json(entry.to_wire())
        return
    rows = [
        ["session", entry.session_id],
        ["updated", format_session_timestamp(entry.updated_at)],
        ["created", format_session_timestamp(entry.created_at) if entry.created_at else "-"],
        ["think", entry.think_level or "-"],
    ]
    get_console(ctx.obj.get("no_color", False)).print(
        build_table(f"{agent_id}:{session_key}", ["Field", "Value"], rows)
    )


@session_group.command("resolve")
@click.argument("agent_id")
@click.argument("message", default="")
@click.option("--key", "session_key", default=DEFAULT_SESSION_KEY, show_default=True)
@click.pass_context
def resolve_cmd(ctx: click.Context, agent_id: str, message: str, session_key: str) -> None:
    """Resolve the session a MESSAGE would run in (rotating it if due)."""
    config = load_hub_config()
    if is_abort_trigger(message.strip(), config.sessions.abort_triggers):
        click.echo("abort trigger: no session resolved")
        return
    store = _store(config)
    directive = parse_think_directive(message)
    result = store.resolve_session_id(agent_id, directive.message, session_key=session_key)
    if directive.think_level is not None:
        store.set_think_level(agent_id, session_key, directive.think_level, result.session_id)
    if ctx.obj.get("json"):
        emit_json(result.model_dump())
        return
    click.echo(f"{result.session_id}{' (new)' if result.is_new else ''}")
    if result.message != message:
        click.echo(f"message: {result.message!r}")
