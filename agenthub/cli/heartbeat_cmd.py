"""Heartbeat commands — show schedules and run one heartbeat on demand."""

from __future__ import annotations

import click

from agenthub.cli.app import async_cmd, load_hub_config
from agenthub.cli.formatters import (
    build_table,
    emit_json,
    format_duration,
    get_console,
    status_indicator,
)
from agenthub.errors import HubError


@click.group("heartbeat")
def heartbeat_group() -> None:
    """Inspect and trigger lead-agent heartbeats."""


@heartbeat_group.command("status")
@click.pass_context
def status_cmd(ctx: click.Context) -> None:
    """Show each configured agent's heartbeat interval and channel."""
    from agenthub.heartbeat import get_heartbeat_interval_ms

    config = load_hub_config()
    rows = []
    for agent in config.agents:
        interval = get_heartbeat_interval_ms(agent, config.heartbeat.default_every)
        rows.append(
            {
                "agent_id": agent.id,
                "interval_ms": interval,
                "broadcast_channel": agent.broadcast_channel,
            }
        )

    if ctx.obj.get("json"):
        emit_json({"enabled": config.heartbeat.enabled, "agents": rows})
        return
    console = get_console(ctx.obj.get("no_color", False))
    if not config.heartbeat.enabled:
        console.print("[yellow]Heartbeats are globally disabled.[/yellow]")
    table = build_table(
        "Heartbeats",
        ["Agent", "Every", "Channel"],
        [
            [
                row["agent_id"],
                format_duration(row["interval_ms"] / 1000) if row["interval_ms"] else "off",
                row["broadcast_channel"] or "-",
            ]
            for row in rows
        ],
    )
    console.print(table)


@heartbeat_group.command("run")
@click.argument("agent_id")
@click.pass_context
@async_cmd
async def run_cmd(ctx: click.Context, agent_id: str) -> None:
    """Run one heartbeat turn for AGENT_ID now."""
    from agenthub.daemon import load_turn_runner
    from agenthub.heartbeat import HeartbeatScheduler
    from agenthub.sessions import SessionStore

    config = load_hub_config()
    if not config.heartbeat.turn_runner:
        raise click.ClickException("heartbeat.turn_runner is not configured")
    try:
        run_turn = load_turn_runner(config.heartbeat.turn_runner, config)
    except HubError as e:
        raise click.ClickException(str(e))

    store = SessionStore(
        config.sessions.store_path,
        idle_minutes=config.sessions.idle_minutes,
        reset_triggers=config.sessions.reset_triggers,
    )
    scheduler = HeartbeatScheduler(
        lambda: config.agents,
        run_turn,
        store,
        ack_max_chars=config.heartbeat.ack_max_chars,
        default_every=config.heartbeat.default_every,
        enabled=config.heartbeat.enabled,
    )
    event = await scheduler.run_heartbeat(agent_id)

    if ctx.obj.get("json"):
        emit_json(event.to_wire())
        return
    console = get_console(ctx.obj.get("no_color", False))
    line = status_indicator(event.status)
    line.append(f"{agent_id}: {event.status}")
    if event.reason:
        line.append(f" ({event.reason})")
    console.print(line)
    if event.alert_text and not ctx.obj.get("quiet"):
        console.print(event.alert_text)
