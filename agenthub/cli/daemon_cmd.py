"""Daemon start/stop/status commands."""

from __future__ import annotations

import os
import signal

import click

from agenthub.cli.app import load_hub_config


@click.group("daemon")
def daemon_group() -> None:
    """Run the heartbeat daemon."""


@daemon_group.command("start")
def start_cmd() -> None:
    """Start the heartbeat daemon (foreground)."""
    from agenthub.daemon import run_daemon

    run_daemon(load_hub_config())


@daemon_group.command("stop")
def stop_cmd() -> None:
    """Stop the running daemon gracefully."""
    from agenthub.daemon import read_pid_file

    pid = read_pid_file(load_hub_config().daemon.pid_file)
    if pid is None:
        click.echo("AgentHub daemon is not running.")
        return
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        click.echo("AgentHub daemon is not running.")
        return
    click.echo(f"Sent SIGTERM to AgentHub daemon (pid {pid}).")


@daemon_group.command("status")
def status_cmd() -> None:
    """Report whether the daemon is running."""
    from agenthub.daemon import read_pid_file

    pid = read_pid_file(load_hub_config().daemon.pid_file)
    if pid is None:
        click.echo("AgentHub daemon is not running.")
    else:
        click.echo(f"AgentHub daemon is running (pid {pid}).")
