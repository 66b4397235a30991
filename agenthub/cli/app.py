"""Top-level ``agenthub`` command group.

Global flags land in ``ctx.obj``; each subcommand module contributes one
group that is attached at import time.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable

import click


def async_cmd(func: Callable[..., Awaitable[Any]]) -> Callable[..., Any]:
    """Let a click command body be a coroutine."""

    @functools.wraps(func)
    def runner(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return runner


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--quiet", "-q", is_flag=True, help="Suppress output")
@click.option("--verbose", "-v", is_flag=True, help="Extended details and info-level logs")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, quiet: bool, verbose: bool, no_color: bool) -> None:
    """AgentHub - lead-agent sessions, heartbeats and coding subagents."""
    from agenthub.main import configure_logging

    configure_logging(verbose=verbose)
    ctx.ensure_object(dict)
    ctx.obj.update(json=json_output, quiet=quiet, verbose=verbose, no_color=no_color)


def load_hub_config():
    """HubConfig for a command, with config errors rendered as Click errors."""
    from agenthub.config import HubConfig

    try:
        return HubConfig()
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Invalid configuration: {e}")


def _attach_groups() -> None:
    from agenthub.cli.config_cmd import config_group
    from agenthub.cli.daemon_cmd import daemon_group
    from agenthub.cli.heartbeat_cmd import heartbeat_group
    from agenthub.cli.session_cmd import session_group
    from agenthub.cli.subagent_cmd import subagent_group

    for group in (subagent_group, session_group, heartbeat_group, daemon_group, config_group):
        cli.add_command(group)


_attach_groups()
