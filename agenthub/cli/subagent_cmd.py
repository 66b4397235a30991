"""Subagent commands — spawn, list, status, logs, interrupt, kill, archive."""

from __future__ import annotations

import time

import click

from agenthub.cli.app import async_cmd, load_hub_config
from agenthub.cli.formatters import build_table, emit_json, get_console, status_indicator
from agenthub.errors import HubError
from agenthub.subagents.models import SpawnRequest, SubagentListItem

_CLI_CHOICES = click.Choice(["claude", "codex", "droid", "gemini"])
_MODE_CHOICES = click.Choice(["worktree", "main-run", "none"])


def _orchestrator():
    from agenthub.subagents.orchestrator import SubagentOrchestrator

    return SubagentOrchestrator.from_config(load_hub_config())


def _print_items(ctx: click.Context, items: list[SubagentListItem], title: str) -> None:
    if ctx.obj.get("json"):
        emit_json([item.model_dump() for item in items])
        return
    if ctx.obj.get("quiet"):
        return
    console = get_console(ctx.obj.get("no_color", False))
    if not items:
        console.print("[dim]No subagents.[/dim]")
        return
    columns = ["", "Project", "Slug", "Status", "CLI", "Mode", "Tools", "Last active"]
    if ctx.obj.get("verbose"):
        columns += ["Session", "PID", "Error"]
    rows = []
    for item in items:
        row = [
            status_indicator(item.status),
            item.project_id,
            item.slug + (" (archived)" if item.archived else ""),
            item.status,
            item.cli or "-",
            item.run_mode or "-",
            item.tool_calls,
            item.last_active or "-",
        ]
        if ctx.obj.get("verbose"):
            row += [item.session_id or "-", item.supervisor_pid or "-", item.last_error or ""]
        rows.append(row)
    console.print(build_table(title, columns, rows))


@click.group("subagent")
def subagent_group() -> None:
    """Spawn and manage coding-CLI subagents."""


@subagent_group.command("spawn")
@click.argument("project_id")
@click.argument("slug")
@click.argument("prompt")
@click.option("--cli", "cli_name", type=_CLI_CHOICES, required=True, help="Coding CLI to run")
@click.option("--mode", type=_MODE_CHOICES, default=None, help="Workspace mode")
@click.option("--base-branch", default=None, help="Branch the worktree starts from")
@click.option("--resume", is_flag=True, help="Resume the workspace's previous session")
@click.pass_context
@async_cmd
async def spawn_cmd(
    ctx: click.Context,
    project_id: str,
    slug: str,
    prompt: str,
    cli_name: str,
    mode: str | None,
    base_branch: str | None,
    resume: bool,
) -> None:
    """Start a subagent run in PROJECT_ID/SLUG."""
    request = SpawnRequest(
        slug=slug, cli=cli_name, prompt=prompt, mode=mode, base_branch=base_branch, resume=resume
    )
    try:
        result = await _orchestrator().spawn(project_id, request)
    except (HubError, ValueError) as e:
        raise click.ClickException(str(e))
    if ctx.obj.get("json"):
        emit_json(result.model_dump(mode="json"))
    elif not ctx.obj.get("quiet"):
        click.echo(f"Spawned {project_id}/{result.slug} (pid {result.supervisor_pid}) in {result.workspace}")


@subagent_group.command("list")
@click.argument("project_id", required=False)
@click.option("--archived", is_flag=True, help="Include archived workspaces")
@click.pass_context
def list_cmd(ctx: click.Context, project_id: str | None, archived: bool) -> None:
    """List subagents of one project, or of every project."""
    orchestrator = _orchestrator()
    if project_id:
        items = orchestrator.list_subagents(project_id, include_archived=archived)
    else:
        items = orchestrator.list_all_subagents(include_archived=archived)
    _print_items(ctx, items, "Subagents")


@subagent_group.command("status")
@click.argument("project_id")
@click.argument("slug")
@click.pass_context
def status_cmd(ctx: click.Context, project_id: str, slug: str) -> None:
    """Show one subagent's derived status."""
    try:
        item = _orchestrator().status(project_id, slug)
    except (HubError, ValueError) as e:
        raise click.ClickException(str(e))
    _print_items(ctx, [item], f"{project_id}/{slug}")


@subagent_group.command("logs")
@click.argument("project_id")
@click.argument("slug")
@click.option("--since", type=int, default=0, show_default=True, help="Byte cursor to resume from")
@click.option("--limit", type=int, default=None, help="Stop after this many events")
@click.option("--follow", "-f", is_flag=True, help="Keep polling for new events")
@click.option("--interval", type=float, default=1.0, show_default=True, help="Poll interval (seconds)")
@click.pass_context
def logs_cmd(
    ctx: click.Context,
    project_id: str,
    slug: str,
    since: int,
    limit: int | None,
    follow: bool,
    interval: float,
) -> None:
    """Print normalized log events after a byte cursor."""
    orchestrator = _orchestrator()
    cursor = since
    while True:
        try:
            page = orchestrator.fetch_logs(project_id, slug, since=cursor, limit=limit)
        except (HubError, ValueError) as e:
            raise click.ClickException(str(e))
        if ctx.obj.get("json"):
            emit_json(page.model_dump(exclude_none=True))
        else:
            for event in page.events:
                label = event.tool.name if event.tool and event.tool.name else event.type
                click.echo(f"[{label}] {event.text or ''}")
        cursor = page.cursor
        if not follow:
            if not ctx.obj.get("json") and not ctx.obj.get("quiet"):
                click.echo(f"cursor: {cursor}", err=True)
            return
        try:
            time.sleep(interval)
        except KeyboardInterrupt:
            return


@subagent_group.command("interrupt")
@click.argument("project_id")
@click.argument("slug")
def interrupt_cmd(project_id: str, slug: str) -> None:
    """Ask a running subagent to stop (keeps its workspace)."""
    try:
        signalled = _orchestrator().interrupt(project_id, slug)
    except (HubError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo("Interrupt sent." if signalled else "Subagent was not running.")


@subagent_group.command("kill")
@click.argument("project_id")
@click.argument("slug")
@click.confirmation_option(prompt="Delete this workspace and its branch?")
@async_cmd
async def kill_cmd(project_id: str, slug: str) -> None:
    """Stop a subagent and delete its workspace."""
    try:
        await _orchestrator().kill(project_id, slug)
    except (HubError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Killed {project_id}/{slug}.")


@subagent_group.command("archive")
@click.argument("project_id")
@click.argument("slug")
@async_cmd
async def archive_cmd(project_id: str, slug: str) -> None:
    """Move a finished workspace into the archive."""
    try:
        path = await _orchestrator().archive(project_id, slug)
    except (HubError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Archived to {path}")


@subagent_group.command("unarchive")
@click.argument("project_id")
@click.argument("slug")
@async_cmd
async def unarchive_cmd(project_id: str, slug: str) -> None:
    """Restore an archived workspace."""
    try:
        path = await _orchestrator().unarchive(project_id, slug)
    except (HubError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Restored to {path}")


@subagent_group.command("branches")
@click.argument("project_id")
@click.pass_context
@async_cmd
async def branches_cmd(ctx: click.Context, project_id: str) -> None:
    """List local branches of a project's repository."""
    try:
        branches = await _orchestrator().list_project_branches(project_id)
    except HubError as e:
        raise click.ClickException(str(e))
    if ctx.obj.get("json"):
        emit_json(branches)
        return
    for branch in branches:
        click.echo(branch)
