from __future__ import annotations

import threading

import click

from vibe.activity import ActivityTracker, StatusFileStore, count_active_sessions
from vibe.cli.utils import (
    build_refresh_loop,
    format_activity,
    format_task_line,
    refresh_once,
)
from vibe.config import Config
from vibe.models import VISIBLE_STATUSES, ActivityState, TaskStatus
from vibe.refresh import RefreshLoop
from vibe.zellij import ZellijUnavailableError, list_sessions


def _tracker(cfg: Config) -> ActivityTracker:
    return ActivityTracker(
        StatusFileStore(cfg.state_dir),
        thinking_threshold=cfg.thinking_threshold,
        waiting_threshold=cfg.waiting_threshold,
    )


@click.command()
@click.option("--search", default="", help="Only show tasks whose title or description matches.")
@click.pass_obj
def status(cfg: Config, search: str) -> None:
    """Show tasks grouped by kanban column with their effective status."""
    loop = build_refresh_loop(cfg)
    try:
        refresh_once(loop)
        for column in VISIBLE_STATUSES:
            tasks = loop.tasks_in_column(column, search=search)
            click.echo(f"{column.label} ({len(tasks)})")
            for task in tasks:
                click.echo(format_task_line(loop.describe(task)))
        for warning in loop.warnings():
            click.echo(f"warning: {warning}", err=True)
    finally:
        loop.close()


@click.command("sessions")
@click.pass_obj
def sessions_cmd(cfg: Config) -> None:
    """List zellij sessions with Claude activity."""
    try:
        sessions = list_sessions()
    except ZellijUnavailableError as e:
        raise click.ClickException(str(e)) from e

    if not sessions:
        click.echo("No zellij sessions.")
        return

    _tracker(cfg).update_sessions(sessions)
    for s in sessions:
        flags = []
        if s.is_current:
            flags.append("current")
        if s.is_dead:
            flags.append("exited")
        suffix = f"  ({', '.join(flags)})" if flags else ""
        click.echo(f"{s.name:<36}  {format_activity(s):<16}{suffix}")
    click.echo(f"{count_active_sessions(sessions)} active of {len(sessions)}")


@click.command()
@click.argument("session_name")
@click.pass_obj
def activity(cfg: Config, session_name: str) -> None:
    """Show the Claude activity state for SESSION_NAME."""
    result = _tracker(cfg).get_activity_for_session(session_name)
    line = f"{session_name}: {result.state}"
    if result.context_percentage is not None:
        line += f" (context {result.context_percentage:.0f}%)"
    click.echo(line)


@click.command()
@click.argument("task_id", type=int)
@click.pass_obj
def plan(cfg: Config, task_id: int) -> None:
    """Print the Claude Code plan for a task's worktree."""
    loop = build_refresh_loop(cfg)
    try:
        refresh_once(loop)
        task = next((t for t in loop.tasks if t.id == task_id), None)
        if task is None:
            raise click.ClickException(f"Task #{task_id} not found.")
        worktree = loop.describe(task).worktree
        if worktree is None or not worktree.path:
            raise click.ClickException(f"Task #{task_id} has no worktree.")
        content = loop.plan_reader.read_plan(worktree.path, worktree.branch)
    finally:
        loop.close()

    if content is None:
        raise click.ClickException(f"No plan found for branch '{worktree.branch}'.")
    click.echo(content.rstrip("\n"))


class ChangePrinter:
    """Prints what changed between two drains of a RefreshLoop."""

    def __init__(self) -> None:
        self.task_statuses: dict[int, TaskStatus] = {}
        self.session_states: dict[str, ActivityState] = {}
        self.warnings: set[str] = set()

    def __call__(self, loop: RefreshLoop) -> None:
        for task in loop.tasks:
            new = loop.effective_status(task)
            old = self.task_statuses.get(task.id)
            if old is not None and old != new:
                click.echo(f"#{task.id} {task.title}: {old.label} -> {new.label}")
            self.task_statuses[task.id] = new

        for s in loop.sessions:
            old_state = self.session_states.get(s.name)
            if old_state is not None and old_state != s.activity_state:
                click.echo(f"{s.name}: {old_state} -> {s.activity_state}")
            self.session_states[s.name] = s.activity_state

        current = set(loop.warnings())
        for warning in sorted(current - self.warnings):
            click.echo(f"warning: {warning}", err=True)
        self.warnings = current


@click.command()
@click.option(
    "--interval",
    type=float,
    default=None,
    help="Seconds between refreshes (defaults to [refresh] interval).",
)
@click.pass_obj
def watch(cfg: Config, interval: float | None) -> None:
    """Refresh continuously and print status changes until Ctrl+C."""
    if interval is not None and interval <= 0:
        raise click.BadParameter("must be positive", param_hint="--interval")

    loop = build_refresh_loop(cfg)
    stop_event = threading.Event()
    click.echo("Watching for changes (Ctrl+C to stop)...")
    try:
        loop.run(stop_event, interval, on_change=ChangePrinter())
    except KeyboardInterrupt:
        stop_event.set()
    finally:
        loop.close()
