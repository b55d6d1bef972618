from __future__ import annotations

import click

from vibe.cli.utils import task_db_path
from vibe.config import Config
from vibe.db import connection, create_task, delete_task, get_task, update_task
from vibe.models import TaskStatus

STATUS_CHOICE = click.Choice([s.value for s in TaskStatus])


@click.command()
@click.argument("title")
@click.option("--linear-id", default=None, help="Linear issue identifier, e.g. VIB-12.")
@click.option(
    "--status",
    "status_",
    type=STATUS_CHOICE,
    default=TaskStatus.BACKLOG.value,
    show_default=True,
)
@click.option("--description", "-d", default=None)
@click.pass_obj
def add(
    cfg: Config,
    title: str,
    linear_id: str | None,
    status_: str,
    description: str | None,
) -> None:
    """Add a task to the board."""
    try:
        with connection(task_db_path(cfg)) as conn:
            task = create_task(
                conn,
                title,
                status=TaskStatus(status_),
                description=description,
                linear_issue_id=linear_id,
            )
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Created task #{task.id}: {task.title} [{task.status.label}]")


@click.command()
@click.argument("task_id", type=int)
@click.option("-t", "--title", default=None, help="New title.")
@click.option("--status", "status_", type=STATUS_CHOICE, default=None, help="New stored status.")
@click.option("--linear-id", default=None, help="Link a Linear issue.")
@click.option("--description", "-d", default=None)
@click.pass_obj
def edit(
    cfg: Config,
    task_id: int,
    title: str | None,
    status_: str | None,
    linear_id: str | None,
    description: str | None,
) -> None:
    """Edit a task's title, stored status, Linear issue or description."""
    fields: dict[str, object] = {}
    if title is not None:
        if not title.strip():
            raise click.ClickException("Task title must not be empty.")
        fields["title"] = title
    if status_ is not None:
        fields["status"] = status_
    if linear_id is not None:
        fields["linear_issue_id"] = linear_id or None
    if description is not None:
        fields["description"] = description
    if not fields:
        raise click.ClickException("Provide --title, --status, --linear-id and/or --description.")

    with connection(task_db_path(cfg)) as conn:
        if get_task(conn, task_id) is None:
            raise click.ClickException(f"Task #{task_id} not found.")
        task = update_task(conn, task_id, **fields)

    assert task is not None
    click.echo(f"Updated task #{task.id}: {task.title} [{task.status.label}]")


@click.command()
@click.argument("task_id", type=int)
@click.option("--force", is_flag=True, help="Delete without asking.")
@click.pass_obj
def delete(cfg: Config, task_id: int, force: bool) -> None:
    """Delete a task from the board."""
    with connection(task_db_path(cfg)) as conn:
        task = get_task(conn, task_id)
        if task is None:
            raise click.ClickException(f"Task #{task_id} not found.")

        if not force and not click.confirm(f"Delete #{task_id} ({task.title})?"):
            click.echo("Aborted.")
            return

        delete_task(conn, task_id)
    click.echo(f"Deleted #{task_id}")
