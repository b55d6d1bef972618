from __future__ import annotations

import sys

import click

# Restore the default excepthook so Rich (installed by Textual) doesn't
# hijack tracebacks with fancy formatting that breaks CI and log parsing.
sys.excepthook = sys.__excepthook__

from vibe.cli.admin import board, config
from vibe.cli.info import activity, plan, sessions_cmd, status, watch
from vibe.cli.items import add, delete, edit
from vibe.config import get_config
from vibe.log import setup_logging


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to ~/.vibe/vibe.log.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """vibe: kanban board for coding-agent sessions, worktrees and PRs."""
    try:
        cfg = get_config()
        setup_logging(cfg.base_dir, verbose)
    except ValueError as e:  # includes TOMLDecodeError
        raise click.ClickException(f"Invalid configuration: {e}") from e
    ctx.obj = cfg


# Register info commands
cli.add_command(status)
cli.add_command(sessions_cmd)
cli.add_command(activity)
cli.add_command(plan)
cli.add_command(watch)

# Register task commands
cli.add_command(add)
cli.add_command(edit)
cli.add_command(delete)

# Register admin commands
cli.add_command(board)
cli.add_command(config)

__all__ = ["cli"]
