from __future__ import annotations

import logging
from concurrent.futures import wait
from pathlib import Path

from vibe.config import Config
from vibe.linear import LinearClient, get_api_key
from vibe.models import ActivityState, BranchPrInfo, Session
from vibe.refresh import RefreshLoop, TaskView
from vibe.worktree import get_current_repo

logger = logging.getLogger(__name__)

DEFAULT_PROJECT = "vibe"

_ACTIVITY_ICONS = {
    ActivityState.THINKING: "*",
    ActivityState.WAITING: "?",
    ActivityState.IDLE: "-",
    ActivityState.UNKNOWN: " ",
}


def build_refresh_loop(config: Config) -> RefreshLoop:
    """RefreshLoop for the repository the command runs in.

    Outside a git repo worktrees and PRs are skipped. Linear is only queried
    when its API key is set.
    """
    repo = get_current_repo()
    project_name, repo_path = repo if repo is not None else (DEFAULT_PROJECT, None)
    api_key = get_api_key(project_name, config.linear_api_key_env)
    if api_key is None:
        logger.debug("No Linear API key for %s; Linear statuses disabled", project_name)
    linear_client = LinearClient(api_key) if api_key else None
    return RefreshLoop(config, repo_path=repo_path, linear_client=linear_client)


def refresh_once(loop: RefreshLoop, rounds: int = 2) -> None:
    """Run ``rounds`` full refreshes synchronously.

    The second round looks up PRs for the worktrees and Linear statuses for
    the tasks the first one found.
    """
    for _ in range(rounds):
        wait(loop.tick())
        loop.drain()


def format_activity(session: Session | None) -> str:
    if session is None:
        return ""
    text = f"{_ACTIVITY_ICONS[session.activity_state]} {session.activity_state}"
    if session.context_percentage is not None:
        text += f" {session.context_percentage:.0f}%"
    return text


def format_pr(pr: BranchPrInfo | None) -> str:
    if pr is None:
        return ""
    parts = [f"PR #{pr.number} {pr.state.lower()}"]
    if pr.is_draft:
        parts.append("draft")
    checks = pr.checks_status()
    if checks is not None:
        parts.append(f"checks {checks.lower()}")
    if pr.has_conflicts():
        parts.append("conflicts")
    approvers = pr.approvers()
    if approvers:
        parts.append(f"approved by {', '.join(approvers)}")
    return ", ".join(parts)


def format_task_line(view: TaskView) -> str:
    task = view.task
    line = f"  #{task.id:<4} {task.title}  [{view.status.label}]"
    extras = []
    if view.linear_status is not None:
        extras.append(f"{view.linear_status.identifier}: {view.linear_status.state_name}")
    pr_text = format_pr(view.pr)
    if pr_text:
        extras.append(pr_text)
    if view.has_plan:
        extras.append("plan")
    activity_text = format_activity(view.session)
    if activity_text:
        extras.append(activity_text.strip())
    if extras:
        line += "  (" + "; ".join(extras) + ")"
    return line


def task_db_path(config: Config) -> Path:
    config.base_dir.mkdir(parents=True, exist_ok=True)
    return config.base_dir / "vibe.db"
