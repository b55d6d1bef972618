"""Effective task status from task, PR, Linear and worktree signals.

Signals are consulted from most to least authoritative and the first rule
that applies wins:

1. live PR state fetched from GitHub
2. PR state stored on the task (only when there is no live PR)
3. Linear terminal states (completed / canceled)
4. worktree presence
5. Linear non-terminal states
6. the task's own stored status

Nothing here is cached; callers resolve again whenever a signal changes.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from vibe.models import BranchPrInfo, LinearIssueStatus, Task, TaskStatus, WorktreeInfo


def task_title_to_branch(title: str, linear_id: str | None = None) -> str:
    """Derive the branch name a task is worked on.

    >>> task_title_to_branch("Add feature: user auth", "AMB-67")
    'AMB-67/add-feature-user-auth'
    """
    slug = re.sub(r"[\W_]+", "-", title.lower()).strip("-")
    if linear_id:
        return f"{linear_id}/{slug}"
    return slug


def _title_slug(title: str) -> str:
    return title.lower().replace(" ", "-")


def stored_pr_status(task: Task) -> TaskStatus | None:
    """Status implied by the PR fields stored on the task, if any."""
    if task.pr_status == "merged":
        return TaskStatus.DONE
    if task.pr_status == "closed":
        return TaskStatus.CANCELLED
    if task.pr_status == "open" and task.pr_is_draft is not True:
        return TaskStatus.INREVIEW
    return None


def live_pr_status(pr: BranchPrInfo, has_worktree: bool) -> TaskStatus | None:
    """Status implied by a live PR, or None for a draft without a worktree."""
    if pr.state == "MERGED":
        return TaskStatus.DONE
    if pr.state == "CLOSED":
        return TaskStatus.CANCELLED
    if pr.state == "OPEN":
        if not pr.is_draft:
            return TaskStatus.INREVIEW
        if has_worktree:
            return TaskStatus.INPROGRESS
    return None


def effective_status(
    task: Task,
    live_pr: BranchPrInfo | None = None,
    has_worktree: bool = False,
    linear_status: LinearIssueStatus | None = None,
) -> TaskStatus:
    if live_pr is not None:
        status = live_pr_status(live_pr, has_worktree)
        if status is not None:
            return status
    else:
        status = stored_pr_status(task)
        if status is not None:
            return status

    # Terminal Linear states win over a lingering worktree
    if linear_status is not None:
        if linear_status.state_type == "completed":
            return TaskStatus.DONE
        if linear_status.state_type in ("canceled", "cancelled"):
            return TaskStatus.CANCELLED

    if has_worktree:
        return TaskStatus.INPROGRESS

    if linear_status is not None:
        return TaskStatus.from_linear_state_type(linear_status.state_type)

    return task.status


def find_worktree_for_task(
    task: Task, worktrees: Iterable[WorktreeInfo]
) -> WorktreeInfo | None:
    expected = task_title_to_branch(task.title, task.linear_issue_id)
    expected_lower = expected.lower()
    if not expected_lower:
        return None
    for wt in worktrees:
        branch_lower = wt.branch.lower()
        # Containment runs both ways, so a short branch such as "main"
        # matches every task whose slug contains it ("maintain-docs").
        if (
            wt.branch == expected
            or expected_lower in branch_lower
            or branch_lower in expected_lower
        ):
            return wt
    return None


def find_pr_for_task(
    task: Task,
    worktree: WorktreeInfo | None,
    branch_prs: Mapping[str, BranchPrInfo],
) -> BranchPrInfo | None:
    """Find the PR for a task.

    Tries the worktree's branch, then the derived branch name (a merged PR
    whose worktree was removed), then any PR branch sharing the title slug
    (a renamed branch).
    """
    if worktree is not None and worktree.branch in branch_prs:
        return branch_prs[worktree.branch]

    expected = task_title_to_branch(task.title, task.linear_issue_id)
    if expected in branch_prs:
        return branch_prs[expected]

    slug = _title_slug(task.title)
    if not slug:
        return None
    for branch, pr in branch_prs.items():
        branch_lower = branch.lower()
        if slug in branch_lower or branch_lower in slug:
            return pr
    return None


def resolve_task_status(
    task: Task,
    branch_prs: Mapping[str, BranchPrInfo],
    worktrees: Iterable[WorktreeInfo],
    linear_statuses: Mapping[str, LinearIssueStatus],
) -> TaskStatus:
    worktree = find_worktree_for_task(task, worktrees)
    pr = find_pr_for_task(task, worktree, branch_prs)
    linear_status = (
        linear_statuses.get(task.linear_issue_id) if task.linear_issue_id else None
    )
    return effective_status(task, pr, worktree is not None, linear_status)


def _matches_search(task: Task, search: str) -> bool:
    query = search.lower()
    if query in task.title.lower():
        return True
    return task.description is not None and query in task.description.lower()


def tasks_in_column(
    tasks: Iterable[Task],
    column: TaskStatus,
    branch_prs: Mapping[str, BranchPrInfo],
    worktrees: Iterable[WorktreeInfo],
    linear_statuses: Mapping[str, LinearIssueStatus],
    search: str = "",
) -> list[Task]:
    """Tasks whose effective status lands in the same kanban column as ``column``."""
    worktrees = list(worktrees)
    result = []
    for task in tasks:
        status = resolve_task_status(task, branch_prs, worktrees, linear_statuses)
        if status.column_index != column.column_index:
            continue
        if search and not _matches_search(task, search):
            continue
        result.append(task)
    return result
