from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class ActivityState(StrEnum):
    UNKNOWN = "unknown"  # no statusline data yet
    IDLE = "idle"  # no activity for a long time
    THINKING = "thinking"  # actively producing output
    WAITING = "waiting"  # recently active, awaiting the user


class TaskStatus(StrEnum):
    BACKLOG = "backlog"
    TODO = "todo"
    INPROGRESS = "inprogress"
    INREVIEW = "inreview"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def column_index(self) -> int:
        return _STATUS_COLUMNS[self]

    @classmethod
    def from_column_index(cls, index: int) -> TaskStatus | None:
        if 0 <= index < len(VISIBLE_STATUSES):
            return VISIBLE_STATUSES[index]
        return None

    @classmethod
    def from_linear_state_type(cls, state_type: str) -> TaskStatus:
        """Map a Linear workflow state type onto a task status."""
        return _LINEAR_STATE_TYPES.get(state_type, cls.BACKLOG)


_STATUS_LABELS = {
    TaskStatus.BACKLOG: "Backlog",
    TaskStatus.TODO: "To Do",
    TaskStatus.INPROGRESS: "In Progress",
    TaskStatus.INREVIEW: "In Review",
    TaskStatus.DONE: "Done",
    TaskStatus.CANCELLED: "Cancelled",
}

_STATUS_COLUMNS = {
    TaskStatus.BACKLOG: 0,
    TaskStatus.TODO: 0,
    TaskStatus.INPROGRESS: 1,
    TaskStatus.INREVIEW: 2,
    TaskStatus.DONE: 3,
    TaskStatus.CANCELLED: 3,
}

_LINEAR_STATE_TYPES = {
    "backlog": TaskStatus.BACKLOG,
    "unstarted": TaskStatus.TODO,
    "started": TaskStatus.INPROGRESS,
    "completed": TaskStatus.DONE,
    "canceled": TaskStatus.CANCELLED,
    "cancelled": TaskStatus.CANCELLED,
}

# Kanban column heads, in display order
VISIBLE_STATUSES = (
    TaskStatus.BACKLOG,
    TaskStatus.INPROGRESS,
    TaskStatus.INREVIEW,
    TaskStatus.DONE,
)


@dataclass
class StatusRecord:
    """One activity snapshot written by a Claude Code statusline script."""

    working_dir: str
    timestamp: int  # unix seconds
    session_id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    used_percentage: float | None = None
    api_duration_ms: int | None = None


@dataclass
class ActivityResult:
    state: ActivityState = ActivityState.UNKNOWN
    context_percentage: float | None = None


@dataclass
class Task:
    id: int
    title: str
    status: TaskStatus
    description: str | None = None
    linear_issue_id: str | None = None
    pr_url: str | None = None
    pr_status: str | None = None  # open, merged, closed
    pr_is_draft: bool | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class StatusCheck:
    type: str  # CheckRun, StatusContext
    conclusion: str | None = None  # SUCCESS, FAILURE, ...
    status: str | None = None  # COMPLETED, IN_PROGRESS, ...


@dataclass
class Review:
    state: str  # APPROVED, CHANGES_REQUESTED, COMMENTED
    author_login: str


@dataclass
class BranchPrInfo:
    number: int
    url: str
    state: str  # OPEN, MERGED, CLOSED
    is_draft: bool = False
    review_decision: str | None = None
    mergeable: str | None = None  # MERGEABLE, CONFLICTING, UNKNOWN
    status_check_rollup: list[StatusCheck] | None = None
    reviews: list[Review] = field(default_factory=list)

    def checks_status(self) -> str | None:
        """Collapse the check rollup into SUCCESS, FAILURE or PENDING."""
        if not self.status_check_rollup:
            return None

        has_failure = False
        has_pending = False
        for check in self.status_check_rollup:
            if check.conclusion in ("FAILURE", "ERROR", "TIMED_OUT"):
                has_failure = True
            elif check.conclusion in ("SUCCESS", "NEUTRAL", "SKIPPED"):
                continue
            elif check.status != "COMPLETED":
                has_pending = True

        if has_failure:
            return "FAILURE"
        if has_pending:
            return "PENDING"
        return "SUCCESS"

    def has_conflicts(self) -> bool:
        return self.mergeable == "CONFLICTING"

    def approvers(self) -> list[str]:
        return [r.author_login for r in self.reviews if r.state == "APPROVED"]


@dataclass
class LinearIssueStatus:
    identifier: str
    state_type: str  # backlog, unstarted, started, completed, canceled
    state_name: str  # display only


@dataclass
class WorktreeInfo:
    branch: str
    path: str = ""
    is_current: bool = False


@dataclass
class Session:
    """A zellij session hosting one Claude Code process."""

    name: str
    is_current: bool = False
    is_dead: bool = False
    activity_state: ActivityState = ActivityState.UNKNOWN
    context_percentage: float | None = None
