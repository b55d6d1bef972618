"""Background refresh of sessions, worktrees, tasks, PRs and Linear statuses.

``RefreshLoop`` owns every piece of mutable board state. Blocking calls
(status files, zellij, git, gh, sqlite, Linear, Claude session logs) run on
a thread pool and report back through a queue; their results are only ever
applied by ``drain()`` on the control thread, so none of the owned objects
need locking.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from vibe import db, github, zellij
from vibe.activity import ActivityTracker, ActivityWatcher, StatusFileStore
from vibe.config import Config
from vibe.linear import LinearClient
from vibe.models import (
    BranchPrInfo,
    LinearIssueStatus,
    Session,
    StatusRecord,
    Task,
    TaskStatus,
    WorktreeInfo,
)
from vibe.plans import PlanReader
from vibe.prcache import PrLookupCache
from vibe.resolver import (
    effective_status,
    find_pr_for_task,
    find_worktree_for_task,
    resolve_task_status,
    task_title_to_branch,
    tasks_in_column,
)
from vibe.sessions import SessionsState
from vibe.worktree import list_worktrees

logger = logging.getLogger(__name__)

SOURCES = ("activity", "sessions", "worktrees", "tasks", "linear", "github", "plans")

# Pending file-change notifications before the watcher starts dropping them
WATCH_QUEUE_SIZE = 1024


@dataclass
class StatusRecordsLoaded:
    records: list[StatusRecord]
    taken_at: float  # tracker clock when the scan was dispatched


@dataclass
class StatusFilesChanged:
    records: list[StatusRecord]


@dataclass
class SessionsLoaded:
    sessions: list[Session]


@dataclass
class WorktreesLoaded:
    worktrees: list[WorktreeInfo]


@dataclass
class TasksLoaded:
    tasks: list[Task]


@dataclass
class LinearLoaded:
    statuses: dict[str, LinearIssueStatus]


@dataclass
class PrLoaded:
    branch: str
    pr: BranchPrInfo | None


@dataclass
class PrBatchLoaded:
    branches: list[str]  # branches that needed a lookup when the batch was sent
    prs: dict[str, BranchPrInfo]


@dataclass
class PlansLoaded:
    branches: set[str]  # worktree branches with a Claude plan file


@dataclass
class JobFailed:
    source: str
    error: str
    branches: list[str] = field(default_factory=list)


@dataclass
class TaskView:
    """Everything the board shows for one task."""

    task: Task
    status: TaskStatus
    worktree: WorktreeInfo | None
    pr: BranchPrInfo | None
    linear_status: LinearIssueStatus | None
    session: Session | None
    has_plan: bool = False


Message = (
    StatusRecordsLoaded
    | StatusFilesChanged
    | SessionsLoaded
    | WorktreesLoaded
    | TasksLoaded
    | LinearLoaded
    | PrLoaded
    | PrBatchLoaded
    | PlansLoaded
    | JobFailed
)


def load_tasks_from_db(db_path: Path | None = None) -> list[Task]:
    with db.connection(db_path) as conn:
        return db.list_tasks(conn)


class RefreshLoop:
    def __init__(
        self,
        config: Config,
        repo_path: str | None = None,
        linear_client: LinearClient | None = None,
        load_tasks: Callable[[], list[Task]] | None = None,
        list_sessions: Callable[[], list[Session]] = zellij.list_sessions,
        list_repo_worktrees: Callable[[str], list[WorktreeInfo]] = list_worktrees,
        fetch_pr: Callable[[str, str | None], BranchPrInfo | None] = github.get_pr_for_branch,
        fetch_all_prs: Callable[[str | None], dict[str, BranchPrInfo]] = github.get_all_prs,
        tracker: ActivityTracker | None = None,
        pr_cache: PrLookupCache | None = None,
        plan_reader: PlanReader | None = None,
    ) -> None:
        self.config = config
        self.repo_path = repo_path
        self.linear_client = linear_client
        self._load_tasks = load_tasks or (
            lambda: load_tasks_from_db(config.base_dir / "vibe.db")
        )
        self._list_sessions = list_sessions
        self._list_worktrees = list_repo_worktrees
        self._fetch_pr = fetch_pr
        self._fetch_all_prs = fetch_all_prs

        self.tracker = tracker or ActivityTracker(
            StatusFileStore(config.state_dir),
            thinking_threshold=config.thinking_threshold,
            waiting_threshold=config.waiting_threshold,
        )
        self.pr_cache = pr_cache or PrLookupCache(
            ttl=config.no_pr_ttl, refresh_ttl=config.pr_refresh_ttl
        )
        self.plan_reader = plan_reader or PlanReader(config.claude_dir)
        self.sessions_state = SessionsState()
        self.tasks: list[Task] = []
        self.linear_statuses: dict[str, LinearIssueStatus] = {}
        self.plan_branches: set[str] = set()

        self.file_changes: queue.Queue[Path] = queue.Queue(maxsize=WATCH_QUEUE_SIZE)
        self.watcher = ActivityWatcher(
            config.state_dir, self.file_changes, poll_interval=config.watch_interval
        )

        self._results: queue.Queue[tuple[str, Message]] = queue.Queue()
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="vibe-refresh"
        )
        # Job keys ("sessions", "pr:<branch>", ...) submitted but not yet drained
        self._in_flight: set[str] = set()
        self._file_batches = 0
        self.failures: dict[str, int] = {source: 0 for source in SOURCES}
        self.last_errors: dict[str, str] = {}

    # -- dispatch --

    def _submit(
        self,
        job: str,
        source: str,
        fn: Callable[[], Message],
        branches: Iterable[str] = (),
    ) -> Future[None]:
        branch_list = list(branches)

        def run() -> None:
            try:
                message: Message = fn()
            except Exception as e:
                message = JobFailed(
                    source=source, error=f"{type(e).__name__}: {e}", branches=branch_list
                )
            self._results.put((job, message))

        self._in_flight.add(job)
        return self._executor.submit(run)

    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    def tick(self) -> list[Future[None]]:
        """Start a refresh of every source. Returns the submitted jobs."""
        futures: list[Future[None]] = []

        def submit(job: str, source: str, fn: Callable[[], Message], branches=()) -> None:
            if job in self._in_flight:
                return
            futures.append(self._submit(job, source, fn, branches))

        store = self.tracker.store
        taken_at = self.tracker.now()
        submit(
            "status-records",
            "activity",
            lambda: StatusRecordsLoaded(store.snapshot(), taken_at),
        )
        submit("sessions", "sessions", lambda: SessionsLoaded(self._list_sessions()))
        submit("tasks", "tasks", lambda: TasksLoaded(self._load_tasks()))

        if self.linear_client is not None:
            identifiers = sorted(
                {t.linear_issue_id for t in self.tasks if t.linear_issue_id}
            )
            if identifiers:
                client = self.linear_client
                submit(
                    "linear",
                    "linear",
                    lambda: LinearLoaded(client.fetch_issue_statuses(identifiers)),
                )

        if self.repo_path is None:
            return futures

        repo_path = self.repo_path
        submit(
            "worktrees",
            "worktrees",
            lambda: WorktreesLoaded(self._list_worktrees(repo_path)),
        )

        worktrees = [wt for wt in self.pr_cache.worktrees if wt.path]
        if worktrees:
            reader = self.plan_reader
            submit(
                "plans",
                "plans",
                lambda: PlansLoaded(
                    {wt.branch for wt in worktrees if reader.has_plan(wt.path, wt.branch)}
                ),
            )

        self.pr_cache.cleanup_no_pr_cache()
        # Snapshot before dispatch; results arriving later must not change it
        missing = self.pr_cache.branches_needing_pr_lookup()

        if self.config.pr_batch:
            # One query returns every recent PR, so it also refreshes known ones
            submit(
                "pr-batch",
                "github",
                lambda: PrBatchLoaded(missing, self._fetch_all_prs(repo_path)),
                missing,
            )
            return futures

        stale = [
            b for b in self.pr_cache.branches_needing_pr_refresh() if b not in missing
        ]
        for branch in missing + stale:
            submit(
                f"pr:{branch}",
                "github",
                lambda b=branch: PrLoaded(b, self._fetch_pr(b, repo_path)),
                [branch],
            )
        return futures

    # -- apply --

    def _read_changed_files(self) -> Future[None] | None:
        """Hand the watcher's pending paths to a worker for reading."""
        paths: list[Path] = []
        while True:
            try:
                paths.append(self.file_changes.get_nowait())
            except queue.Empty:
                break
        if not paths:
            return None

        self._file_batches += 1
        store = self.tracker.store
        return self._submit(
            f"status-files:{self._file_batches}",
            "activity",
            lambda: StatusFilesChanged(store.read_many(paths)),
        )

    def drain(self) -> int:
        """Apply finished jobs and re-evaluate session activity.

        Never reads files itself: changed status files are queued for a
        worker and applied by a later drain. Returns the number of messages
        applied plus the number of sessions whose activity changed.
        """
        applied = 0
        while True:
            try:
                job, message = self._results.get_nowait()
            except queue.Empty:
                break
            self._in_flight.discard(job)
            self._apply(message)
            applied += 1

        self._read_changed_files()
        # Elapsed time alone moves sessions from thinking to waiting to idle
        return applied + self.tracker.refresh_sessions(self.sessions_state.sessions)

    def _succeeded(self, source: str) -> None:
        self.failures[source] = 0
        self.last_errors.pop(source, None)

    def _apply(self, message: Message) -> None:
        if isinstance(message, JobFailed):
            self._apply_failure(message)
        elif isinstance(message, StatusRecordsLoaded):
            self.tracker.set_records(message.records, taken_at=message.taken_at)
            self._succeeded("activity")
        elif isinstance(message, StatusFilesChanged):
            for record in message.records:
                self.tracker.apply_record(record)
            self._succeeded("activity")
        elif isinstance(message, SessionsLoaded):
            # Carry activity forward before anything reads it
            self.sessions_state.set_sessions(message.sessions)
            self.tracker.refresh_sessions(self.sessions_state.sessions)
            self._succeeded("sessions")
        elif isinstance(message, WorktreesLoaded):
            self.pr_cache.set_worktrees(message.worktrees)
            self._succeeded("worktrees")
        elif isinstance(message, TasksLoaded):
            self.tasks = message.tasks
            self._succeeded("tasks")
        elif isinstance(message, LinearLoaded):
            self.linear_statuses = message.statuses
            self._succeeded("linear")
        elif isinstance(message, PrLoaded):
            if message.pr is None:
                if self.pr_cache.pr_for_branch(message.branch) is not None:
                    logger.info("PR for %s is no longer found", message.branch)
                    self.pr_cache.clear_branch_pr(message.branch)
                self.pr_cache.mark_no_pr(message.branch)
            else:
                self.pr_cache.set_branch_pr(message.branch, message.pr)
            self._succeeded("github")
        elif isinstance(message, PrBatchLoaded):
            self.pr_cache.update_branch_prs(message.prs)
            for branch in message.branches:
                if branch not in message.prs:
                    self.pr_cache.mark_no_pr(branch)
            self._succeeded("github")
        elif isinstance(message, PlansLoaded):
            self.plan_branches = message.branches
            self._succeeded("plans")

    def _apply_failure(self, message: JobFailed) -> None:
        source = message.source
        self.failures[source] += 1
        self.last_errors[source] = message.error
        if message.branches:
            logger.warning(
                "%s refresh failed for %s: %s",
                source,
                ", ".join(message.branches),
                message.error,
            )
        else:
            logger.warning("%s refresh failed: %s", source, message.error)
        if source == "sessions":
            self.sessions_state.set_error(message.error)

    # -- queries --

    def warnings(self) -> list[str]:
        """One message per source that has failed too many times in a row."""
        threshold = self.config.failure_warning_threshold
        return [
            f"{source}: {count} consecutive failures ({self.last_errors.get(source, '')})"
            for source, count in self.failures.items()
            if count >= threshold
        ]

    @property
    def sessions(self) -> list[Session]:
        return self.sessions_state.sessions

    def effective_status(self, task: Task) -> TaskStatus:
        return resolve_task_status(
            task,
            self.pr_cache.branch_prs,
            self.pr_cache.worktrees,
            self.linear_statuses,
        )

    def describe(self, task: Task) -> TaskView:
        worktree = find_worktree_for_task(task, self.pr_cache.worktrees)
        pr = find_pr_for_task(task, worktree, self.pr_cache.branch_prs)
        linear_status = (
            self.linear_statuses.get(task.linear_issue_id)
            if task.linear_issue_id
            else None
        )
        branch = (
            worktree.branch
            if worktree is not None
            else task_title_to_branch(task.title, task.linear_issue_id)
        )
        return TaskView(
            task=task,
            status=effective_status(task, pr, worktree is not None, linear_status),
            worktree=worktree,
            pr=pr,
            linear_status=linear_status,
            session=self.sessions_state.session_for_branch(branch),
            has_plan=worktree is not None and worktree.branch in self.plan_branches,
        )

    def tasks_in_column(self, column: TaskStatus, search: str = "") -> list[Task]:
        return tasks_in_column(
            self.tasks,
            column,
            self.pr_cache.branch_prs,
            self.pr_cache.worktrees,
            self.linear_statuses,
            search=search,
        )

    # -- lifecycle --

    def start(self) -> None:
        self.watcher.start()

    def run(
        self,
        stop_event: threading.Event,
        interval: float | None = None,
        on_change: Callable[[RefreshLoop], None] | None = None,
    ) -> None:
        """Tick every ``interval`` seconds and drain in between until stopped.

        ``on_change`` is called after every drain that applied something.
        """
        interval = interval if interval is not None else self.config.refresh_interval
        self.start()
        next_tick = 0.0
        while not stop_event.is_set():
            now = time.monotonic()
            if now >= next_tick:
                self.tick()
                next_tick = now + interval
            if self.drain() and on_change is not None:
                on_change(self)
            stop_event.wait(self.config.watch_interval)

    def close(self) -> None:
        self.watcher.stop()
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self.linear_client is not None:
            self.linear_client.close()
