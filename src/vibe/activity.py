"""Claude Code activity detection from statusline status files.

A statusline script inside each Claude Code session writes a small JSON
document per working directory into the state directory. Each write is an
update event: a session whose file changed a moment ago is thinking, one that
changed within the waiting threshold is waiting for the user, and anything
older is idle. Before any update event has been observed for a directory, the
``timestamp`` field inside the file is used instead.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import queue
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any

from vibe.models import ActivityResult, ActivityState, Session, StatusRecord

logger = logging.getLogger(__name__)

THINKING_THRESHOLD = 5.0
WAITING_THRESHOLD = 120.0


def default_state_dir() -> Path:
    """Return ~/.vibe/claude-activity, or /tmp/claude-activity without a home."""
    try:
        return Path.home() / ".vibe" / "claude-activity"
    except RuntimeError:
        return Path("/tmp/claude-activity")


def hash_working_dir(working_dir: str) -> str:
    """Conventional status file stem for a working directory.

    Only used for naming files; records are always matched on their
    ``working_dir`` content.
    """
    return hashlib.md5(working_dir.encode()).hexdigest()[:16]


def _optional(data: dict[str, Any], key: str, types: tuple[type, ...]) -> Any:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, types):
        raise ValueError(f"'{key}' has unexpected type {type(value).__name__}")
    return value


def _optional_count(data: dict[str, Any], key: str) -> int | None:
    """Counters may arrive as JSON floats; keep their integer part."""
    value = _optional(data, key, (int, float))
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    return value


def parse_status_record(data: Any) -> StatusRecord | None:
    """Build a StatusRecord from decoded JSON, or None if it is malformed.

    Missing optional fields and explicit nulls are equivalent; unknown
    fields are ignored.
    """
    if not isinstance(data, dict):
        return None

    working_dir = data.get("working_dir")
    timestamp = data.get("timestamp")
    if not isinstance(working_dir, str):
        return None
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        return None

    try:
        used_percentage = _optional(data, "used_percentage", (int, float))
        return StatusRecord(
            working_dir=working_dir,
            timestamp=timestamp,
            session_id=_optional(data, "session_id", (str,)),
            input_tokens=_optional_count(data, "input_tokens"),
            output_tokens=_optional_count(data, "output_tokens"),
            used_percentage=float(used_percentage)
            if used_percentage is not None
            else None,
            api_duration_ms=_optional_count(data, "api_duration_ms"),
        )
    except ValueError:
        return None


def session_matches_working_dir(session_name: str, working_dir: str) -> bool:
    """Check whether a session name belongs to a working directory.

    The last path component equal to the session name (the usual worktree
    layout) is checked first; otherwise any occurrence of the name inside the
    path counts. Both checks ignore case.
    """
    normalized_session = session_name.lower()
    last_component = working_dir.rstrip("/").rsplit("/", 1)[-1]
    if last_component.lower() == normalized_session:
        return True
    return normalized_session in working_dir.lower()


class StatusFileStore:
    """Reads status records from the state directory."""

    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = state_dir if state_dir is not None else default_state_dir()

    def paths(self) -> list[Path]:
        """List status files. Raises OSError if the directory is unreadable."""
        return sorted(
            p for p in self.state_dir.iterdir() if p.suffix == ".json" and p.is_file()
        )

    def read(self, path: Path) -> StatusRecord | None:
        try:
            content = path.read_text()
        except OSError as e:
            logger.debug("Cannot read status file %s: %s", path, e)
            return None
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.debug("Skipping malformed status file %s: %s", path, e)
            return None
        record = parse_status_record(data)
        if record is None:
            logger.debug("Skipping status file %s with invalid fields", path)
        return record

    def records(self) -> Iterator[StatusRecord]:
        """Yield every parseable record. Raises OSError for an unreadable dir."""
        for path in self.paths():
            record = self.read(path)
            if record is not None:
                yield record

    def snapshot(self) -> list[StatusRecord]:
        """Every parseable record, or nothing when the directory is unreadable."""
        try:
            return list(self.records())
        except OSError as e:
            logger.debug("Activity dir %s unavailable: %s", self.state_dir, e)
            return []

    def read_many(self, paths: Iterable[Path]) -> list[StatusRecord]:
        records = []
        for path in paths:
            record = self.read(Path(path))
            if record is not None:
                records.append(record)
        return records


def _find_record(
    records: Iterable[StatusRecord], session_name: str
) -> StatusRecord | None:
    for record in records:
        if session_matches_working_dir(session_name, record.working_dir):
            return record
    return None


class ActivityTracker:
    """Classifies sessions as thinking, waiting or idle.

    Holds the last observed update instant per working directory and the
    latest record read for it. Only the methods that take a path or scan the
    store touch the disk; ``RefreshLoop`` reads files on its workers and
    hands the records to ``set_records``/``apply_record``. All methods are
    meant to be called from a single control thread.
    """

    def __init__(
        self,
        store: StatusFileStore | None = None,
        thinking_threshold: float = THINKING_THRESHOLD,
        waiting_threshold: float = WAITING_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else StatusFileStore()
        self.thinking_threshold = thinking_threshold
        self.waiting_threshold = waiting_threshold
        self._clock = clock
        self._last_update: dict[str, float] = {}
        self.records: dict[str, StatusRecord] = {}

    def now(self) -> float:
        return self._clock()

    def record_update(self, working_dir: str) -> None:
        self._last_update[working_dir] = self._clock()

    def forget(self, working_dir: str) -> None:
        self._last_update.pop(working_dir, None)

    def last_update(self, working_dir: str) -> float | None:
        return self._last_update.get(working_dir)

    def determine_state(self, record: StatusRecord) -> ActivityResult:
        now = self._clock()
        last = self._last_update.get(record.working_dir)

        if last is not None:
            elapsed = now - last
            if elapsed < self.thinking_threshold:
                state = ActivityState.THINKING
            elif elapsed < self.waiting_threshold:
                state = ActivityState.WAITING
            else:
                state = ActivityState.IDLE
        else:
            # No update event seen yet: fall back to the file's own timestamp
            age = max(0.0, now - record.timestamp)
            if age < self.waiting_threshold:
                state = ActivityState.WAITING
            else:
                state = ActivityState.IDLE

        return ActivityResult(state=state, context_percentage=record.used_percentage)

    def get_activity_for_session(self, session_name: str) -> ActivityResult:
        """Scan the store and classify the first record matching the session."""
        record = _find_record(self.store.snapshot(), session_name)
        if record is None:
            return ActivityResult()
        return self.determine_state(record)

    def set_records(
        self, records: Iterable[StatusRecord], taken_at: float | None = None
    ) -> None:
        """Replace the cached records with a full scan of the state directory.

        A working directory whose file is gone is forgotten, unless an update
        for it was applied after ``taken_at`` (the scan started earlier).
        """
        fresh = {}
        for record in records:
            fresh.setdefault(record.working_dir, record)
        for working_dir, last in list(self._last_update.items()):
            if working_dir in fresh:
                continue
            if taken_at is not None and last >= taken_at:
                if working_dir in self.records:
                    fresh[working_dir] = self.records[working_dir]
                continue
            self.forget(working_dir)
        self.records = fresh

    def apply_record(self, record: StatusRecord) -> ActivityResult:
        """Register an update event carrying a freshly read record."""
        self.record_update(record.working_dir)
        self.records[record.working_dir] = record
        return self.determine_state(record)

    def update_from_file(self, path: Path) -> ActivityResult | None:
        """Register a change notification for one status file."""
        record = self.store.read(Path(path))
        if record is None:
            return None
        return self.apply_record(record)

    def activity_for_session(self, session_name: str) -> ActivityResult:
        """Classify a session from the cached records without reading files."""
        record = _find_record(self.records.values(), session_name)
        if record is None:
            return ActivityResult()
        return self.determine_state(record)

    def refresh_sessions(self, sessions: Iterable[Session]) -> int:
        """Re-evaluate every session from the cached records.

        Returns how many sessions changed state or context percentage.
        """
        changed = 0
        for session in sessions:
            result = self.activity_for_session(session.name)
            if (session.activity_state, session.context_percentage) != (
                result.state,
                result.context_percentage,
            ):
                changed += 1
            session.activity_state = result.state
            session.context_percentage = result.context_percentage
        return changed

    def update_sessions(self, sessions: Iterable[Session]) -> None:
        """Scan the store once, then classify every session in place."""
        self.set_records(self.store.snapshot())
        self.refresh_sessions(sessions)


def count_active_sessions(sessions: Iterable[Session]) -> int:
    """Count sessions that are thinking or waiting for the user."""
    return sum(
        1
        for s in sessions
        if s.activity_state in (ActivityState.THINKING, ActivityState.WAITING)
    )


class ActivityWatcher:
    """Background observer that reports changed status files.

    Polls the state directory and pushes absolute paths of new or modified
    ``.json`` files into ``out_queue``. When the queue is full the path is
    dropped instead of blocking; the file stays unseen, so the next scan
    reports it again.
    """

    def __init__(
        self,
        state_dir: Path,
        out_queue: queue.Queue[Path],
        poll_interval: float = 0.5,
    ) -> None:
        self.state_dir = state_dir
        self.out_queue = out_queue
        self.poll_interval = poll_interval
        self.dropped = 0
        self._seen: dict[Path, int] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _snapshot(self) -> dict[Path, int]:
        mtimes: dict[Path, int] = {}
        try:
            entries = list(self.state_dir.iterdir())
        except OSError:
            return mtimes
        for path in entries:
            if path.suffix != ".json":
                continue
            try:
                mtimes[path.resolve()] = path.stat().st_mtime_ns
            except OSError:
                continue  # removed between listing and stat
        return mtimes

    def prime(self) -> None:
        """Mark every existing file as seen without reporting it."""
        self._seen = self._snapshot()

    def scan_once(self) -> list[Path]:
        """Compare against the last scan and queue changed paths."""
        current = self._snapshot()
        delivered: list[Path] = []
        for path, mtime in current.items():
            if self._seen.get(path) == mtime:
                continue
            try:
                self.out_queue.put_nowait(path)
            except queue.Full:
                self.dropped += 1
                continue
            self._seen[path] = mtime
            delivered.append(path)

        for path in list(self._seen):
            if path not in current:
                del self._seen[path]
        return delivered

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            self.scan_once()

    def start(self) -> None:
        if self._thread is not None:
            return
        self.prime()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="vibe-activity-watcher", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
