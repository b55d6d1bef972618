from __future__ import annotations

import json
import os
import queue

import pytest

from vibe.activity import (
    ActivityTracker,
    ActivityWatcher,
    StatusFileStore,
    count_active_sessions,
    hash_working_dir,
    parse_status_record,
    session_matches_working_dir,
)
from vibe.models import ActivityResult, ActivityState, Session, StatusRecord


def _write_status(state_dir, working_dir, timestamp, **extra):
    path = state_dir / f"{hash_working_dir(working_dir)}.json"
    path.write_text(json.dumps({"working_dir": working_dir, "timestamp": timestamp, **extra}))
    return path


def _tracker(tmp_path, clock) -> ActivityTracker:
    return ActivityTracker(StatusFileStore(tmp_path), clock=clock)


# -- Session matching --


@pytest.mark.parametrize(
    "session, working_dir, expected",
    [
        ("feature-branch", "/Users/t/worktrees/feature-branch", True),
        ("my-feature", "/Users/t/my-feature-worktree", True),
        ("other-branch", "/Users/t/feature-branch", False),
        ("Feature-Branch", "/users/t/worktrees/FEATURE-BRANCH", True),
        ("MY-FEATURE", "/Users/t/my-feature-worktree", True),
        ("feature-branch", "/Users/t/worktrees/feature-branch/", True),
    ],
)
def test_session_matches_working_dir(session, working_dir, expected):
    assert session_matches_working_dir(session, working_dir) is expected


def test_hash_working_dir():
    digest = hash_working_dir("/Users/t/worktrees/feature-branch")
    assert len(digest) == 16
    assert digest == hash_working_dir("/Users/t/worktrees/feature-branch")
    assert digest != hash_working_dir("/Users/t/worktrees/other")


# -- Record parsing --


def test_parse_status_record_full():
    record = parse_status_record(
        {
            "working_dir": "/w/a",
            "timestamp": 100,
            "session_id": "abc",
            "input_tokens": 10,
            "output_tokens": 20,
            "used_percentage": 75.5,
            "api_duration_ms": 300,
            "model": "ignored",
        }
    )
    assert record == StatusRecord(
        working_dir="/w/a",
        timestamp=100,
        session_id="abc",
        input_tokens=10,
        output_tokens=20,
        used_percentage=75.5,
        api_duration_ms=300,
    )


def test_parse_status_record_null_equals_absent():
    assert parse_status_record(
        {"working_dir": "/w/a", "timestamp": 1, "used_percentage": None}
    ) == parse_status_record({"working_dir": "/w/a", "timestamp": 1})


@pytest.mark.parametrize(
    "data",
    [
        {"timestamp": 1},
        {"working_dir": "/w/a"},
        {"working_dir": 5, "timestamp": 1},
        {"working_dir": "/w/a", "timestamp": "1"},
        {"working_dir": "/w/a", "timestamp": True},
        {"working_dir": "/w/a", "timestamp": 1, "input_tokens": "many"},
        ["not", "an", "object"],
    ],
)
def test_parse_status_record_malformed(data):
    assert parse_status_record(data) is None


def test_used_percentage_int_becomes_float():
    record = parse_status_record({"working_dir": "/w", "timestamp": 1, "used_percentage": 40})
    assert record is not None
    assert record.used_percentage == 40.0


def test_float_counters_are_accepted():
    record = parse_status_record(
        {
            "working_dir": "/w/a",
            "timestamp": 1,
            "input_tokens": 1500.0,
            "output_tokens": 20.7,
            "api_duration_ms": 300.0,
        }
    )
    assert record is not None
    assert record.input_tokens == 1500
    assert record.output_tokens == 20
    assert record.api_duration_ms == 300
    assert isinstance(record.input_tokens, int)


def test_non_finite_counter_is_dropped():
    record = parse_status_record(
        json.loads('{"working_dir": "/w/a", "timestamp": 1, "input_tokens": NaN}')
    )
    assert record is not None
    assert record.input_tokens is None


# -- Classification with recorded updates --


@pytest.mark.parametrize(
    "elapsed, expected",
    [
        (0, ActivityState.THINKING),
        (4.999, ActivityState.THINKING),
        (5, ActivityState.WAITING),
        (60, ActivityState.WAITING),
        (119.999, ActivityState.WAITING),
        (120, ActivityState.IDLE),
        (3600, ActivityState.IDLE),
    ],
)
def test_determine_state_after_update(tmp_path, clock, elapsed, expected):
    tracker = _tracker(tmp_path, clock)
    record = StatusRecord(working_dir="/w/a", timestamp=0, used_percentage=12.0)
    tracker.record_update("/w/a")
    clock.advance(elapsed)
    assert tracker.determine_state(record).state == expected


@pytest.mark.parametrize(
    "age, expected",
    [
        (0, ActivityState.WAITING),
        (2, ActivityState.WAITING),
        (119, ActivityState.WAITING),
        (120, ActivityState.IDLE),
        (10_000, ActivityState.IDLE),
        (-30, ActivityState.WAITING),  # timestamp in the future
    ],
)
def test_determine_state_from_timestamp(tmp_path, clock, age, expected):
    tracker = _tracker(tmp_path, clock)
    record = StatusRecord(working_dir="/w/a", timestamp=int(clock.now - age))
    assert tracker.determine_state(record).state == expected


def test_fallback_never_reports_thinking(tmp_path, clock):
    tracker = _tracker(tmp_path, clock)
    record = StatusRecord(working_dir="/w/a", timestamp=int(clock.now))
    assert tracker.determine_state(record).state == ActivityState.WAITING


@pytest.mark.parametrize("elapsed", [0, 30, 500])
def test_context_percentage_passes_through(tmp_path, clock, elapsed):
    tracker = _tracker(tmp_path, clock)
    record = StatusRecord(working_dir="/w/a", timestamp=0, used_percentage=75.5)
    tracker.record_update("/w/a")
    clock.advance(elapsed)
    assert tracker.determine_state(record).context_percentage == 75.5


def test_record_update_idempotent(tmp_path, clock):
    record = StatusRecord(working_dir="/w/a", timestamp=0)

    once = _tracker(tmp_path, clock)
    once.record_update("/w/a")

    many = _tracker(tmp_path, clock)
    many.record_update("/w/a")
    many.record_update("/w/a")
    many.record_update("/w/a")

    clock.advance(7)
    assert once.determine_state(record) == many.determine_state(record)


def test_record_update_latest_instant_wins(tmp_path, clock):
    tracker = _tracker(tmp_path, clock)
    record = StatusRecord(working_dir="/w/a", timestamp=0)
    tracker.record_update("/w/a")
    clock.advance(60)
    tracker.record_update("/w/a")
    clock.advance(1)
    assert tracker.determine_state(record).state == ActivityState.THINKING


def test_forget_falls_back_to_timestamp(tmp_path, clock):
    tracker = _tracker(tmp_path, clock)
    record = StatusRecord(working_dir="/w/a", timestamp=0)
    tracker.record_update("/w/a")
    tracker.forget("/w/a")
    assert tracker.last_update("/w/a") is None
    assert tracker.determine_state(record).state == ActivityState.IDLE


def test_custom_thresholds(tmp_path, clock):
    tracker = ActivityTracker(
        StatusFileStore(tmp_path), thinking_threshold=1, waiting_threshold=10, clock=clock
    )
    record = StatusRecord(working_dir="/w/a", timestamp=0)
    tracker.record_update("/w/a")
    clock.advance(2)
    assert tracker.determine_state(record).state == ActivityState.WAITING
    clock.advance(10)
    assert tracker.determine_state(record).state == ActivityState.IDLE


# -- Store scanning --


def test_get_activity_for_session(tmp_path, clock):
    _write_status(tmp_path, "/Users/t/worktrees/feature-branch", int(clock.now) - 10, used_percentage=42.0)
    tracker = _tracker(tmp_path, clock)

    result = tracker.get_activity_for_session("feature-branch")
    assert result == ActivityResult(state=ActivityState.WAITING, context_percentage=42.0)


def test_get_activity_for_session_no_match(tmp_path, clock):
    _write_status(tmp_path, "/Users/t/worktrees/feature-branch", int(clock.now))
    assert _tracker(tmp_path, clock).get_activity_for_session("other") == ActivityResult()


def test_get_activity_missing_directory(tmp_path, clock):
    tracker = ActivityTracker(StatusFileStore(tmp_path / "missing"), clock=clock)
    assert tracker.get_activity_for_session("anything") == ActivityResult(
        state=ActivityState.UNKNOWN, context_percentage=None
    )


def test_malformed_files_are_skipped(tmp_path, clock):
    (tmp_path / "aaa.json").write_text("{not json")
    (tmp_path / "bbb.json").write_text(json.dumps({"working_dir": "/w/feature"}))
    (tmp_path / "notes.txt").write_text("ignored")
    _write_status(tmp_path, "/w/feature", int(clock.now) - 500)

    records = list(StatusFileStore(tmp_path).records())
    assert [r.working_dir for r in records] == ["/w/feature"]
    result = _tracker(tmp_path, clock).get_activity_for_session("feature")
    assert result.state == ActivityState.IDLE


def test_update_from_file_records_event(tmp_path, clock):
    path = _write_status(tmp_path, "/w/feature", int(clock.now) - 1000, used_percentage=5.0)
    tracker = _tracker(tmp_path, clock)

    result = tracker.update_from_file(path)
    assert result == ActivityResult(state=ActivityState.THINKING, context_percentage=5.0)
    assert tracker.last_update("/w/feature") == clock.now

    clock.advance(30)
    assert tracker.get_activity_for_session("feature").state == ActivityState.WAITING


def test_update_from_file_unparseable(tmp_path, clock):
    path = tmp_path / "bad.json"
    path.write_text("][")
    assert _tracker(tmp_path, clock).update_from_file(path) is None
    assert _tracker(tmp_path, clock).update_from_file(tmp_path / "gone.json") is None


def test_update_sessions(tmp_path, clock):
    _write_status(tmp_path, "/w/alpha", int(clock.now), used_percentage=10.0)
    sessions = [Session(name="alpha"), Session(name="beta")]
    _tracker(tmp_path, clock).update_sessions(sessions)

    assert sessions[0].activity_state == ActivityState.WAITING
    assert sessions[0].context_percentage == 10.0
    assert sessions[1].activity_state == ActivityState.UNKNOWN
    assert sessions[1].context_percentage is None


def test_count_active_sessions():
    sessions = [
        Session(name="a", activity_state=ActivityState.THINKING),
        Session(name="b", activity_state=ActivityState.WAITING),
        Session(name="c", activity_state=ActivityState.IDLE),
        Session(name="d"),
    ]
    assert count_active_sessions(sessions) == 2
    assert count_active_sessions([]) == 0


# -- Watcher --


def _bump_mtime(path, ns):
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + ns))


def test_watcher_ignores_existing_files_after_prime(tmp_path):
    _write_status(tmp_path, "/w/a", 1)
    watcher = ActivityWatcher(tmp_path, queue.Queue())
    watcher.prime()
    assert watcher.scan_once() == []


def test_watcher_reports_new_and_modified_files(tmp_path):
    existing = _write_status(tmp_path, "/w/a", 1)
    out: queue.Queue = queue.Queue()
    watcher = ActivityWatcher(tmp_path, out)
    watcher.prime()

    created = _write_status(tmp_path, "/w/b", 2)
    assert watcher.scan_once() == [created.resolve()]

    _bump_mtime(existing, 1_000_000_000)
    assert watcher.scan_once() == [existing.resolve()]
    assert watcher.scan_once() == []

    assert out.get_nowait() == created.resolve()
    assert out.get_nowait() == existing.resolve()
    assert out.empty()


def test_watcher_ignores_non_json(tmp_path):
    watcher = ActivityWatcher(tmp_path, queue.Queue())
    watcher.prime()
    (tmp_path / "status.tmp").write_text("{}")
    assert watcher.scan_once() == []


def test_watcher_drops_when_queue_full(tmp_path):
    out: queue.Queue = queue.Queue(maxsize=1)
    out.put_nowait(tmp_path / "placeholder.json")
    watcher = ActivityWatcher(tmp_path, out)
    watcher.prime()

    path = _write_status(tmp_path, "/w/a", 1)
    assert watcher.scan_once() == []
    assert watcher.dropped == 1

    # Still unseen, so it is delivered once there is room
    out.get_nowait()
    assert watcher.scan_once() == [path.resolve()]


def test_watcher_forgets_removed_files(tmp_path):
    path = _write_status(tmp_path, "/w/a", 1)
    watcher = ActivityWatcher(tmp_path, queue.Queue())
    watcher.prime()
    path.unlink()
    assert watcher.scan_once() == []

    _write_status(tmp_path, "/w/a", 1)
    assert watcher.scan_once() == [path.resolve()]


def test_watcher_missing_directory(tmp_path):
    watcher = ActivityWatcher(tmp_path / "missing", queue.Queue())
    watcher.prime()
    assert watcher.scan_once() == []


def test_watcher_thread_reports_changes(tmp_path):
    out: queue.Queue = queue.Queue()
    watcher = ActivityWatcher(tmp_path, out, poll_interval=0.01)
    watcher.start()
    try:
        path = _write_status(tmp_path, "/w/a", 1)
        assert out.get(timeout=5) == path.resolve()
    finally:
        watcher.stop()
    assert watcher._thread is None


# -- Cached records --


def test_snapshot_and_read_many(tmp_path):
    a = _write_status(tmp_path, "/w/a", 1)
    (tmp_path / "bad.json").write_text("{")
    store = StatusFileStore(tmp_path)

    assert [r.working_dir for r in store.snapshot()] == ["/w/a"]
    assert [r.working_dir for r in store.read_many([a, tmp_path / "bad.json"])] == ["/w/a"]
    assert StatusFileStore(tmp_path / "missing").snapshot() == []


def test_activity_for_session_uses_cached_records(tmp_path, clock):
    tracker = _tracker(tmp_path, clock)
    assert tracker.activity_for_session("alpha") == ActivityResult()

    tracker.set_records([StatusRecord(working_dir="/w/alpha", timestamp=int(clock.now))])
    assert tracker.activity_for_session("alpha").state == ActivityState.WAITING

    tracker.apply_record(StatusRecord(working_dir="/w/alpha", timestamp=0, used_percentage=9.0))
    assert tracker.activity_for_session("alpha") == ActivityResult(
        state=ActivityState.THINKING, context_percentage=9.0
    )


def test_set_records_forgets_removed_files(tmp_path, clock):
    tracker = _tracker(tmp_path, clock)
    tracker.apply_record(StatusRecord(working_dir="/w/a", timestamp=0))
    tracker.apply_record(StatusRecord(working_dir="/w/b", timestamp=0))

    clock.advance(1)
    tracker.set_records([StatusRecord(working_dir="/w/a", timestamp=0)], taken_at=clock.now)

    assert tracker.last_update("/w/a") is not None
    assert tracker.last_update("/w/b") is None
    assert list(tracker.records) == ["/w/a"]
    assert tracker.activity_for_session("b") == ActivityResult()


def test_set_records_keeps_updates_newer_than_scan(tmp_path, clock):
    tracker = _tracker(tmp_path, clock)
    taken_at = clock.now
    clock.advance(1)
    # Created after the scan started, so the scan did not see it
    tracker.apply_record(StatusRecord(working_dir="/w/new", timestamp=0))

    tracker.set_records([], taken_at=taken_at)
    assert tracker.last_update("/w/new") is not None
    assert tracker.activity_for_session("new").state == ActivityState.THINKING


def test_refresh_sessions_counts_changes(tmp_path, clock):
    tracker = _tracker(tmp_path, clock)
    tracker.apply_record(StatusRecord(working_dir="/w/alpha", timestamp=0))
    sessions = [Session(name="alpha"), Session(name="beta")]

    assert tracker.refresh_sessions(sessions) == 1
    assert sessions[0].activity_state == ActivityState.THINKING
    assert tracker.refresh_sessions(sessions) == 0

    clock.advance(5)
    assert tracker.refresh_sessions(sessions) == 1
    assert sessions[0].activity_state == ActivityState.WAITING
