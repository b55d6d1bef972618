from __future__ import annotations

import re
import subprocess

from vibe.models import Session

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

# Longer names make zellij hang when sessions are started from scripts
MAX_SESSION_NAME = 36

# stderr when there are no sessions; wording differs between zellij versions
NO_SESSION_MARKERS = ("No active sessions", "No active zellij sessions")


class ZellijUnavailableError(Exception):
    """Raised when `zellij list-sessions` fails for a reason other than no sessions."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(
            f"zellij unavailable: {reason}" if reason else "zellij unavailable."
        )


def _run(args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
    return subprocess.run(args, capture_output=True, text=True, check=check)


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def sanitize_session_name(branch: str) -> str:
    """Turn a branch name into a zellij session name.

    Anything other than letters, digits, '-' and '_' becomes '-', and the
    result is capped at 36 characters.
    """
    name = re.sub(r"[^\w-]", "-", branch).strip("-")
    if len(name) > MAX_SESSION_NAME:
        name = name[:MAX_SESSION_NAME].rstrip("-")
    return name


def session_name_for_branch(branch: str) -> str:
    return sanitize_session_name(branch)


def parse_session_line(line: str) -> Session | None:
    """Parse one line of `zellij list-sessions`.

    Lines look like ``name [Created 3m 5s ago] (current)`` or, for a dead
    session, ``name [Created 2days ago] (EXITED - attach to resurrect)``.
    """
    clean = strip_ansi(line).strip()
    if not clean:
        return None
    name = clean.split("[", 1)[0].strip()
    if not name:
        return None
    return Session(
        name=name,
        is_current="(current)" in clean,
        is_dead="EXITED" in clean,
    )


def list_sessions() -> list[Session]:
    """List zellij sessions. Activity fields are left at their defaults."""
    try:
        result = _run(["zellij", "list-sessions"], check=False)
    except FileNotFoundError as e:
        raise ZellijUnavailableError("zellij is not installed") from e

    if result.returncode != 0:
        # zellij exits non-zero when there are no sessions at all
        stderr = strip_ansi(result.stderr).strip()
        if not stderr or any(m in stderr for m in NO_SESSION_MARKERS):
            return []
        raise ZellijUnavailableError(stderr)

    sessions = []
    for line in result.stdout.splitlines():
        session = parse_session_line(line)
        if session is not None:
            sessions.append(session)
    return sessions
