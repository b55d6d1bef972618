"""Claude Code plan files for branches.

Claude Code logs every session as JSONL under
``<claude_dir>/projects/<sanitized project path>/``. Session entries carry
the git branch and either an explicit ``planFilePath`` or a session ``slug``
whose plan lives at ``<claude_dir>/plans/<slug>.md``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from vibe.config import DEFAULT_CLAUDE_DIR

logger = logging.getLogger(__name__)


def sanitize_project_path(path: str) -> str:
    """Directory name Claude Code uses for a project path.

    >>> sanitize_project_path("/home/me/vibe.fix-login")
    '-home-me-vibe-fix-login'
    """
    return path.replace("/", "-").replace(".", "-")


def _nonempty(entry: dict, key: str) -> str | None:
    value = entry.get(key)
    if isinstance(value, str) and value:
        return value
    return None


def extract_plan_from_session(path: Path, plans_dir: Path) -> tuple[str, Path] | None:
    """Return (branch, plan path) recorded in one session log.

    The last explicit ``planFilePath`` seen after a branch wins; without one,
    the plan derived from the session slug is used if that file exists.
    Lines that are not JSON objects are skipped.
    """
    branch: str | None = None
    slug: str | None = None
    result: tuple[str, Path] | None = None
    try:
        with open(path) as f:
            for line_no, line in enumerate(f, 1):
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed line %d in %s", line_no, path)
                    continue
                if not isinstance(entry, dict):
                    continue
                branch = _nonempty(entry, "gitBranch") or branch
                slug = _nonempty(entry, "slug") or slug
                plan_path = _nonempty(entry, "planFilePath")
                if plan_path is not None and branch is not None:
                    result = (branch, Path(plan_path))
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Cannot read session log %s: %s", path, e)
        return None

    if result is None and branch is not None and slug is not None:
        derived = plans_dir / f"{slug}.md"
        if derived.exists():
            return branch, derived
    return result


class PlanReader:
    def __init__(self, claude_dir: Path = DEFAULT_CLAUDE_DIR) -> None:
        self.projects_dir = claude_dir / "projects"
        self.plans_dir = claude_dir / "plans"

    def find_plan_path(self, project_path: str, branch: str) -> Path | None:
        """Plan file of the newest session in ``project_path`` on ``branch``."""
        project_dir = self.projects_dir / sanitize_project_path(project_path)
        try:
            logs = [
                (p.stat().st_mtime, p)
                for p in project_dir.iterdir()
                if p.suffix == ".jsonl"
            ]
        except OSError:
            return None

        for _, log in sorted(logs, reverse=True):
            found = extract_plan_from_session(log, self.plans_dir)
            if found is not None and found[0] == branch:
                return found[1]
        return None

    def has_plan(self, project_path: str, branch: str) -> bool:
        path = self.find_plan_path(project_path, branch)
        return path is not None and path.exists()

    def read_plan(self, project_path: str, branch: str) -> str | None:
        path = self.find_plan_path(project_path, branch)
        if path is None:
            return None
        try:
            return path.read_text()
        except OSError as e:
            logger.debug("Cannot read plan %s: %s", path, e)
            return None
