from __future__ import annotations

import subprocess
from pathlib import Path

from vibe.models import WorktreeInfo


def get_current_repo(cwd: Path | None = None) -> tuple[str, str] | None:
    """Return (repo_name, repo_path) if cwd is inside a git repo.

    When inside a worktree, resolves to the main repository (not the worktree).
    """
    cwd = cwd or Path.cwd()
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--git-common-dir"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    git_common_dir = Path(result.stdout.strip())
    if not git_common_dir.is_absolute():
        # In a normal (non-worktree) repo, git returns relative ".git"
        git_common_dir = (cwd / git_common_dir).resolve()
    return git_common_dir.parent.name, str(git_common_dir.parent)


def parse_worktree_porcelain(output: str, cwd: Path | None = None) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain`.

    Bare and detached-HEAD entries have no branch and are skipped. The entry
    whose path contains ``cwd`` (deepest first) is marked current.
    """
    entries: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
                current = {}
            continue
        key, _, value = line.partition(" ")
        current[key] = value
    if current:
        entries.append(current)

    worktrees = []
    for entry in entries:
        ref = entry.get("branch")
        if not ref or "bare" in entry:
            continue
        worktrees.append(
            WorktreeInfo(
                branch=ref.removeprefix("refs/heads/"),
                path=entry.get("worktree", ""),
            )
        )

    if cwd is not None:
        cwd_resolved = cwd.resolve()
        containing = [
            wt
            for wt in worktrees
            if wt.path and cwd_resolved.is_relative_to(Path(wt.path).resolve())
        ]
        if containing:
            max(containing, key=lambda wt: len(wt.path)).is_current = True
    return worktrees


def list_worktrees(repo_path: str) -> list[WorktreeInfo]:
    """List the repository's worktrees that have a branch checked out.

    Raises subprocess.CalledProcessError if git fails.
    """
    result = subprocess.run(
        ["git", "-C", repo_path, "worktree", "list", "--porcelain"],
        capture_output=True,
        text=True,
        check=True,
    )
    return parse_worktree_porcelain(result.stdout, cwd=Path.cwd())
