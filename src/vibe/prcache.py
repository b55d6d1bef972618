from __future__ import annotations

import time
from collections.abc import Callable, Mapping

from vibe.models import BranchPrInfo, WorktreeInfo

# How long to remember that a branch has no PR before checking again
NO_PR_CACHE_TTL = 120.0

# How long an open PR is trusted before it is fetched again
PR_REFRESH_TTL = 60.0


class PrLookupCache:
    """Decides which branches need a PR lookup from GitHub.

    Keeps the live PR per branch and a time-boxed "checked, no PR" marker.
    A branch is never in both: finding a PR evicts its marker, and absence is
    only ever checked for branches without a known PR. Open PRs are looked up
    again once they are older than ``refresh_ttl``; merged and closed PRs are
    final. No lookups happen here; the caller runs them for the branches this
    returns.
    """

    def __init__(
        self,
        ttl: float = NO_PR_CACHE_TTL,
        refresh_ttl: float = PR_REFRESH_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock
        self.worktrees: list[WorktreeInfo] = []
        self.branch_prs: dict[str, BranchPrInfo] = {}
        self._fetched_at: dict[str, float] = {}
        self._no_pr_cache: dict[str, float] = {}

    def set_worktrees(self, worktrees: list[WorktreeInfo]) -> None:
        self.worktrees = list(worktrees)

    def pr_for_branch(self, branch: str) -> BranchPrInfo | None:
        return self.branch_prs.get(branch)

    def set_branch_pr(self, branch: str, info: BranchPrInfo) -> None:
        self._no_pr_cache.pop(branch, None)
        self.branch_prs[branch] = info
        self._fetched_at[branch] = self._clock()

    def update_branch_prs(self, prs: Mapping[str, BranchPrInfo]) -> None:
        """Apply the result of a batched lookup."""
        for branch, info in prs.items():
            self.set_branch_pr(branch, info)

    def clear_branch_pr(self, branch: str) -> None:
        self.branch_prs.pop(branch, None)
        self._fetched_at.pop(branch, None)

    def mark_no_pr(self, branch: str) -> None:
        self._no_pr_cache[branch] = self._clock()

    def is_cached_no_pr(self, branch: str) -> bool:
        checked_at = self._no_pr_cache.get(branch)
        if checked_at is None:
            return False
        return self._clock() - checked_at < self.ttl

    def branches_needing_pr_lookup(self) -> list[str]:
        """Worktree branches with no known PR and no fresh "no PR" marker."""
        return [
            wt.branch
            for wt in self.worktrees
            if wt.branch not in self.branch_prs and not self.is_cached_no_pr(wt.branch)
        ]

    def branches_needing_pr_refresh(self) -> list[str]:
        """Branches whose known PR is still open and older than ``refresh_ttl``.

        Not limited to worktree branches: a PR whose worktree was removed
        after merging still has to be seen as merged.
        """
        now = self._clock()
        stale = []
        for branch, pr in self.branch_prs.items():
            if pr.state != "OPEN":
                continue
            fetched_at = self._fetched_at.get(branch)
            if fetched_at is None or now - fetched_at >= self.refresh_ttl:
                stale.append(branch)
        return stale

    def cleanup_no_pr_cache(self) -> None:
        """Drop expired "no PR" markers."""
        now = self._clock()
        self._no_pr_cache = {
            branch: checked_at
            for branch, checked_at in self._no_pr_cache.items()
            if now - checked_at < self.ttl
        }

    def clear_no_pr_cache(self) -> None:
        """Forget every "no PR" marker (manual refresh)."""
        self._no_pr_cache.clear()
