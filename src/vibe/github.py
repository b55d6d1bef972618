"""GitHub PR lookups via the `gh` CLI."""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any

from vibe.models import BranchPrInfo, Review, StatusCheck

logger = logging.getLogger(__name__)

PR_VIEW_FIELDS = "number,url,state,isDraft,reviewDecision,statusCheckRollup,mergeable,reviews"

# stderr fragments meaning "this branch has no PR" rather than a failure
NO_PR_MARKERS = (
    "no pull requests found",
    "no open pull requests",
    "Could not resolve",
)

BATCH_PR_QUERY = """
query($owner: String!, $repo: String!) {
  repository(owner: $owner, name: $repo) {
    pullRequests(states: [OPEN, MERGED, CLOSED], first: 100, orderBy: {field: UPDATED_AT, direction: DESC}) {
      nodes {
        number
        url
        state
        isDraft
        reviewDecision
        mergeable
        headRefName
        reviews(first: 10, states: [APPROVED, CHANGES_REQUESTED, COMMENTED]) {
          nodes {
            state
            author { login }
          }
        }
        statusCheckRollup {
          contexts(first: 50) {
            nodes {
              __typename
              ... on CheckRun {
                conclusion
                status
              }
              ... on StatusContext {
                state
              }
            }
          }
        }
      }
    }
  }
}
"""

# StatusContext reports a single `state`; map it onto CheckRun conclusions
_STATUS_CONTEXT_CONCLUSIONS = {
    "SUCCESS": "SUCCESS",
    "FAILURE": "FAILURE",
    "ERROR": "FAILURE",
    "PENDING": "PENDING",
    "EXPECTED": "PENDING",
}


class GitHubUnavailableError(Exception):
    """Raised when the `gh` CLI is unavailable or returns an error."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(
            f"GitHub CLI unavailable: {reason}" if reason else "GitHub CLI unavailable."
        )


def _gh(args: list[str], repo_path: str | None = None) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["gh", *args],
            cwd=repo_path,
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        raise GitHubUnavailableError(str(e)) from e


def _load_json(stdout: str) -> Any:
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise GitHubUnavailableError(f"invalid JSON from gh: {e}") from e


def _parse_check(node: dict[str, Any]) -> StatusCheck:
    typename = node.get("__typename") or ""
    if typename == "StatusContext":
        state = node.get("state")
        conclusion = _STATUS_CONTEXT_CONCLUSIONS.get(state, state) if state else None
        return StatusCheck(type=typename, conclusion=conclusion, status="COMPLETED")
    return StatusCheck(
        type=typename,
        conclusion=node.get("conclusion") or None,
        status=node.get("status") or None,
    )


def _parse_reviews(nodes: list[dict[str, Any]]) -> list[Review]:
    reviews = []
    for node in nodes:
        author = node.get("author")
        if not author or not author.get("login"):
            continue  # deleted accounts come back without an author
        reviews.append(Review(state=node.get("state", ""), author_login=author["login"]))
    return reviews


def _build_pr(
    node: dict[str, Any],
    checks: list[dict[str, Any]] | None,
    reviews: list[dict[str, Any]],
) -> BranchPrInfo:
    return BranchPrInfo(
        number=int(node["number"]),
        url=node.get("url", ""),
        state=node["state"],
        is_draft=bool(node.get("isDraft", False)),
        # gh prints "" rather than null for PRs without a decision
        review_decision=node.get("reviewDecision") or None,
        mergeable=node.get("mergeable") or None,
        status_check_rollup=[_parse_check(c) for c in checks]
        if checks is not None
        else None,
        reviews=_parse_reviews(reviews),
    )


def parse_pr_view(data: dict[str, Any]) -> BranchPrInfo:
    """Parse the JSON printed by `gh pr view --json ...`."""
    return _build_pr(data, data.get("statusCheckRollup"), data.get("reviews") or [])


def parse_graphql_prs(data: dict[str, Any]) -> dict[str, BranchPrInfo]:
    """Parse a batch PR GraphQL response into {head branch: PR}.

    When a branch has several PRs, the most recently updated one wins.
    """
    errors = data.get("errors")
    if errors:
        messages = ", ".join(e.get("message", "") for e in errors)
        raise GitHubUnavailableError(f"GraphQL errors: {messages}")

    repository = (data.get("data") or {}).get("repository")
    if not repository:
        return {}

    result: dict[str, BranchPrInfo] = {}
    for node in repository["pullRequests"]["nodes"]:
        branch = node["headRefName"]
        if branch in result:
            continue  # results are ordered newest first
        rollup = node.get("statusCheckRollup")
        checks = rollup["contexts"]["nodes"] if rollup else None
        reviews = (node.get("reviews") or {}).get("nodes", [])
        result[branch] = _build_pr(node, checks, reviews)
    return result


def get_pr_for_branch(branch: str, repo_path: str | None = None) -> BranchPrInfo | None:
    """Fetch the PR for a branch with `gh pr view`. None if there is no PR."""
    result = _gh(["pr", "view", branch, "--json", PR_VIEW_FIELDS], repo_path)
    if result.returncode != 0:
        stderr = result.stderr.strip()
        if any(marker in stderr for marker in NO_PR_MARKERS):
            logger.debug("gh pr view %s: no PR", branch)
            return None
        raise GitHubUnavailableError(stderr)

    pr = parse_pr_view(_load_json(result.stdout))
    logger.debug("gh pr view %s: PR #%s %s", branch, pr.number, pr.state)
    return pr


def get_repo(repo_path: str | None = None) -> tuple[str, str]:
    """Return (owner, name) of the repository gh resolves for repo_path."""
    result = _gh(["repo", "view", "--json", "owner,name"], repo_path)
    if result.returncode != 0:
        raise GitHubUnavailableError(result.stderr.strip())
    data = _load_json(result.stdout)
    return data["owner"]["login"], data["name"]


def get_all_prs(repo_path: str | None = None) -> dict[str, BranchPrInfo]:
    """Fetch the 100 most recently updated PRs in one GraphQL query.

    One request per refresh instead of one per branch; keyed by head branch.
    """
    owner, repo = get_repo(repo_path)
    result = _gh(
        [
            "api",
            "graphql",
            "-f",
            f"query={BATCH_PR_QUERY}",
            "-f",
            f"owner={owner}",
            "-f",
            f"repo={repo}",
        ],
        repo_path,
    )
    if result.returncode != 0:
        raise GitHubUnavailableError(f"GraphQL query failed: {result.stderr.strip()}")

    prs = parse_graphql_prs(_load_json(result.stdout))
    logger.debug("gh api graphql %s/%s: %d PRs", owner, repo, len(prs))
    return prs
