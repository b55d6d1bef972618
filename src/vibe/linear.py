"""Linear issue statuses over the GraphQL API."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Sequence
from typing import Any

import httpx

from vibe.models import LinearIssueStatus

logger = logging.getLogger(__name__)

API_URL = "https://api.linear.app/graphql"


class LinearError(Exception):
    """Raised when a Linear request fails or returns GraphQL errors."""


def linear_env_var_name(project_name: str) -> str:
    """Environment variable holding a project's Linear API key.

    >>> linear_env_var_name("vibe-kanban")
    'VIBE_KANBAN_LINEAR_API_KEY'
    """
    return f"{project_name.upper().replace('-', '_')}_LINEAR_API_KEY"


def get_api_key(project_name: str, env_var: str | None = None) -> str | None:
    return os.environ.get(env_var or linear_env_var_name(project_name)) or None


def build_issue_status_query(identifiers: Sequence[str]) -> str:
    """One query with an alias per issue: ``i0: issue(id: "VIB-5") {...}``."""
    fields = " ".join(
        f"i{i}: issue(id: {json.dumps(identifier)}) {{ identifier state {{ name type }} }}"
        for i, identifier in enumerate(identifiers)
    )
    return f"query {{ {fields} }}"


def _raise_for_graphql_errors(payload: dict[str, Any]) -> None:
    errors = payload.get("errors")
    if not errors:
        return
    messages = [e.get("message", "") for e in errors if isinstance(e, dict)]
    messages = [m for m in messages if m]
    if messages:
        raise LinearError(f"GraphQL error: {', '.join(messages)}")


def parse_issue_statuses(
    identifiers: Sequence[str], payload: dict[str, Any]
) -> dict[str, LinearIssueStatus]:
    """Map each requested identifier to its status.

    Issues Linear could not find come back as null and are left out.
    """
    _raise_for_graphql_errors(payload)
    data = payload.get("data")
    if data is None:
        raise LinearError("No data in response")

    statuses: dict[str, LinearIssueStatus] = {}
    for i, requested in enumerate(identifiers):
        issue = data.get(f"i{i}")
        if issue is None:
            continue
        state = issue.get("state")
        if state is None:
            raise LinearError(f"Missing state for {requested}")
        statuses[requested] = LinearIssueStatus(
            identifier=issue.get("identifier") or requested,
            state_type=state.get("type") or "",
            state_name=state.get("name") or "",
        )
    return statuses


class LinearClient:
    def __init__(
        self,
        api_key: str,
        api_url: str = API_URL,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self._client = httpx.Client(
            headers={"Authorization": api_key},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> LinearClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _query(self, query: str) -> dict[str, Any]:
        try:
            response = self._client.post(self.api_url, json={"query": query})
        except httpx.HTTPError as e:
            raise LinearError(f"HTTP error: {e}") from e

        if not response.is_success:
            raise LinearError(f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise LinearError(f"JSON parse error: {e}") from e

    def fetch_issue_statuses(
        self, identifiers: Sequence[str]
    ) -> dict[str, LinearIssueStatus]:
        """Fetch the workflow state of many issues in one request."""
        if not identifiers:
            return {}
        payload = self._query(build_issue_status_query(identifiers))
        statuses = parse_issue_statuses(identifiers, payload)
        logger.debug(
            "Linear: %d of %d issue statuses found", len(statuses), len(identifiers)
        )
        return statuses
