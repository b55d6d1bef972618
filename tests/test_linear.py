from __future__ import annotations

import json

import httpx
import pytest

from vibe.linear import (
    LinearClient,
    LinearError,
    build_issue_status_query,
    get_api_key,
    linear_env_var_name,
    parse_issue_statuses,
)
from vibe.models import LinearIssueStatus


def _client(handler) -> LinearClient:
    return LinearClient("lin_api_test", transport=httpx.MockTransport(handler))


def _issue(identifier, state_type, name):
    return {"identifier": identifier, "state": {"type": state_type, "name": name}}


def test_linear_env_var_name():
    assert linear_env_var_name("vibe-kanban") == "VIBE_KANBAN_LINEAR_API_KEY"
    assert linear_env_var_name("web") == "WEB_LINEAR_API_KEY"


def test_get_api_key(monkeypatch):
    monkeypatch.setenv("WEB_LINEAR_API_KEY", "key-1")
    monkeypatch.setenv("CUSTOM_KEY", "key-2")
    monkeypatch.setenv("EMPTY_KEY", "")
    assert get_api_key("web") == "key-1"
    assert get_api_key("web", env_var="CUSTOM_KEY") == "key-2"
    assert get_api_key("web", env_var="EMPTY_KEY") is None
    assert get_api_key("other-project") is None


def test_build_issue_status_query():
    query = build_issue_status_query(["VIB-1", 'VIB-"2'])
    assert 'i0: issue(id: "VIB-1")' in query
    assert 'i1: issue(id: "VIB-\\"2")' in query
    assert query.startswith("query {")


def test_parse_issue_statuses_null_alias_is_absent():
    payload = {"data": {"i0": _issue("VIB-1", "started", "In Progress"), "i1": None}}
    statuses = parse_issue_statuses(["VIB-1", "VIB-404"], payload)
    assert statuses == {
        "VIB-1": LinearIssueStatus(identifier="VIB-1", state_type="started", state_name="In Progress")
    }


def test_parse_issue_statuses_errors():
    with pytest.raises(LinearError, match="Entity not found"):
        parse_issue_statuses(["VIB-1"], {"errors": [{"message": "Entity not found"}]})
    with pytest.raises(LinearError, match="No data"):
        parse_issue_statuses(["VIB-1"], {})


def test_fetch_issue_statuses():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": {
                    "i0": _issue("VIB-1", "completed", "Done"),
                    "i1": _issue("VIB-2", "unstarted", "Todo"),
                }
            },
        )

    with _client(handler) as client:
        statuses = client.fetch_issue_statuses(["VIB-1", "VIB-2"])

    assert statuses["VIB-1"].state_type == "completed"
    assert statuses["VIB-2"].state_name == "Todo"
    assert len(requests) == 1
    request = requests[0]
    assert str(request.url) == "https://api.linear.app/graphql"
    assert request.headers["Authorization"] == "lin_api_test"
    body = json.loads(request.content)
    assert 'i1: issue(id: "VIB-2")' in body["query"]


def test_fetch_issue_statuses_empty_makes_no_request():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert _client(handler).fetch_issue_statuses([]) == {}


def test_fetch_issue_statuses_http_error():
    client = _client(lambda request: httpx.Response(401, text="unauthorized"))
    with pytest.raises(LinearError, match="HTTP 401"):
        client.fetch_issue_statuses(["VIB-1"])


def test_fetch_issue_statuses_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(LinearError, match="connection refused"):
        _client(handler).fetch_issue_statuses(["VIB-1"])


def test_fetch_issue_statuses_invalid_json():
    client = _client(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(LinearError, match="JSON"):
        client.fetch_issue_statuses(["VIB-1"])


def test_fetch_issue_statuses_graphql_errors():
    client = _client(lambda request: httpx.Response(200, json={"errors": [{"message": "bad query"}]}))
    with pytest.raises(LinearError, match="bad query"):
        client.fetch_issue_statuses(["VIB-1"])
