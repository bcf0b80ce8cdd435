from __future__ import annotations

import json
from typing import cast

import pytest
import requests

from reviewloop.agent_client import AgentClientError, CursorAgentClient


class FakeResponse:
    def __init__(self, status_code: int, payload: object = None, *, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self) -> object:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    def __init__(self, responses: list[FakeResponse | Exception]) -> None:
        self.responses = responses
        self.auth: object = None
        self.calls: list[tuple[str, str, object, float]] = []

    def request(self, method: str, url: str, *, json: object, timeout: float) -> FakeResponse:
        self.calls.append((method, url, json, timeout))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(session: FakeSession) -> CursorAgentClient:
    return CursorAgentClient(
        api_key="key-1",
        base_url="https://agents.example.test/",
        timeout_seconds=7,
        session=cast(requests.Session, session),
    )


def _agent(status: str = "FINISHED") -> dict[str, object]:
    return {
        "id": "bc-1",
        "status": status,
        "source": {"repository": "https://github.com/o/r"},
        "target": {
            "branchName": "agent/feature",
            "prUrl": "https://github.com/o/r/pull/7",
        },
        "summary": "Added the feature",
    }


def test_get_agent_parses_snapshot() -> None:
    session = FakeSession([FakeResponse(200, _agent("finished"))])

    snapshot = _client(session).get_agent("bc-1")

    assert snapshot.status == "FINISHED"
    assert snapshot.pr_url == "https://github.com/o/r/pull/7"
    assert snapshot.branch_name == "agent/feature"
    assert snapshot.summary == "Added the feature"
    assert session.auth == ("key-1", "")
    assert session.calls == [("GET", "https://agents.example.test/v0/agents/bc-1", None, 7)]


def test_add_followup_posts_prompt_text() -> None:
    session = FakeSession([FakeResponse(200, {"id": "bc-1"})])

    assert _client(session).add_followup("bc-1", "Fix the leak.") == "bc-1"
    method, url, body, _ = session.calls[0]
    assert (method, url) == ("POST", "https://agents.example.test/v0/agents/bc-1/followup")
    assert body == {"prompt": {"text": "Fix the leak."}}


def test_launch_agent_builds_source_and_target() -> None:
    session = FakeSession([FakeResponse(201, _agent("CREATING"))])

    snapshot = _client(session).launch_agent(
        prompt="Build it", repository="https://github.com/o/r", ref="main"
    )

    assert snapshot.status == "CREATING"
    _, _, body, _ = session.calls[0]
    assert body == {
        "prompt": {"text": "Build it"},
        "source": {"repository": "https://github.com/o/r", "ref": "main"},
        "target": {"autoCreatePr": True, "autoBranch": True},
    }


def test_stop_agent() -> None:
    session = FakeSession([FakeResponse(200, {"id": "bc-1"})])

    assert _client(session).stop_agent("bc-1") == "bc-1"
    assert session.calls[0][1].endswith("/v0/agents/bc-1/stop")


def test_http_error_carries_status_and_message() -> None:
    session = FakeSession([FakeResponse(409, {"message": "Agent is not running"})])

    with pytest.raises(AgentClientError) as excinfo:
        _client(session).add_followup("bc-1", "text")

    assert excinfo.value.status_code == 409
    assert "Agent is not running" in str(excinfo.value)


def test_http_error_without_json_uses_text() -> None:
    session = FakeSession([FakeResponse(500, None, text="upstream exploded")])

    with pytest.raises(AgentClientError, match="500: upstream exploded"):
        _client(session).get_agent("bc-1")


def test_transport_error_is_wrapped() -> None:
    session = FakeSession([requests.ConnectionError("connection refused")])

    with pytest.raises(AgentClientError) as excinfo:
        _client(session).get_agent("bc-1")

    assert excinfo.value.status_code is None


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"id": "bc-1", "status": "EXPLODED"}, "unknown status"),
        ({"status": "RUNNING"}, "missing id"),
        (["not", "an", "object"], "non-object payload"),
    ],
)
def test_malformed_payloads_are_rejected(payload: object, message: str) -> None:
    session = FakeSession([FakeResponse(200, payload)])

    with pytest.raises(AgentClientError, match=message):
        _client(session).get_agent("bc-1")
