from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import cast

import requests

from reviewloop.models import AgentStatus
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.agent_client")

_KNOWN_STATUSES: frozenset[str] = frozenset({"CREATING", "RUNNING", "FINISHED", "FAILED", "STOPPED"})


class AgentClientError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class AgentSnapshot:
    agent_id: str
    status: AgentStatus
    repository: str = ""
    branch_name: str = ""
    pr_url: str = ""
    summary: str = ""


class CodingAgentClient(ABC):
    @abstractmethod
    def launch_agent(
        self, *, prompt: str, repository: str, ref: str | None = None, branch_name: str | None = None
    ) -> AgentSnapshot:
        """Start a new agent run against a repository."""

    @abstractmethod
    def get_agent(self, agent_id: str) -> AgentSnapshot:
        """Return the agent's current status."""

    @abstractmethod
    def add_followup(self, agent_id: str, text: str) -> str:
        """Send a follow-up instruction to an existing agent; returns the agent id."""

    @abstractmethod
    def stop_agent(self, agent_id: str) -> str:
        """Stop a running agent; returns the agent id."""


class CursorAgentClient(CodingAgentClient):
    """REST client for the Cursor background agents API.

    Every call is a single attempt bounded by ``timeout_seconds``. Callers decide
    whether to retry, usually by letting the webhook be redelivered.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.cursor.com",
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._session = session if session is not None else requests.Session()
        self._session.auth = (api_key, "")

    def launch_agent(
        self, *, prompt: str, repository: str, ref: str | None = None, branch_name: str | None = None
    ) -> AgentSnapshot:
        source: dict[str, object] = {"repository": repository}
        if ref:
            source["ref"] = ref
        target: dict[str, object] = {"autoCreatePr": True, "autoBranch": branch_name is None}
        if branch_name:
            target["branchName"] = branch_name
        payload = self._request(
            "POST",
            "/v0/agents",
            body={"prompt": {"text": prompt}, "source": source, "target": target},
        )
        snapshot = _parse_agent(payload)
        log_event(LOGGER, "agent_launched", agent_id=snapshot.agent_id, repository=repository)
        return snapshot

    def get_agent(self, agent_id: str) -> AgentSnapshot:
        return _parse_agent(self._request("GET", f"/v0/agents/{agent_id}"))

    def add_followup(self, agent_id: str, text: str) -> str:
        payload = self._request(
            "POST", f"/v0/agents/{agent_id}/followup", body={"prompt": {"text": text}}
        )
        log_event(LOGGER, "agent_followup_sent", agent_id=agent_id, text_length=len(text))
        return _require_id(payload)

    def stop_agent(self, agent_id: str) -> str:
        payload = self._request("POST", f"/v0/agents/{agent_id}/stop")
        log_event(LOGGER, "agent_stopped", agent_id=agent_id)
        return _require_id(payload)

    def _request(
        self, method: str, path: str, *, body: dict[str, object] | None = None
    ) -> dict[str, object]:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(method, url, json=body, timeout=self._timeout_seconds)
        except requests.RequestException as exc:
            log_event(
                LOGGER,
                "agent_request_failed",
                method=method,
                path=path,
                error_type=type(exc).__name__,
            )
            raise AgentClientError(f"Agent API {method} {path} failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            message = _error_message(response)
            log_event(
                LOGGER,
                "agent_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                error=message,
            )
            raise AgentClientError(
                f"Agent API {method} {path} returned {response.status_code}: {message}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AgentClientError(f"Agent API {method} {path} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise AgentClientError(f"Agent API {method} {path} returned a non-object payload")
        return cast(dict[str, object], payload)


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or "<empty>"
    if isinstance(payload, dict) and isinstance(payload.get("message"), str) and payload["message"]:
        return cast(str, payload["message"])
    return response.text.strip() or "<empty>"


def _require_id(payload: dict[str, object]) -> str:
    agent_id = payload.get("id")
    if not isinstance(agent_id, str) or not agent_id:
        raise AgentClientError("Agent API response is missing id")
    return agent_id


def _parse_agent(payload: dict[str, object]) -> AgentSnapshot:
    status = str(payload.get("status") or "").upper()
    if status not in _KNOWN_STATUSES:
        raise AgentClientError(f"Agent API returned unknown status {status!r}")
    source = payload.get("source")
    target = payload.get("target")
    source_obj = source if isinstance(source, dict) else {}
    target_obj = target if isinstance(target, dict) else {}
    return AgentSnapshot(
        agent_id=_require_id(payload),
        status=cast(AgentStatus, status),
        repository=str(source_obj.get("repository") or ""),
        branch_name=str(target_obj.get("branchName") or ""),
        pr_url=str(target_obj.get("prUrl") or ""),
        summary=str(payload.get("summary") or ""),
    )
