from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import hashlib
import hmac
import json
import logging
from typing import Mapping

from reviewloop.agent_client import AgentClientError
from reviewloop.dispatcher import DispatchError
from reviewloop.github_gateway import GitHubPollingError, parse_pull_request_url
from reviewloop.models import (
    PullRequestEvent,
    PullRequestReviewEvent,
    PullRequestSnapshot,
    ReviewSubmission,
)
from reviewloop.observability import log_event, log_warning
from reviewloop.review_loop import ReviewLoopEngine
from reviewloop.shell import CommandError
from reviewloop.state import DEFAULT_DELIVERY_TTL, StateStore


LOGGER = logging.getLogger("reviewloop.webhook")

MAX_WEBHOOK_BODY_BYTES = 1 << 20
SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"
_SIGNATURE_PREFIX = "sha256="

_EXTERNAL_ERRORS = (GitHubPollingError, CommandError, AgentClientError, DispatchError)


class WebhookPayloadError(ValueError):
    """The delivery body is not a usable GitHub webhook payload."""


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{_SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, header: str | None) -> bool:
    if not header or not header.startswith(_SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(compute_signature(secret, body), header.strip())


def parse_pull_request_event(payload: Mapping[str, object]) -> PullRequestEvent:
    pull_request = _parse_pull_request(payload)
    owner, name = _repository(payload, pull_request)
    return PullRequestEvent(
        action=_require_str(payload, "action", path="action"),
        repo_owner=owner,
        repo_name=name,
        pull_request=pull_request,
    )


def parse_review_event(payload: Mapping[str, object]) -> PullRequestReviewEvent:
    pull_request = _parse_pull_request(payload)
    owner, name = _repository(payload, pull_request)
    review = _require_object(payload, "review", path="review")
    user = _require_object(review, "user", path="review.user")
    body = review.get("body")
    return PullRequestReviewEvent(
        action=_require_str(payload, "action", path="action"),
        repo_owner=owner,
        repo_name=name,
        pull_request=pull_request,
        review=ReviewSubmission(
            state=_require_str(review, "state", path="review.state").lower(),
            body=body if isinstance(body, str) else "",
            user_login=_require_str(user, "login", path="review.user.login"),
            html_url=_optional_str(review, "html_url"),
            user_type=_optional_str(user, "type"),
        ),
    )


def _parse_pull_request(payload: Mapping[str, object]) -> PullRequestSnapshot:
    pull_request = _require_object(payload, "pull_request", path="pull_request")
    number = pull_request.get("number")
    if not isinstance(number, int) or isinstance(number, bool):
        raise WebhookPayloadError("pull_request.number must be an integer")
    head = pull_request.get("head")
    head_data = head if isinstance(head, dict) else {}
    return PullRequestSnapshot(
        number=number,
        html_url=_require_str(pull_request, "html_url", path="pull_request.html_url"),
        title=_optional_str(pull_request, "title"),
        state=_optional_str(pull_request, "state"),
        merged=pull_request.get("merged") is True,
        draft=pull_request.get("draft") is True,
        head_ref=_optional_str(head_data, "ref"),
        head_sha=_optional_str(head_data, "sha"),
        node_id=_optional_str(pull_request, "node_id"),
    )


def _repository(payload: Mapping[str, object], pull_request: PullRequestSnapshot) -> tuple[str, str]:
    repository = payload.get("repository")
    if isinstance(repository, dict):
        full_name = repository.get("full_name")
        if isinstance(full_name, str) and full_name.count("/") == 1:
            owner, name = full_name.split("/")
            return owner, name
    try:
        ref = parse_pull_request_url(pull_request.html_url)
    except ValueError as exc:
        raise WebhookPayloadError(str(exc)) from exc
    return ref.owner, ref.name


def _require_object(data: Mapping[str, object], key: str, *, path: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise WebhookPayloadError(f"{path} must be an object")
    return value


def _require_str(data: Mapping[str, object], key: str, *, path: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise WebhookPayloadError(f"{path} must be a non-empty string")
    return value


def _optional_str(data: Mapping[str, object], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _decode_json(body: bytes) -> dict[str, object]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookPayloadError(f"invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise WebhookPayloadError("payload must be a JSON object")
    return payload


class WebhookReceiver:
    """Turns one GitHub delivery into an engine call and an HTTP-style status.

    A delivery ID is remembered only after a 2xx outcome, so failed deliveries
    can be redelivered and retried.
    """

    def __init__(
        self,
        engine: ReviewLoopEngine,
        store: StateStore,
        *,
        secret: str | None,
        delivery_ttl: timedelta = DEFAULT_DELIVERY_TTL,
    ) -> None:
        self._engine = engine
        self._store = store
        self._secret = secret
        self._delivery_ttl = delivery_ttl

    def handle(self, headers: Mapping[str, str], body: bytes) -> WebhookResponse:
        lowered = {key.lower(): value for key, value in headers.items()}
        event = lowered.get(EVENT_HEADER.lower(), "")
        delivery_id = lowered.get(DELIVERY_HEADER.lower(), "")

        if len(body) > MAX_WEBHOOK_BODY_BYTES:
            log_warning(LOGGER, "webhook_rejected", reason="body_too_large", size=len(body))
            return WebhookResponse(413, "payload too large")

        if self._secret is None:
            log_event(LOGGER, "webhook_signature_unchecked", delivery_id=delivery_id)
        elif not verify_signature(self._secret, body, lowered.get(SIGNATURE_HEADER.lower())):
            log_warning(LOGGER, "webhook_rejected", reason="bad_signature", delivery_id=delivery_id)
            return WebhookResponse(401, "invalid signature")

        if delivery_id and self._store.is_delivery_seen(delivery_id):
            log_event(LOGGER, "webhook_duplicate_delivery", delivery_id=delivery_id, github_event=event)
            return WebhookResponse(200, "duplicate delivery")

        log_event(LOGGER, "webhook_received", delivery_id=delivery_id, github_event=event)
        response = self._route(event, body, delivery_id=delivery_id)

        if delivery_id and response.ok:
            self._store.mark_delivery(
                delivery_id,
                event=event,
                status_code=response.status_code,
                ttl=self._delivery_ttl,
            )
        return response

    def _route(self, event: str, body: bytes, *, delivery_id: str) -> WebhookResponse:
        try:
            payload = _decode_json(body)
            if event == "ping":
                log_event(LOGGER, "webhook_ping", zen=payload.get("zen"), hook_id=payload.get("hook_id"))
                return WebhookResponse(200, '{"status": "ok"}')
            if event == "pull_request":
                self._engine.handle_pull_request_event(parse_pull_request_event(payload))
                return WebhookResponse(200)
            if event == "pull_request_review":
                self._engine.handle_review_event(parse_review_event(payload))
                return WebhookResponse(200)
        except WebhookPayloadError as exc:
            log_warning(
                LOGGER,
                "webhook_rejected",
                reason="invalid_payload",
                delivery_id=delivery_id,
                github_event=event,
                error=str(exc),
            )
            return WebhookResponse(400, "invalid payload")
        except _EXTERNAL_ERRORS as exc:
            log_warning(
                LOGGER,
                "webhook_failed",
                delivery_id=delivery_id,
                github_event=event,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return WebhookResponse(502, "upstream failure")

        log_event(LOGGER, "webhook_event_ignored", delivery_id=delivery_id, github_event=event)
        return WebhookResponse(200)
