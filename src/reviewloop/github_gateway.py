from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import cast
from urllib.parse import urlencode

from reviewloop.models import (
    PullRequestIssueComment,
    PullRequestRef,
    PullRequestReview,
    PullRequestReviewComment,
    PullRequestSnapshot,
)
from reviewloop.observability import log_event
from reviewloop.shell import run


LOGGER = logging.getLogger("reviewloop.github_gateway")
_PAGE_SIZE = 100
_PR_URL_RE = re.compile(r"^https?://github\.com/([^/]+)/([^/]+)/pull/(\d+)")
_MARK_READY_MUTATION = (
    "mutation($id: ID!) { markPullRequestReadyForReview(input: {pullRequestId: $id}) "
    "{ pullRequest { isDraft } } }"
)


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub API failure; the next webhook or sweep retries."""


def parse_pull_request_url(url: str) -> PullRequestRef:
    match = _PR_URL_RE.match(url.strip())
    if match is None:
        raise ValueError(f"Not a GitHub pull request URL: {url!r}")
    return PullRequestRef(
        owner=match.group(1),
        name=match.group(2),
        number=int(match.group(3)),
        html_url=url.strip(),
    )


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    read_timeout_seconds: float = 15.0
    write_timeout_seconds: float = 30.0
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        if head is None:
            raise GitHubPollingError("Unexpected GitHub response: missing pull request head")

        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            html_url=_as_string(payload_obj.get("html_url")),
            title=_as_string(payload_obj.get("title")),
            state=_as_string(payload_obj.get("state")),
            merged=bool(payload_obj.get("merged")),
            draft=bool(payload_obj.get("draft")),
            head_ref=_as_string(head.get("ref")),
            head_sha=_as_string(head.get("sha")),
            node_id=_as_string(payload_obj.get("node_id")),
        )
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=snapshot.number)
        return snapshot

    def list_review_comments(self, pr_number: int) -> list[PullRequestReviewComment]:
        comments: list[PullRequestReviewComment] = []
        for item_obj in self._paginate(f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments"):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                PullRequestReviewComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    path=_as_string(item_obj.get("path")),
                    line=_as_optional_int(item_obj.get("line")),
                    commit_id=_as_string(item_obj.get("commit_id")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item_obj.get("html_url")),
                    created_at=_as_string(item_obj.get("created_at")),
                    node_id=_as_string(item_obj.get("node_id")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def list_reviews(self, pr_number: int) -> list[PullRequestReview]:
        reviews: list[PullRequestReview] = []
        for item_obj in self._paginate(f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews"):
            user_obj = _as_object_dict(item_obj.get("user"))
            reviews.append(
                PullRequestReview(
                    review_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    state=_as_string(item_obj.get("state")).lower(),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item_obj.get("html_url")),
                    submitted_at=_as_string(item_obj.get("submitted_at")),
                    commit_id=_as_string(item_obj.get("commit_id")),
                    node_id=_as_string(item_obj.get("node_id")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            pr_number=pr_number,
            count=len(reviews),
        )
        return reviews

    def list_issue_comments(self, pr_number: int) -> list[PullRequestIssueComment]:
        comments: list[PullRequestIssueComment] = []
        for item_obj in self._paginate(f"/repos/{self.owner}/{self.name}/issues/{pr_number}/comments"):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                PullRequestIssueComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item_obj.get("html_url")),
                    created_at=_as_string(item_obj.get("created_at")),
                    node_id=_as_string(item_obj.get("node_id")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def mark_ready_for_review(self, pr_number: int) -> bool:
        """Flip a draft PR to ready for review. Returns False when it was not a draft."""
        snapshot = self.get_pull_request(pr_number)
        if not snapshot.draft:
            log_event(LOGGER, "github_pr_already_ready", pr_number=pr_number)
            return False
        try:
            self._graphql(_MARK_READY_MUTATION, {"id": snapshot.node_id})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_mark_ready_failed",
                repo_full_name=self.repo_full_name,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_pr_marked_ready", pr_number=pr_number)
        return True

    def request_reviewers(
        self,
        pr_number: int,
        reviewers: tuple[str, ...] = (),
        *,
        team_reviewers: tuple[str, ...] = (),
    ) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/requested_reviewers"
        payload: dict[str, object] = {"reviewers": list(reviewers)}
        if team_reviewers:
            payload["team_reviewers"] = list(team_reviewers)
        try:
            self._api_json("POST", path, payload=payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_request_reviewers_failed",
                repo_full_name=self.repo_full_name,
                pr_number=pr_number,
                reviewers=",".join(reviewers + team_reviewers),
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_reviewers_requested",
            pr_number=pr_number,
            reviewers=",".join(reviewers + team_reviewers),
        )

    def _paginate(self, base_path: str) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            path = f"{base_path}?{urlencode({'per_page': _PAGE_SIZE, 'page': page})}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubPollingError(f"Unexpected GitHub response: expected list for {path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                return items
            page += 1

    def _graphql(self, query: str, variables: dict[str, str]) -> object:
        cmd = ["gh", "api", "graphql", "-f", f"query={query}"]
        for key, value in sorted(variables.items()):
            cmd.extend(["-f", f"{key}={value}"])
        raw = run(cmd, timeout_seconds=self.write_timeout_seconds)
        payload_obj = _as_object_dict(_loads_response(raw, context="graphql"))
        if payload_obj is not None and payload_obj.get("errors"):
            raise GitHubPollingError(f"GitHub GraphQL request failed: {payload_obj['errors']}")
        return payload_obj

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = ""
            try:
                raw = run(cmd, timeout_seconds=self.read_timeout_seconds, check=False)
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(f"GitHub GET failed for path {path}: {exc}") from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, timeout_seconds=self.write_timeout_seconds)
        if not raw.strip():
            return None
        return _loads_response(raw, context=f"{method_upper} {path}")


def _loads_response(raw: str, *, context: str) -> object:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise GitHubPollingError(
            f"Unexpected GitHub response for {context}: {_preview_for_log(raw)}"
        ) from exc


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    lines = raw.replace("\r\n", "\n").split("\n")

    # gh prints one status block per redirect; the last one wins.
    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    return status_code, headers, "\n".join(lines[body_start:])


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubPollingError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubPollingError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubPollingError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    return _as_int(value, field="optional int field")
