from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal


ReviewLoopPhase = Literal[
    "requesting_review",
    "awaiting_review",
    "cursor_fixing",
    "approved",
    "human_review",
    "complete",
    "max_iterations",
    "rejected",
]
ReviewerType = Literal["ai_bot", "human"]
FindingStatus = Literal["open", "resolved", "dismissed", "superseded"]
FeedbackSourceType = Literal["review_comment", "review_body", "issue_comment"]
AgentStatus = Literal["CREATING", "RUNNING", "FINISHED", "FAILED", "STOPPED"]
ReviewState = Literal["approved", "changes_requested", "commented", "dismissed", "pending"]


TERMINAL_PHASES: frozenset[ReviewLoopPhase] = frozenset({"complete", "max_iterations", "rejected"})
TERMINAL_AGENT_STATUSES: frozenset[AgentStatus] = frozenset({"FINISHED", "FAILED", "STOPPED"})

_ALLOWED_TRANSITIONS: dict[ReviewLoopPhase, frozenset[ReviewLoopPhase]] = {
    "requesting_review": frozenset({"awaiting_review", "complete", "rejected"}),
    "awaiting_review": frozenset(
        {"cursor_fixing", "approved", "max_iterations", "complete", "rejected"}
    ),
    "cursor_fixing": frozenset({"awaiting_review", "complete", "rejected"}),
    "approved": frozenset({"human_review", "complete", "rejected"}),
    "human_review": frozenset({"cursor_fixing", "max_iterations", "complete", "rejected"}),
    "complete": frozenset(),
    "max_iterations": frozenset(),
    "rejected": frozenset(),
}


class InvalidTransitionError(ValueError):
    pass


def is_terminal_phase(phase: str) -> bool:
    return phase in TERMINAL_PHASES


def is_terminal_agent_status(status: str) -> bool:
    return status.upper() in TERMINAL_AGENT_STATUSES


@dataclass(frozen=True)
class ReviewLoopEvent:
    phase: ReviewLoopPhase
    at: str
    detail: str = ""


@dataclass(frozen=True)
class ReviewFinding:
    key: str
    status: FindingStatus
    source_type: FeedbackSourceType
    reviewer_login: str
    reviewer_type: ReviewerType
    actionable_text: str
    raw_text: str = ""
    source_id: str = ""
    source_node_id: str = ""
    source_url: str = ""
    path: str = ""
    line: int = 0
    commit_sha: str = ""
    first_seen_at: str = ""
    first_seen_iteration: int = 0
    last_seen_at: str = ""
    last_seen_iteration: int = 0


@dataclass
class ReviewLoop:
    """Mutable working record for one pull request under automated review.

    The engine loads it fresh at the start of each handled event, mutates it in
    place, and saves it once at the end.
    """

    id: str
    agent_record_id: str
    repo_owner: str
    repo_name: str
    pr_number: int
    pr_url: str
    phase: ReviewLoopPhase
    iteration: int
    created_at: str
    updated_at: str
    workflow_id: str | None = None
    last_commit_sha: str = ""
    last_feedback_dispatch_sha: str = ""
    last_feedback_dispatch_at: str = ""
    last_feedback_digest: str = ""
    history: list[ReviewLoopEvent] = field(default_factory=list)
    findings: list[ReviewFinding] = field(default_factory=list)

    @property
    def repo_full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    @property
    def is_terminal(self) -> bool:
        return is_terminal_phase(self.phase)

    def transition(self, phase: ReviewLoopPhase, *, at: str, detail: str = "") -> None:
        if phase not in _ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"Review loop {self.id} cannot move from {self.phase} to {phase}"
            )
        self.phase = phase
        self.record(at=at, detail=detail)

    def record(self, *, at: str, detail: str) -> None:
        """Append a history entry for the current phase without changing it."""
        self.history.append(ReviewLoopEvent(phase=self.phase, at=at, detail=detail))
        self.updated_at = at


@dataclass(frozen=True)
class AgentRecord:
    id: str
    agent_id: str
    status: AgentStatus
    repository: str
    pr_url: str = ""
    branch_name: str = ""
    summary: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    name: str
    number: int
    html_url: str

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    html_url: str
    title: str
    state: str
    merged: bool
    draft: bool
    head_ref: str
    head_sha: str
    node_id: str = ""


@dataclass(frozen=True)
class PullRequestReviewComment:
    comment_id: int
    body: str
    path: str
    line: int | None
    commit_id: str
    user_login: str
    html_url: str
    created_at: str
    node_id: str = ""


@dataclass(frozen=True)
class PullRequestReview:
    review_id: int
    body: str
    state: str
    user_login: str
    html_url: str
    submitted_at: str
    commit_id: str = ""
    node_id: str = ""


@dataclass(frozen=True)
class PullRequestIssueComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str
    created_at: str
    node_id: str = ""


@dataclass(frozen=True)
class PullRequestEvent:
    action: str
    repo_owner: str
    repo_name: str
    pull_request: PullRequestSnapshot


@dataclass(frozen=True)
class ReviewSubmission:
    state: str
    body: str
    user_login: str
    html_url: str = ""
    user_type: str = ""


@dataclass(frozen=True)
class PullRequestReviewEvent:
    action: str
    repo_owner: str
    repo_name: str
    pull_request: PullRequestSnapshot
    review: ReviewSubmission


def utc_now_iso(now: datetime | None = None) -> str:
    moment = now if now is not None else datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
