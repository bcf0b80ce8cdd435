from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Literal

from reviewloop.agent_client import AgentClientError, CodingAgentClient
from reviewloop.feedback_classify import Classification
from reviewloop.models import PullRequestSnapshot, ReviewFinding, ReviewLoop
from reviewloop.observability import log_event, log_warning
from reviewloop.text import feedback_digest


LOGGER = logging.getLogger("reviewloop.dispatcher")

DispatchMode = Literal["direct", "skipped_idempotent", "failed"]
DispatchReason = Literal[
    "dispatched",
    "duplicate_sha_and_digest",
    "agent_client_missing",
    "agent_missing",
    "add_followup_error",
]

AUDIT_UNRESOLVED_THREADS_TEXT = """\
You are an implementation agent performing a final pass on your pull request before approval. \
Your goal is to ensure every unresolved review comment is either addressed or explicitly responded to.

## Task

Using the `gh` CLI (including the GraphQL API where needed), audit all review comments on this PR \
that are **not in a resolved state**. For each unresolved comment, take exactly one of the following actions:

1. **OUTDATED comments** (the underlying code has already changed): Resolve the thread. No reply is needed.
2. **Feedback that still requires a code change**: Make the change, then reply to the thread \
(via its source ID) stating what you changed and why.
3. **Feedback you previously determined to be incorrect or no longer applicable**: Reply to the \
thread (via its source ID) with a concise explanation of why no change was made.

## Workflow

1. Fetch all review threads on this PR using the GraphQL API. Filter to threads where `isResolved == false`.
2. For each unresolved thread, check its `isOutdated` state via the GraphQL API.
3. Classify the thread into one of the three categories above.
4. Execute the appropriate action (resolve, apply fix + reply, or reply with justification).
5. Do **not** leave any review thread unresolved and unreplied.

## Constraints

- Use the `gh api graphql` command to query thread state (`isResolved`, `isOutdated`).
- Every non-outdated, unresolved thread **must** receive a reply, even if the answer is "no change needed".
- When replying, reference the exact change made (file + line if applicable) or the exact reason \
the suggestion was declined.
- Do not fabricate changes. If you are unsure whether feedback was already addressed, diff the \
relevant file against the base branch before deciding."""


class DispatchError(RuntimeError):
    """The follow-up could not be delivered; the phase must not advance."""

    def __init__(self, message: str, *, reason: DispatchReason) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class DispatchOutcome:
    mode: DispatchMode
    reason: DispatchReason
    dispatch_sha: str
    digest: str
    classification: Classification
    error: str | None = None

    @property
    def dispatched(self) -> bool:
        return self.mode == "direct"

    @property
    def skipped(self) -> bool:
        return self.mode == "skipped_idempotent"

    @property
    def failed(self) -> bool:
        return self.mode == "failed"


def format_followup(
    loop: ReviewLoop, pull_request: PullRequestSnapshot | None, findings: tuple[ReviewFinding, ...]
) -> str:
    lines = [
        "Apply the latest pull request review feedback and push fixes to the existing branch.",
        "",
        "PR context:",
        f"- repository: {loop.repo_full_name}",
        f"- pull_request_url: {loop.pr_url}",
        f"- pull_request_number: {loop.pr_number}",
    ]
    if pull_request is not None and pull_request.head_ref:
        lines.append(f"- branch: {pull_request.head_ref}")
    head_sha = _dispatch_sha(loop, pull_request)
    if head_sha:
        lines.append(f"- head_sha: {head_sha}")
    lines.extend(
        [
            f"- review_loop_iteration: {loop.iteration}",
            "",
            "Execution constraints:",
            "- work on the existing pull request branch",
            "- do not create a new pull request",
            "- keep changes scoped to the findings below",
            "",
        ]
    )

    numbered: list[str] = []
    index = 0
    for finding in findings:
        text = finding.actionable_text.strip() or finding.raw_text.strip()
        if not text:
            continue
        index += 1
        numbered.append(f"{index}. {text}")
        numbered.append(f"   metadata: {_finding_metadata(finding)}")

    if not numbered:
        lines.append("No actionable findings were extracted from structured review data.")
        lines.append(AUDIT_UNRESOLVED_THREADS_TEXT)
    else:
        lines.append("Actionable findings:")
        lines.extend(numbered)
    return "\n".join(lines).strip()


def _finding_metadata(finding: ReviewFinding) -> str:
    pairs = [
        ("source_type", finding.source_type),
        ("source_id", finding.source_id if finding.source_id not in ("", "0") else ""),
        ("source_url", finding.source_url),
        ("path", finding.path),
        ("line", str(finding.line) if finding.line > 0 else ""),
        ("reviewer", finding.reviewer_login),
        ("commit_sha", finding.commit_sha),
    ]
    return ", ".join(f"{key}={value}" for key, value in pairs if value)


def _dispatch_sha(loop: ReviewLoop, pull_request: PullRequestSnapshot | None) -> str:
    if pull_request is not None and pull_request.head_sha.strip():
        return pull_request.head_sha.strip()
    return loop.last_commit_sha.strip()


class FeedbackDispatcher:
    """Sends one consolidated follow-up per review round straight to the coding agent.

    A round is skipped when the same findings were already dispatched for the same
    head commit. Failures are reported in the outcome and leave the loop's dispatch
    bookkeeping untouched so a retry can send them again.
    """

    def __init__(self, client: CodingAgentClient | None) -> None:
        self._client = client

    def dispatch(
        self,
        *,
        loop: ReviewLoop,
        agent_id: str,
        pull_request: PullRequestSnapshot | None,
        classification: Classification,
        now: str,
    ) -> DispatchOutcome:
        dispatch_sha = _dispatch_sha(loop, pull_request)
        digest = feedback_digest(classification.dispatchable)

        if (
            dispatch_sha
            and loop.last_feedback_dispatch_sha == dispatch_sha
            and loop.last_feedback_digest == digest
        ):
            return self._decide(
                loop,
                DispatchOutcome(
                    mode="skipped_idempotent",
                    reason="duplicate_sha_and_digest",
                    dispatch_sha=dispatch_sha,
                    digest=digest,
                    classification=classification,
                ),
            )

        if self._client is None:
            return self._decide(
                loop,
                DispatchOutcome(
                    mode="failed",
                    reason="agent_client_missing",
                    dispatch_sha=dispatch_sha,
                    digest=digest,
                    classification=classification,
                    error="coding agent client is not configured",
                ),
            )

        if not agent_id:
            return self._decide(
                loop,
                DispatchOutcome(
                    mode="failed",
                    reason="agent_missing",
                    dispatch_sha=dispatch_sha,
                    digest=digest,
                    classification=classification,
                    error="no coding agent is linked to the review loop",
                ),
            )

        text = format_followup(loop, pull_request, classification.dispatchable)
        try:
            self._client.add_followup(agent_id, text)
        except AgentClientError as exc:
            return self._decide(
                loop,
                DispatchOutcome(
                    mode="failed",
                    reason="add_followup_error",
                    dispatch_sha=dispatch_sha,
                    digest=digest,
                    classification=classification,
                    error=str(exc),
                ),
            )

        loop.last_feedback_dispatch_at = now
        loop.last_feedback_dispatch_sha = dispatch_sha
        loop.last_feedback_digest = digest
        return self._decide(
            loop,
            DispatchOutcome(
                mode="direct",
                reason="dispatched",
                dispatch_sha=dispatch_sha,
                digest=digest,
                classification=classification,
            ),
        )

    def _decide(self, loop: ReviewLoop, outcome: DispatchOutcome) -> DispatchOutcome:
        classification = outcome.classification
        fields: dict[str, object] = {
            "review_loop_id": loop.id,
            "dispatch_mode": outcome.mode,
            "decision_reason": outcome.reason,
            "iteration": loop.iteration,
            "dispatch_sha": outcome.dispatch_sha,
            "dispatch_digest": outcome.digest[:16],
            "new_count": len(classification.new),
            "repeated_count": len(classification.repeated),
            "dismissed_count": classification.dismissed_count,
            "dispatchable_count": len(classification.dispatchable),
        }
        if outcome.failed:
            log_warning(LOGGER, "feedback_dispatch_failed", error=outcome.error, **fields)
        else:
            log_event(LOGGER, "feedback_dispatched" if outcome.dispatched else "feedback_dispatch_skipped", **fields)
        return outcome
