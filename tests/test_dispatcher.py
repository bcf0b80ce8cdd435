from __future__ import annotations

from typing import cast

from reviewloop.agent_client import AgentClientError, CodingAgentClient
from reviewloop.dispatcher import (
    AUDIT_UNRESOLVED_THREADS_TEXT,
    FeedbackDispatcher,
    format_followup,
)
from reviewloop.feedback_classify import Classification
from reviewloop.models import PullRequestSnapshot, ReviewFinding, ReviewLoop
from reviewloop.text import feedback_digest


class FakeAgentClient:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.followups: list[tuple[str, str]] = []

    def add_followup(self, agent_id: str, text: str) -> str:
        if self.fail:
            raise AgentClientError("agent rejected follow-up", status_code=409)
        self.followups.append((agent_id, text))
        return agent_id


def _loop() -> ReviewLoop:
    return ReviewLoop(
        id="loop-1",
        agent_record_id="rec-1",
        repo_owner="o",
        repo_name="r",
        pr_number=7,
        pr_url="https://github.com/o/r/pull/7",
        phase="awaiting_review",
        iteration=2,
        created_at="t0",
        updated_at="t0",
        last_commit_sha="fallback-sha",
    )


def _pr(head_sha: str = "head-1") -> PullRequestSnapshot:
    return PullRequestSnapshot(
        number=7,
        html_url="https://github.com/o/r/pull/7",
        title="Add feature",
        state="open",
        merged=False,
        draft=False,
        head_ref="agent/feature",
        head_sha=head_sha,
    )


def _finding(text: str = "Close the file handle.") -> ReviewFinding:
    return ReviewFinding(
        key="k1",
        status="open",
        source_type="review_comment",
        reviewer_login="coderabbitai[bot]",
        reviewer_type="ai_bot",
        actionable_text=text,
        source_id="101",
        source_url="https://github.com/o/r/pull/7#discussion_r101",
        path="src/app.py",
        line=12,
        commit_sha="head-1",
    )


def _classification(*findings: ReviewFinding) -> Classification:
    return Classification(new=findings, dispatchable=findings)


def test_format_followup_lists_context_and_findings() -> None:
    text = format_followup(_loop(), _pr(), (_finding(),))

    assert text.startswith(
        "Apply the latest pull request review feedback and push fixes to the existing branch.\n\n"
        "PR context:\n- repository: o/r\n- pull_request_url: https://github.com/o/r/pull/7\n"
        "- pull_request_number: 7\n- branch: agent/feature\n- head_sha: head-1\n"
        "- review_loop_iteration: 2\n\nExecution constraints:\n"
    )
    assert "- do not create a new pull request\n" in text
    assert text.endswith(
        "Actionable findings:\n1. Close the file handle.\n"
        "   metadata: source_type=review_comment, source_id=101, "
        "source_url=https://github.com/o/r/pull/7#discussion_r101, path=src/app.py, line=12, "
        "reviewer=coderabbitai[bot], commit_sha=head-1"
    )


def test_format_followup_skips_empty_metadata_and_falls_back_to_loop_sha() -> None:
    bare = ReviewFinding(
        key="k2",
        status="open",
        source_type="review_body",
        reviewer_login="coderabbitai[bot]",
        reviewer_type="ai_bot",
        actionable_text="Tighten the error messages.",
        source_id="0",
    )

    text = format_followup(_loop(), None, (bare,))

    assert "- branch:" not in text
    assert "- head_sha: fallback-sha\n" in text
    assert text.endswith(
        "1. Tighten the error messages.\n   metadata: source_type=review_body, reviewer=coderabbitai[bot]"
    )


def test_format_followup_without_findings_uses_audit_instructions() -> None:
    text = format_followup(_loop(), _pr(), ())

    assert "No actionable findings were extracted from structured review data.\n" in text
    assert text.endswith(AUDIT_UNRESOLVED_THREADS_TEXT.strip())
    assert "Actionable findings:" not in text


def test_dispatch_sends_followup_and_records_bookkeeping() -> None:
    client = FakeAgentClient()
    loop = _loop()
    classification = _classification(_finding())

    outcome = FeedbackDispatcher(cast(CodingAgentClient, client)).dispatch(
        loop=loop, agent_id="bc-1", pull_request=_pr(), classification=classification, now="t5"
    )

    assert outcome.dispatched
    assert outcome.reason == "dispatched"
    assert [agent_id for agent_id, _ in client.followups] == ["bc-1"]
    assert loop.last_feedback_dispatch_sha == "head-1"
    assert loop.last_feedback_dispatch_at == "t5"
    assert loop.last_feedback_digest == feedback_digest(classification.dispatchable)


def test_dispatch_skips_same_sha_and_digest() -> None:
    client = FakeAgentClient()
    loop = _loop()
    classification = _classification(_finding())
    dispatcher = FeedbackDispatcher(cast(CodingAgentClient, client))
    dispatcher.dispatch(
        loop=loop, agent_id="bc-1", pull_request=_pr(), classification=classification, now="t5"
    )

    outcome = dispatcher.dispatch(
        loop=loop, agent_id="bc-1", pull_request=_pr(), classification=classification, now="t6"
    )

    assert outcome.skipped
    assert outcome.reason == "duplicate_sha_and_digest"
    assert len(client.followups) == 1
    assert loop.last_feedback_dispatch_at == "t5"


def test_dispatch_resends_same_digest_for_new_head() -> None:
    client = FakeAgentClient()
    loop = _loop()
    classification = _classification(_finding())
    dispatcher = FeedbackDispatcher(cast(CodingAgentClient, client))
    dispatcher.dispatch(
        loop=loop, agent_id="bc-1", pull_request=_pr(), classification=classification, now="t5"
    )

    outcome = dispatcher.dispatch(
        loop=loop,
        agent_id="bc-1",
        pull_request=_pr("head-2"),
        classification=classification,
        now="t6",
    )

    assert outcome.dispatched
    assert len(client.followups) == 2
    assert loop.last_feedback_dispatch_sha == "head-2"


def test_dispatch_failure_leaves_bookkeeping_unset() -> None:
    loop = _loop()

    outcome = FeedbackDispatcher(cast(CodingAgentClient, FakeAgentClient(fail=True))).dispatch(
        loop=loop,
        agent_id="bc-1",
        pull_request=_pr(),
        classification=_classification(_finding()),
        now="t5",
    )

    assert outcome.failed
    assert outcome.reason == "add_followup_error"
    assert outcome.error == "agent rejected follow-up"
    assert loop.last_feedback_dispatch_sha == ""
    assert loop.last_feedback_dispatch_at == ""
    assert loop.last_feedback_digest == ""


def test_dispatch_without_client_fails() -> None:
    loop = _loop()

    outcome = FeedbackDispatcher(None).dispatch(
        loop=loop,
        agent_id="bc-1",
        pull_request=_pr(),
        classification=_classification(_finding()),
        now="t5",
    )

    assert outcome.failed
    assert outcome.reason == "agent_client_missing"
    assert outcome.error == "coding agent client is not configured"


def test_dispatch_without_agent_fails() -> None:
    client = FakeAgentClient()

    outcome = FeedbackDispatcher(cast(CodingAgentClient, client)).dispatch(
        loop=_loop(),
        agent_id="",
        pull_request=_pr(),
        classification=_classification(_finding()),
        now="t5",
    )

    assert outcome.reason == "agent_missing"
    assert client.followups == []
