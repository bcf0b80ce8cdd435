from __future__ import annotations

from dataclasses import replace
import logging
from typing import Callable
import uuid

from reviewloop.agent_client import CodingAgentClient
from reviewloop.agent_poller import apply_agent_snapshot
from reviewloop.config import ReviewLoopConfig
from reviewloop.dispatcher import DispatchError, FeedbackDispatcher
from reviewloop.feedback_classify import classify
from reviewloop.feedback_extract import collect_feedback_candidates, reviewer_type_for_login
from reviewloop.github_gateway import GitHubGateway, parse_pull_request_url
from reviewloop.models import (
    AgentRecord,
    PullRequestEvent,
    PullRequestReviewEvent,
    PullRequestSnapshot,
    ReviewLoop,
    ReviewLoopEvent,
    ReviewLoopPhase,
    is_terminal_agent_status,
    utc_now_iso,
)
from reviewloop.notifications import (
    REVIEW_LOOP_CHANGED_EVENT,
    NotificationOutbox,
    dispatch_failed_attachment,
    max_iterations_attachment,
    pull_request_closed_attachment,
    pull_request_opened_attachment,
    review_approved_attachment,
    review_complete_attachment,
    review_loop_changed_payload,
    review_submitted_attachment,
)
from reviewloop.observability import log_event, log_warning
from reviewloop.state import StateStore


LOGGER = logging.getLogger("reviewloop.review_loop")

SATISFIED_BODY_MARKER = "Actionable comments posted: 0"

GitHubFactory = Callable[[str, str], GitHubGateway]


def _new_loop_id() -> str:
    return uuid.uuid4().hex


def await_review_detail(bots: tuple[str, ...]) -> str:
    if not bots:
        return "Awaiting AI review (auto-detection)"
    return f"Requested: {', '.join(bots)}"


def is_satisfied_review(state: str, body: str) -> bool:
    return state.lower() == "approved" or SATISFIED_BODY_MARKER in body


class ReviewLoopEngine:
    """Per-PR phase machine driven by webhook events.

    Each handler loads the loop fresh, mutates it, saves it, and only then lets
    queued notifications run. External failures propagate to the caller after
    being logged so the delivery can be retried.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        github_factory: GitHubFactory,
        agent_client: CodingAgentClient | None,
        outbox: NotificationOutbox,
        config: ReviewLoopConfig,
        clock: Callable[[], str] = utc_now_iso,
        id_factory: Callable[[], str] = _new_loop_id,
    ) -> None:
        self._store = store
        self._github_factory = github_factory
        self._agent_client = agent_client
        self._dispatcher = FeedbackDispatcher(agent_client)
        self._outbox = outbox
        self._config = config
        self._clock = clock
        self._id_factory = id_factory

    @property
    def config(self) -> ReviewLoopConfig:
        return self._config

    def start_review_loop(self, record: AgentRecord) -> ReviewLoop:
        if not record.pr_url:
            raise ValueError(f"Agent record {record.id} has no pull request URL")
        ref = parse_pull_request_url(record.pr_url)

        existing = self._store.get_review_loop_by_pr_url(ref.html_url)
        if existing is not None:
            log_event(
                LOGGER,
                "review_loop_exists",
                review_loop_id=existing.id,
                pr_url=ref.html_url,
            )
            return existing

        now = self._clock()
        loop = ReviewLoop(
            id=self._id_factory(),
            agent_record_id=record.id,
            repo_owner=ref.owner,
            repo_name=ref.name,
            pr_number=ref.number,
            pr_url=ref.html_url,
            phase="requesting_review",
            iteration=1,
            created_at=now,
            updated_at=now,
            workflow_id=self._store.get_workflow_for_agent(record.id),
            history=[ReviewLoopEvent(phase="requesting_review", at=now)],
        )
        if not self._store.create_review_loop(loop):
            # Another delivery created the loop between our lookup and insert.
            existing = self._store.get_review_loop_by_pr_url(ref.html_url)
            if existing is None:
                raise RuntimeError(f"Review loop id {loop.id} already exists for another PR")
            log_event(
                LOGGER,
                "review_loop_exists",
                review_loop_id=existing.id,
                pr_url=ref.html_url,
                concurrent=True,
            )
            return existing

        github = self._github_factory(ref.owner, ref.name)
        try:
            github.mark_ready_for_review(ref.number)
        except Exception as exc:  # noqa: BLE001
            # Dropping the loop lets the next bootstrap or sweep start over cleanly.
            self._store.delete_review_loop(loop.id)
            log_event(
                LOGGER,
                "review_loop_start_failed",
                review_loop_id=loop.id,
                pr_url=loop.pr_url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        bots = self._config.ai_reviewer_bots
        if not bots:
            log_event(LOGGER, "review_request_skipped", pr_url=loop.pr_url, reason="no_bots")
        else:
            try:
                github.request_reviewers(ref.number, bots)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "review_request_failed",
                    pr_url=loop.pr_url,
                    reviewers=",".join(bots),
                    error_type=type(exc).__name__,
                )

        loop.transition("awaiting_review", at=self._clock(), detail=await_review_detail(bots))
        self._announce_change(loop)
        self._outbox.enqueue(
            loop.pr_url, "add_reaction:eyes", lambda sink: sink.add_reaction(pr_url=loop.pr_url, emoji="eyes")
        )
        self._save(loop)
        log_event(
            LOGGER,
            "review_loop_started",
            review_loop_id=loop.id,
            agent_record_id=record.id,
            pr_url=loop.pr_url,
            workflow_id=loop.workflow_id,
        )
        return loop

    def ensure_review_loop(self, pr_url: str) -> ReviewLoop | None:
        """Return the PR's loop, starting one when its agent run already finished."""
        loop = self._store.get_review_loop_by_pr_url(pr_url)
        if loop is not None:
            return loop
        if not self._config.enabled:
            return None
        record = self._store.get_agent_record_by_pr_url(pr_url)
        if record is None:
            return None
        record = self._refresh_agent_status(record)
        if not is_terminal_agent_status(record.status):
            return None
        log_event(LOGGER, "review_loop_bootstrap", agent_record_id=record.id, pr_url=pr_url)
        self.start_review_loop(record)
        return self._store.get_review_loop_by_pr_url(pr_url)

    def handle_review_event(self, event: PullRequestReviewEvent) -> ReviewLoop | None:
        if event.action != "submitted":
            log_event(LOGGER, "review_event_ignored", action=event.action)
            return None

        pull_request = event.pull_request
        review = event.review
        loop = self.ensure_review_loop(pull_request.html_url)
        if loop is not None:
            reviewer_type = reviewer_type_for_login(review.user_login, self._config.ai_reviewer_bots)
            if loop.phase == "awaiting_review" and reviewer_type == "ai_bot":
                self._handle_bot_review(loop, event)
            elif loop.phase == "human_review" and reviewer_type == "human":
                self._handle_human_review(loop, event)
            else:
                log_event(
                    LOGGER,
                    "review_informational",
                    review_loop_id=loop.id,
                    phase=loop.phase,
                    reviewer=review.user_login,
                    reviewer_type=reviewer_type,
                    state=review.state,
                )

        if self._find_agent_for_pr(pull_request) is not None:
            attachment = review_submitted_attachment(pull_request, review)
            if attachment is not None:
                self._outbox.enqueue(
                    pull_request.html_url,
                    "post_attachment:review",
                    lambda sink: sink.post_attachment(
                        pr_url=pull_request.html_url, attachment=attachment
                    ),
                )
                self._outbox.flush(pull_request.html_url)
        return loop

    def handle_pull_request_event(self, event: PullRequestEvent) -> ReviewLoop | None:
        if event.action == "synchronize":
            return self._handle_synchronize(event.pull_request)
        if event.action == "opened":
            return self._handle_opened(event.pull_request)
        if event.action == "closed":
            return self._handle_closed(event.pull_request)
        log_event(LOGGER, "pull_request_event_ignored", action=event.action)
        return None

    def _handle_bot_review(self, loop: ReviewLoop, event: PullRequestReviewEvent) -> None:
        review = event.review
        if review.user_login.lower() != self._config.primary_bot.lower():
            log_event(
                LOGGER,
                "review_informational",
                review_loop_id=loop.id,
                phase=loop.phase,
                reviewer=review.user_login,
                reason="not_primary_bot",
            )
            return

        if not is_satisfied_review(review.state, review.body):
            self._run_feedback_iteration(loop, event.pull_request, human=False)
            return

        now = self._clock()
        iteration = loop.iteration
        loop.transition("approved", at=now, detail=f"Approved after {iteration} iteration(s)")
        self._announce_change(loop)
        pr_url = loop.pr_url
        self._outbox.enqueue(
            pr_url,
            "post_attachment:approved",
            lambda sink: sink.post_attachment(
                pr_url=pr_url, attachment=review_approved_attachment(pr_url, iteration)
            ),
        )
        self._outbox.enqueue(
            pr_url,
            "swap_reaction:white_check_mark",
            lambda sink: sink.swap_reaction(pr_url=pr_url, remove="eyes", add="white_check_mark"),
        )

        loop.transition("human_review", at=self._clock())
        self._request_human_reviewers(loop)
        self._announce_change(loop)
        self._save(loop)
        self._log_phase_change(loop, "approved")

    def _handle_human_review(self, loop: ReviewLoop, event: PullRequestReviewEvent) -> None:
        review = event.review
        state = review.state.lower()
        if state == "approved":
            loop.transition("complete", at=self._clock(), detail=f"Approved by {review.user_login}")
            pr_url = loop.pr_url
            reviewer = review.user_login
            self._outbox.enqueue(
                pr_url,
                "post_attachment:complete",
                lambda sink: sink.post_attachment(
                    pr_url=pr_url, attachment=review_complete_attachment(pr_url, reviewer)
                ),
            )
            self._outbox.enqueue(
                pr_url, "add_reaction:rocket", lambda sink: sink.add_reaction(pr_url=pr_url, emoji="rocket")
            )
            self._announce_change(loop)
            self._save(loop)
            self._log_phase_change(loop, "human_review")
            return
        if state == "changes_requested":
            self._run_feedback_iteration(loop, event.pull_request, human=True)
            return
        log_event(
            LOGGER,
            "review_informational",
            review_loop_id=loop.id,
            phase=loop.phase,
            reviewer=review.user_login,
            state=state,
        )

    def _run_feedback_iteration(
        self, loop: ReviewLoop, pull_request: PullRequestSnapshot, *, human: bool
    ) -> None:
        previous_phase = loop.phase
        max_iterations = self._config.max_review_iterations
        if loop.iteration >= max_iterations:
            loop.transition(
                "max_iterations", at=self._clock(), detail=f"Reached max iterations ({max_iterations})"
            )
            pr_url = loop.pr_url
            self._outbox.enqueue(
                pr_url,
                "post_attachment:max_iterations",
                lambda sink: sink.post_attachment(
                    pr_url=pr_url, attachment=max_iterations_attachment(pr_url, max_iterations)
                ),
            )
            self._outbox.enqueue(
                pr_url,
                "swap_reaction:warning",
                lambda sink: sink.swap_reaction(pr_url=pr_url, remove="eyes", add="warning"),
            )
            self._announce_change(loop)
            self._save(loop)
            self._log_phase_change(loop, previous_phase)
            return

        github = self._github_factory(loop.repo_owner, loop.repo_name)
        harvest = collect_feedback_candidates(
            loop,
            github,
            bots=self._config.ai_reviewer_bots,
            prompt_bot=self._config.primary_bot,
        )
        now = self._clock()
        previous_findings = loop.findings
        classification = classify(loop, harvest.candidates, now)
        record = self._store.get_agent_record(loop.agent_record_id)
        outcome = self._dispatcher.dispatch(
            loop=loop,
            agent_id=record.agent_id if record is not None else "",
            pull_request=pull_request,
            classification=classification,
            now=now,
        )
        counts = classification.count_summary()

        if outcome.skipped:
            loop.record(
                at=now,
                detail=f"Skipped duplicate follow-up for {outcome.dispatch_sha[:12]} ({counts})",
            )
            self._save(loop)
            return

        if outcome.failed:
            error = outcome.error or outcome.reason
            loop.record(
                at=now,
                detail=f"Follow-up dispatch failed ({outcome.reason}); manual intervention required ({counts})",
            )
            # The ledger only advances once a follow-up is delivered.
            loop.findings = previous_findings
            pr_url = loop.pr_url
            self._outbox.enqueue(
                pr_url,
                "post_attachment:dispatch_failed",
                lambda sink: sink.post_attachment(
                    pr_url=pr_url, attachment=dispatch_failed_attachment(pr_url, error)
                ),
            )
            self._save(loop)
            raise DispatchError(
                f"Follow-up for review loop {loop.id} was not delivered: {error}",
                reason=outcome.reason,
            )

        loop.iteration += 1
        label = "Human feedback iteration" if human else "Iteration"
        loop.transition(
            "cursor_fixing",
            at=now,
            detail=f"{label} {loop.iteration}: direct follow-up dispatched ({counts})",
        )
        self._announce_change(loop)
        self._save(loop)
        self._log_phase_change(loop, previous_phase)

    def _handle_synchronize(self, pull_request: PullRequestSnapshot) -> ReviewLoop | None:
        loop = self._store.get_review_loop_by_pr_url(pull_request.html_url)
        if loop is None or loop.phase != "cursor_fixing":
            log_event(
                LOGGER,
                "synchronize_ignored",
                pr_url=pull_request.html_url,
                phase=loop.phase if loop is not None else None,
            )
            return loop
        if pull_request.head_sha:
            loop.last_commit_sha = pull_request.head_sha
        loop.transition("awaiting_review", at=self._clock(), detail="Cursor pushed fixes")
        self._announce_change(loop)
        self._save(loop)
        self._log_phase_change(loop, "cursor_fixing")
        return loop

    def _handle_opened(self, pull_request: PullRequestSnapshot) -> ReviewLoop | None:
        record = self._find_agent_for_pr(pull_request)
        if record is None:
            log_event(LOGGER, "pull_request_unmatched", pr_url=pull_request.html_url)
            return None

        backfilled = replace(
            record,
            pr_url=record.pr_url or pull_request.html_url,
            branch_name=record.branch_name or pull_request.head_ref,
        )
        if backfilled != record:
            record = replace(backfilled, updated_at=self._clock())
            self._store.upsert_agent_record(record)
            log_event(LOGGER, "agent_record_backfilled", agent_record_id=record.id, pr_url=record.pr_url)

        pr_url = pull_request.html_url
        self._outbox.enqueue(
            pr_url,
            "post_attachment:opened",
            lambda sink: sink.post_attachment(
                pr_url=pr_url, attachment=pull_request_opened_attachment(pull_request)
            ),
        )
        self._outbox.flush(pr_url)

        # A still-running agent is picked up by the status poller once it finishes.
        if not (self._config.enabled and is_terminal_agent_status(record.status)):
            return None
        return self.start_review_loop(record)

    def _handle_closed(self, pull_request: PullRequestSnapshot) -> ReviewLoop | None:
        pr_url = pull_request.html_url
        if self._find_agent_for_pr(pull_request) is not None:
            self._outbox.enqueue(
                pr_url,
                "post_attachment:closed",
                lambda sink: sink.post_attachment(
                    pr_url=pr_url, attachment=pull_request_closed_attachment(pull_request)
                ),
            )
            if pull_request.merged:
                self._outbox.enqueue(
                    pr_url,
                    "swap_reaction:rocket",
                    lambda sink: sink.swap_reaction(pr_url=pr_url, remove="white_check_mark", add="rocket"),
                )

        loop = self._store.get_review_loop_by_pr_url(pr_url)
        if loop is None or loop.is_terminal:
            self._outbox.flush(pr_url)
            return loop

        previous_phase = loop.phase
        target: ReviewLoopPhase = "complete" if pull_request.merged else "rejected"
        detail = "Pull request merged" if pull_request.merged else "Pull request closed without merging"
        loop.transition(target, at=self._clock(), detail=detail)
        self._announce_change(loop)
        self._save(loop)
        self._log_phase_change(loop, previous_phase)
        return loop

    def _request_human_reviewers(self, loop: ReviewLoop) -> None:
        team = self._config.human_review_team
        if not team:
            return
        github = self._github_factory(loop.repo_owner, loop.repo_name)
        try:
            github.request_reviewers(loop.pr_number, team_reviewers=(team,))
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "review_request_failed",
                pr_url=loop.pr_url,
                reviewers=team,
                error_type=type(exc).__name__,
            )

    def _refresh_agent_status(self, record: AgentRecord) -> AgentRecord:
        if self._agent_client is None or is_terminal_agent_status(record.status):
            return record
        snapshot = self._agent_client.get_agent(record.agent_id)
        return apply_agent_snapshot(self._store, record, snapshot, now=self._clock())

    def _find_agent_for_pr(self, pull_request: PullRequestSnapshot) -> AgentRecord | None:
        if pull_request.html_url:
            record = self._store.get_agent_record_by_pr_url(pull_request.html_url)
            if record is not None:
                return record
        if not pull_request.head_ref:
            return None
        for candidate in self._store.list_agent_records():
            if candidate.branch_name == pull_request.head_ref:
                return candidate
        return None

    def _announce_change(self, loop: ReviewLoop) -> None:
        pr_url = loop.pr_url
        status = f"AI review: {loop.phase} (iteration {loop.iteration})"
        payload = review_loop_changed_payload(loop)
        self._outbox.enqueue(pr_url, "post_status", lambda sink: sink.post_status(pr_url=pr_url, text=status))
        self._outbox.enqueue(
            pr_url, "broadcast", lambda sink: sink.broadcast(REVIEW_LOOP_CHANGED_EVENT, payload)
        )

    def _save(self, loop: ReviewLoop) -> None:
        self._store.save_review_loop(loop)
        self._outbox.flush(loop.pr_url)

    def _log_phase_change(self, loop: ReviewLoop, previous_phase: ReviewLoopPhase) -> None:
        log_event(
            LOGGER,
            "review_loop_phase_changed",
            review_loop_id=loop.id,
            pr_url=loop.pr_url,
            from_phase=previous_phase,
            to_phase=loop.phase,
            iteration=loop.iteration,
        )
