from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
import logging
import threading
from typing import Callable, Literal

from reviewloop.models import PullRequestSnapshot, ReviewLoop, ReviewSubmission
from reviewloop.observability import log_event, log_warning
from reviewloop.text import normalize, truncate


LOGGER = logging.getLogger("reviewloop.notifications")

AttachmentColor = Literal["green", "red", "blue", "orange", "gray"]
REVIEW_LOOP_CHANGED_EVENT = "review_loop_changed"
REVIEW_BODY_PREVIEW_LEN = 200


@dataclass(frozen=True)
class Attachment:
    title: str
    text: str
    color: AttachmentColor = "blue"
    title_link: str = ""


class NotificationSink(ABC):
    """Host-side surface for user-visible side effects.

    Threads and reactions are addressed by PR URL; the host maps that to whatever
    conversation the originating agent run was started from.
    """

    @abstractmethod
    def post_status(self, *, pr_url: str, text: str) -> None:
        """Update the inline status line for the PR's thread."""

    @abstractmethod
    def post_attachment(self, *, pr_url: str, attachment: Attachment) -> None:
        """Post a rich message into the PR's thread."""

    @abstractmethod
    def add_reaction(self, *, pr_url: str, emoji: str) -> None:
        """Add a reaction to the message that triggered the agent run."""

    @abstractmethod
    def remove_reaction(self, *, pr_url: str, emoji: str) -> None:
        """Remove a reaction from the triggering message."""

    @abstractmethod
    def broadcast(self, event: str, payload: dict[str, str]) -> None:
        """Publish a structured change event to connected clients."""

    def swap_reaction(self, *, pr_url: str, remove: str, add: str) -> None:
        self.remove_reaction(pr_url=pr_url, emoji=remove)
        self.add_reaction(pr_url=pr_url, emoji=add)


class LoggingNotificationSink(NotificationSink):
    def post_status(self, *, pr_url: str, text: str) -> None:
        log_event(LOGGER, "notification_status", pr_url=pr_url, text=text)

    def post_attachment(self, *, pr_url: str, attachment: Attachment) -> None:
        log_event(
            LOGGER,
            "notification_attachment",
            pr_url=pr_url,
            title=attachment.title,
            color=attachment.color,
        )

    def add_reaction(self, *, pr_url: str, emoji: str) -> None:
        log_event(LOGGER, "notification_reaction_added", pr_url=pr_url, emoji=emoji)

    def remove_reaction(self, *, pr_url: str, emoji: str) -> None:
        log_event(LOGGER, "notification_reaction_removed", pr_url=pr_url, emoji=emoji)

    def broadcast(self, event: str, payload: dict[str, str]) -> None:
        log_event(LOGGER, "notification_broadcast", broadcast_event=event, **payload)


def review_loop_changed_payload(loop: ReviewLoop) -> dict[str, str]:
    return {
        "review_loop_id": loop.id,
        "agent_record_id": loop.agent_record_id,
        "phase": loop.phase,
        "iteration": str(loop.iteration),
        "pr_url": loop.pr_url,
        "updated_at": loop.updated_at,
    }


def review_approved_attachment(pr_url: str, iteration: int) -> Attachment:
    return Attachment(
        title="AI review passed",
        text=f"The automated reviewers are satisfied after {iteration} iteration(s). Human review is next.",
        color="green",
        title_link=pr_url,
    )


def max_iterations_attachment(pr_url: str, max_iterations: int) -> Attachment:
    return Attachment(
        title="AI review loop stopped",
        text=(
            f"Reached the limit of {max_iterations} review iteration(s) without approval. "
            "Manual review is needed."
        ),
        color="orange",
        title_link=pr_url,
    )


def review_complete_attachment(pr_url: str, reviewer: str) -> Attachment:
    return Attachment(
        title="Review complete",
        text=f"Approved by {reviewer}.",
        color="green",
        title_link=pr_url,
    )


def dispatch_failed_attachment(pr_url: str, error: str) -> Attachment:
    return Attachment(
        title="Review feedback not delivered",
        text=f"The coding agent did not accept the follow-up ({error}). Manual intervention is required.",
        color="red",
        title_link=pr_url,
    )


def pull_request_opened_attachment(pull_request: PullRequestSnapshot) -> Attachment:
    return Attachment(
        title=f"PR #{pull_request.number}: {pull_request.title}",
        text=f"Pull request opened on branch `{pull_request.head_ref}`.",
        color="blue",
        title_link=pull_request.html_url,
    )


def pull_request_closed_attachment(pull_request: PullRequestSnapshot) -> Attachment:
    merged = pull_request.merged
    return Attachment(
        title=f"PR #{pull_request.number}: {pull_request.title}",
        text=(
            "This pull request has been merged."
            if merged
            else "This pull request was closed without merging."
        ),
        color="green" if merged else "gray",
        title_link=pull_request.html_url,
    )


def review_submitted_attachment(
    pull_request: PullRequestSnapshot, review: ReviewSubmission
) -> Attachment | None:
    """Thread message for a submitted review, or None when there is nothing to show."""
    prefix = f"PR #{pull_request.number}"
    reviewer = review.user_login
    link = review.html_url or pull_request.html_url
    body = truncate(normalize(review.body), REVIEW_BODY_PREVIEW_LEN)
    state = review.state.lower()
    if state == "approved":
        return Attachment(title=f"{prefix} approved by {reviewer}", text="", color="green", title_link=link)
    if state == "changes_requested":
        return Attachment(
            title=f"{prefix}: {reviewer} requested changes", text=body, color="red", title_link=link
        )
    if state == "commented" and body:
        return Attachment(title=f"{prefix}: {reviewer} commented", text=body, color="blue", title_link=link)
    return None


NotificationAction = Callable[[NotificationSink], None]


@dataclass(frozen=True)
class _Pending:
    label: str
    action: NotificationAction


@dataclass
class _DrainSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class NotificationOutbox:
    """Ordered, per-loop queue of notification side effects.

    The engine enqueues while handling an event and flushes after the loop is
    saved. Actions for one key always run in enqueue order; a failing action is
    logged and the rest still run. ``cancel`` drops whatever has not run yet.
    With an executor, flushes run off the caller's thread.
    """

    def __init__(self, sink: NotificationSink, *, executor: Executor | None = None) -> None:
        self._sink = sink
        self._executor = executor
        self._lock = threading.Lock()
        self._pending: dict[str, deque[_Pending]] = {}
        self._drain_slots: dict[str, _DrainSlot] = {}

    def enqueue(self, key: str, label: str, action: NotificationAction) -> None:
        with self._lock:
            self._pending.setdefault(key, deque()).append(_Pending(label=label, action=action))

    def pending_labels(self, key: str) -> tuple[str, ...]:
        with self._lock:
            return tuple(item.label for item in self._pending.get(key, ()))

    def tracked_keys(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._pending) | frozenset(self._drain_slots)

    def cancel(self, key: str) -> int:
        with self._lock:
            dropped = self._pending.pop(key, deque())
            slot = self._drain_slots.get(key)
            if slot is not None and slot.users == 0:
                del self._drain_slots[key]
        if dropped:
            log_event(LOGGER, "notifications_cancelled", key=key, count=len(dropped))
        return len(dropped)

    def flush(self, key: str) -> Future[int] | int:
        if self._executor is not None:
            return self._executor.submit(self._drain, key)
        return self._drain(key)

    def _drain(self, key: str) -> int:
        with self._lock:
            slot = self._drain_slots.setdefault(key, _DrainSlot())
            slot.users += 1
        try:
            return self._drain_queue(key, slot.lock)
        finally:
            with self._lock:
                slot.users -= 1
                # Waiting drainers keep the slot so they stay serialized on the same lock.
                if slot.users == 0 and key not in self._pending and self._drain_slots.get(key) is slot:
                    del self._drain_slots[key]

    def _drain_queue(self, key: str, drain_lock: threading.Lock) -> int:
        delivered = 0
        with drain_lock:
            while True:
                with self._lock:
                    queue = self._pending.get(key)
                    if not queue:
                        self._pending.pop(key, None)
                        return delivered
                    item = queue.popleft()
                try:
                    item.action(self._sink)
                    delivered += 1
                except Exception as exc:  # noqa: BLE001
                    log_warning(
                        LOGGER,
                        "notification_failed",
                        key=key,
                        label=item.label,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
