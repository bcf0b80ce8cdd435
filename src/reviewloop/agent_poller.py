from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import TYPE_CHECKING, Callable

from reviewloop.agent_client import AgentClientError, AgentSnapshot, CodingAgentClient
from reviewloop.dispatcher import DispatchError
from reviewloop.github_gateway import GitHubPollingError
from reviewloop.models import AgentRecord, AgentStatus, is_terminal_agent_status, utc_now_iso
from reviewloop.notifications import NotificationOutbox
from reviewloop.observability import log_event, log_warning
from reviewloop.shell import CommandError
from reviewloop.state import StateStore

if TYPE_CHECKING:
    from reviewloop.review_loop import ReviewLoopEngine


LOGGER = logging.getLogger("reviewloop.agent_poller")

_ACTIVE_STATUSES: tuple[AgentStatus, ...] = ("CREATING", "RUNNING")


@dataclass(frozen=True)
class SweepResult:
    refreshed: int
    started: tuple[str, ...]
    failed: tuple[str, ...]


def apply_agent_snapshot(
    store: StateStore, record: AgentRecord, snapshot: AgentSnapshot, *, now: str
) -> AgentRecord:
    """Persist a polled status against a fresh read of the stored record.

    The stored record wins once it is terminal, so a cancel that lands while a
    poll is in flight is never undone by the poll result.
    """
    current = store.get_agent_record(record.id) or record
    if is_terminal_agent_status(current.status):
        if snapshot.status != current.status:
            log_event(
                LOGGER,
                "agent_status_update_skipped",
                agent_record_id=current.id,
                stored_status=current.status,
                polled_status=snapshot.status,
            )
        return current

    updated = replace(
        current,
        status=snapshot.status,
        pr_url=current.pr_url or snapshot.pr_url,
        branch_name=current.branch_name or snapshot.branch_name,
        summary=snapshot.summary or current.summary,
    )
    if updated == current:
        return current
    updated = replace(updated, updated_at=now)
    store.upsert_agent_record(updated)
    if updated.status != current.status:
        log_event(
            LOGGER,
            "agent_status_changed",
            agent_record_id=current.id,
            agent_id=current.agent_id,
            from_status=current.status,
            to_status=updated.status,
        )
    return updated


class AgentStatusPoller:
    def __init__(
        self,
        store: StateStore,
        client: CodingAgentClient,
        engine: ReviewLoopEngine,
        outbox: NotificationOutbox,
        *,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._store = store
        self._client = client
        self._engine = engine
        self._outbox = outbox
        self._clock = clock

    def refresh(self, record: AgentRecord) -> AgentRecord:
        snapshot = self._client.get_agent(record.agent_id)
        return apply_agent_snapshot(self._store, record, snapshot, now=self._clock())

    def cancel(self, record_id: str) -> AgentRecord:
        record = self._store.get_agent_record(record_id)
        if record is None:
            raise KeyError(f"Unknown agent record: {record_id}")
        if is_terminal_agent_status(record.status):
            return record
        self._client.stop_agent(record.agent_id)
        stopped = replace(record, status="STOPPED", updated_at=self._clock())
        self._store.upsert_agent_record(stopped)
        if stopped.pr_url:
            self._outbox.cancel(stopped.pr_url)
        log_event(
            LOGGER,
            "agent_status_changed",
            agent_record_id=record.id,
            agent_id=record.agent_id,
            from_status=record.status,
            to_status="STOPPED",
        )
        return stopped

    def sweep(self) -> SweepResult:
        """Refresh running agents, then start loops for finished agents that lack one."""
        refreshed = 0
        failed: list[str] = []
        for record in self._store.list_agent_records(statuses=_ACTIVE_STATUSES):
            try:
                self.refresh(record)
            except AgentClientError as exc:
                failed.append(record.id)
                log_warning(
                    LOGGER,
                    "agent_refresh_failed",
                    agent_record_id=record.id,
                    status_code=exc.status_code,
                    error=str(exc),
                )
                continue
            refreshed += 1

        started: list[str] = []
        if self._engine.config.enabled:
            for record in self._store.list_agent_records(statuses=("FINISHED",)):
                if not record.pr_url:
                    continue
                if self._store.get_review_loop_by_pr_url(record.pr_url) is not None:
                    continue
                log_event(
                    LOGGER, "janitor_bootstrap", agent_record_id=record.id, pr_url=record.pr_url
                )
                try:
                    loop = self._engine.start_review_loop(record)
                except (GitHubPollingError, CommandError, AgentClientError, DispatchError, ValueError) as exc:
                    failed.append(record.id)
                    log_warning(
                        LOGGER,
                        "janitor_bootstrap_failed",
                        agent_record_id=record.id,
                        pr_url=record.pr_url,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    continue
                started.append(loop.id)

        pruned = self._store.prune_deliveries()
        log_event(
            LOGGER,
            "sweep_completed",
            refreshed=refreshed,
            started=len(started),
            failed=len(failed),
            deliveries_pruned=pruned,
        )
        return SweepResult(refreshed=refreshed, started=tuple(started), failed=tuple(failed))
