from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import cast

import pytest

from reviewloop.agent_client import AgentClientError, AgentSnapshot, CodingAgentClient
from reviewloop.agent_poller import AgentStatusPoller, apply_agent_snapshot
from reviewloop.config import ReviewLoopConfig
from reviewloop.github_gateway import GitHubPollingError
from reviewloop.models import AgentRecord, AgentStatus, ReviewLoop
from reviewloop.notifications import LoggingNotificationSink, NotificationOutbox
from reviewloop.review_loop import ReviewLoopEngine
from reviewloop.state import StateStore

PR_URL = "https://github.com/o/r/pull/7"


class FakeAgentClient:
    def __init__(self, snapshots: dict[str, AgentSnapshot | Exception] | None = None) -> None:
        self.snapshots = snapshots or {}
        self.stopped: list[str] = []

    def get_agent(self, agent_id: str) -> AgentSnapshot:
        snapshot = self.snapshots[agent_id]
        if isinstance(snapshot, Exception):
            raise snapshot
        return snapshot

    def stop_agent(self, agent_id: str) -> str:
        self.stopped.append(agent_id)
        return agent_id


class FakeEngine:
    def __init__(self, store: StateStore, *, enabled: bool = True, error: Exception | None = None) -> None:
        self.store = store
        self.config = ReviewLoopConfig(enabled=enabled)
        self.error = error
        self.started: list[str] = []

    def start_review_loop(self, record: AgentRecord) -> ReviewLoop:
        if self.error is not None:
            raise self.error
        self.started.append(record.id)
        loop = ReviewLoop(
            id=f"loop-{record.id}",
            agent_record_id=record.id,
            repo_owner="o",
            repo_name="r",
            pr_number=7,
            pr_url=record.pr_url,
            phase="awaiting_review",
            iteration=1,
            created_at="t0",
            updated_at="t0",
        )
        self.store.save_review_loop(loop)
        return loop


def _record(record_id: str, status: AgentStatus, *, pr_url: str = "") -> AgentRecord:
    return AgentRecord(
        id=record_id,
        agent_id=f"bc-{record_id}",
        status=status,
        repository="o/r",
        pr_url=pr_url,
        updated_at="2026-01-01T00:00:00.000000Z",
    )


def _poller(
    store: StateStore, client: FakeAgentClient, engine: FakeEngine, outbox: NotificationOutbox | None = None
) -> AgentStatusPoller:
    return AgentStatusPoller(
        store,
        cast(CodingAgentClient, client),
        cast(ReviewLoopEngine, engine),
        outbox or NotificationOutbox(LoggingNotificationSink()),
        clock=lambda: "2026-01-02T00:00:00.000000Z",
    )


def test_apply_snapshot_merges_pull_request_fields(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    record = _record("rec-1", "RUNNING")
    store.upsert_agent_record(record)

    updated = apply_agent_snapshot(
        store,
        record,
        AgentSnapshot(agent_id="bc-rec-1", status="FINISHED", pr_url=PR_URL, branch_name="agent/x", summary="done"),
        now="t9",
    )

    assert (updated.status, updated.pr_url, updated.branch_name, updated.summary) == (
        "FINISHED",
        PR_URL,
        "agent/x",
        "done",
    )
    assert store.get_agent_record("rec-1") == updated
    assert updated.updated_at == "t9"


def test_apply_snapshot_keeps_terminal_stored_status(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    running = _record("rec-1", "RUNNING")
    store.upsert_agent_record(_record("rec-1", "STOPPED"))

    result = apply_agent_snapshot(
        store, running, AgentSnapshot(agent_id="bc-rec-1", status="RUNNING"), now="t9"
    )

    assert result.status == "STOPPED"
    stored = store.get_agent_record("rec-1")
    assert stored is not None and stored.status == "STOPPED"


def test_sweep_refreshes_and_bootstraps(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_agent_record(_record("rec-1", "RUNNING"))
    store.upsert_agent_record(_record("rec-2", "RUNNING"))
    store.upsert_agent_record(_record("rec-3", "FINISHED"))
    client = FakeAgentClient(
        {
            "bc-rec-1": AgentSnapshot(agent_id="bc-rec-1", status="FINISHED", pr_url=PR_URL),
            "bc-rec-2": AgentClientError("rate limited", status_code=429),
        }
    )
    engine = FakeEngine(store)
    now = datetime.now(timezone.utc)
    store.mark_delivery("old", event="ping", status_code=200, ttl=timedelta(minutes=1), now=now - timedelta(hours=1))

    result = _poller(store, client, engine).sweep()

    assert result.refreshed == 1
    assert result.failed == ("rec-2",)
    assert result.started == ("loop-rec-1",)
    assert engine.started == ["rec-1"]
    assert not store.is_delivery_seen("old")


def test_sweep_skips_bootstrap_when_disabled_or_loop_exists(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_agent_record(_record("rec-1", "FINISHED", pr_url=PR_URL))
    disabled = FakeEngine(store, enabled=False)

    assert _poller(store, FakeAgentClient(), disabled).sweep().started == ()

    enabled = FakeEngine(store)
    enabled.start_review_loop(_record("rec-1", "FINISHED", pr_url=PR_URL))
    enabled.started.clear()
    assert _poller(store, FakeAgentClient(), enabled).sweep().started == ()
    assert enabled.started == []


def test_sweep_records_bootstrap_failures(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_agent_record(_record("rec-1", "FINISHED", pr_url=PR_URL))
    engine = FakeEngine(store, error=GitHubPollingError("GitHub GET failed"))

    result = _poller(store, FakeAgentClient(), engine).sweep()

    assert result.started == ()
    assert result.failed == ("rec-1",)


def test_cancel_stops_agent_and_drops_notifications(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_agent_record(_record("rec-1", "RUNNING", pr_url=PR_URL))
    client = FakeAgentClient()
    outbox = NotificationOutbox(LoggingNotificationSink())
    outbox.enqueue(PR_URL, "status", lambda sink: sink.post_status(pr_url=PR_URL, text="x"))

    stopped = _poller(store, client, FakeEngine(store), outbox).cancel("rec-1")

    assert stopped.status == "STOPPED"
    assert client.stopped == ["bc-rec-1"]
    assert outbox.pending_labels(PR_URL) == ()
    stored = store.get_agent_record("rec-1")
    assert stored is not None and stored.status == "STOPPED"


def test_cancel_terminal_record_is_a_no_op(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_agent_record(_record("rec-1", "FINISHED"))
    client = FakeAgentClient()

    assert _poller(store, client, FakeEngine(store)).cancel("rec-1").status == "FINISHED"
    assert client.stopped == []


def test_cancel_unknown_record(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    with pytest.raises(KeyError):
        _poller(store, FakeAgentClient(), FakeEngine(store)).cancel("missing")
