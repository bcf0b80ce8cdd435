from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sqlite3

import pytest

from reviewloop.models import AgentRecord, ReviewFinding, ReviewLoop, ReviewLoopEvent
from reviewloop.state import StateStore

PR_URL = "https://github.com/o/r/pull/7"


def _loop(loop_id: str = "loop-1", *, pr_url: str = PR_URL, phase: str = "awaiting_review") -> ReviewLoop:
    return ReviewLoop(
        id=loop_id,
        agent_record_id="rec-1",
        repo_owner="o",
        repo_name="r",
        pr_number=7,
        pr_url=pr_url,
        phase=phase,  # type: ignore[arg-type]
        iteration=2,
        created_at=f"2026-01-01T00:00:0{loop_id[-1]}.000000Z",
        updated_at="2026-01-01T00:00:09.000000Z",
        workflow_id="wf-1",
        last_commit_sha="head-1",
        history=[
            ReviewLoopEvent(phase="requesting_review", at="t0"),
            ReviewLoopEvent(phase="awaiting_review", at="t1", detail="Requested: coderabbitai[bot]"),
        ],
        findings=[
            ReviewFinding(
                key="k1",
                status="open",
                source_type="review_comment",
                reviewer_login="coderabbitai[bot]",
                reviewer_type="ai_bot",
                actionable_text="Close the file handle.",
                path="src/app.py",
                line=12,
            )
        ],
    )


def _record(record_id: str = "rec-1", **changes: str) -> AgentRecord:
    fields: dict[str, str] = {
        "agent_id": f"bc-{record_id}",
        "status": "RUNNING",
        "repository": "o/r",
        "pr_url": PR_URL,
        "branch_name": "agent/feature",
        "updated_at": "2026-01-01T00:00:00.000000Z",
    }
    fields.update(changes)
    return AgentRecord(id=record_id, **fields)  # type: ignore[arg-type]


def test_review_loop_document_persists(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "nested" / "state.db")
    loop = _loop()

    store.save_review_loop(loop)

    assert store.get_review_loop("loop-1") == loop
    assert store.get_review_loop_by_pr_url(PR_URL) == loop
    assert store.get_review_loop_by_pr_url("https://github.com/o/r/pull/8") is None


def test_save_overwrites_whole_document(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    loop = _loop()
    store.save_review_loop(loop)

    loop.transition("cursor_fixing", at="t2", detail="Iteration 3")
    loop.iteration = 3
    loop.findings = []
    store.save_review_loop(loop)

    loaded = store.get_review_loop("loop-1")
    assert loaded is not None
    assert loaded.phase == "cursor_fixing"
    assert loaded.iteration == 3
    assert loaded.findings == []
    assert loaded.history[-1] == ReviewLoopEvent(phase="cursor_fixing", at="t2", detail="Iteration 3")


def test_one_loop_per_pull_request(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.save_review_loop(_loop("loop-1"))

    with pytest.raises(sqlite3.IntegrityError):
        store.save_review_loop(_loop("loop-2"))


def test_create_review_loop_only_inserts_once(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    assert store.create_review_loop(_loop("loop-1")) is True
    assert store.create_review_loop(_loop("loop-2")) is False
    assert store.create_review_loop(_loop("loop-1", phase="complete")) is False

    loops = store.list_review_loops()
    assert [(loop.id, loop.phase) for loop in loops] == [("loop-1", "awaiting_review")]


def test_list_and_delete_review_loops(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.save_review_loop(_loop("loop-1"))
    store.save_review_loop(_loop("loop-2", pr_url="https://github.com/o/r/pull/8", phase="complete"))

    assert [loop.id for loop in store.list_review_loops()] == ["loop-1", "loop-2"]
    assert [loop.id for loop in store.list_review_loops(include_terminal=False)] == ["loop-1"]

    store.delete_review_loop("loop-1")
    assert store.get_review_loop("loop-1") is None


def test_corrupt_phase_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.save_review_loop(_loop())
    with sqlite3.connect(tmp_path / "state.db") as conn:
        conn.execute(
            "UPDATE review_loops SET document = replace(document, '\"awaiting_review\"', '\"waiting\"')"
        )

    with pytest.raises(RuntimeError, match="Unknown phase value"):
        store.get_review_loop("loop-1")


def test_agent_records_upsert_and_lookup(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_agent_record(_record("rec-1"))
    store.upsert_agent_record(_record("rec-2", pr_url="", status="FINISHED", updated_at="2026-01-02T00:00:00.000000Z"))

    store.upsert_agent_record(_record("rec-1", status="FINISHED", summary="done"))

    record = store.get_agent_record("rec-1")
    assert record is not None
    assert record.status == "FINISHED"
    assert record.summary == "done"
    assert store.get_agent_record("missing") is None
    by_url = store.get_agent_record_by_pr_url(PR_URL)
    assert by_url is not None and by_url.id == "rec-1"
    assert [r.id for r in store.list_agent_records()] == ["rec-1", "rec-2"]
    assert [r.id for r in store.list_agent_records(statuses=("RUNNING", "CREATING"))] == []
    assert [r.id for r in store.list_agent_records(statuses=("FINISHED",))] == ["rec-1", "rec-2"]


def test_workflow_links(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    assert store.get_workflow_for_agent("rec-1") is None
    store.link_workflow(agent_record_id="rec-1", workflow_id="wf-1")
    store.link_workflow(agent_record_id="rec-1", workflow_id="wf-2")

    assert store.get_workflow_for_agent("rec-1") == "wf-2"


def test_delivery_ids_expire(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    store.mark_delivery("d-1", event="pull_request", status_code=200, ttl=timedelta(hours=1), now=now)
    store.mark_delivery("d-2", event="ping", status_code=200, ttl=timedelta(hours=3), now=now)

    assert store.is_delivery_seen("d-1", now=now + timedelta(minutes=30))
    assert not store.is_delivery_seen("d-1", now=now + timedelta(hours=2))
    assert not store.is_delivery_seen("d-3", now=now)

    assert store.prune_deliveries(now=now + timedelta(hours=2)) == 1
    assert store.is_delivery_seen("d-2", now=now + timedelta(hours=2))
