from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast

from reviewloop.models import (
    AgentRecord,
    AgentStatus,
    FeedbackSourceType,
    FindingStatus,
    ReviewerType,
    ReviewFinding,
    ReviewLoop,
    ReviewLoopEvent,
    ReviewLoopPhase,
    utc_now_iso,
)


_PHASES = frozenset(
    {
        "requesting_review",
        "awaiting_review",
        "cursor_fixing",
        "approved",
        "human_review",
        "complete",
        "max_iterations",
        "rejected",
    }
)
_AGENT_STATUSES = frozenset({"CREATING", "RUNNING", "FINISHED", "FAILED", "STOPPED"})
_FINDING_STATUSES = frozenset({"open", "resolved", "dismissed", "superseded"})
_SOURCE_TYPES = frozenset({"review_comment", "review_body", "issue_comment"})
DEFAULT_DELIVERY_TTL = timedelta(hours=24)


class StateStore:
    """SQLite persistence for review loops, agent runs and webhook deliveries.

    Loops are stored as a JSON document per row with the PR URL indexed uniquely.
    Saves overwrite the whole document: the last writer wins.
    """

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_loops (
                    id TEXT PRIMARY KEY,
                    pr_url TEXT NOT NULL UNIQUE,
                    agent_record_id TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    iteration INTEGER NOT NULL,
                    document TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_records (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    repository TEXT NOT NULL,
                    pr_url TEXT NOT NULL DEFAULT '',
                    branch_name TEXT NOT NULL DEFAULT '',
                    summary TEXT NOT NULL DEFAULT '',
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS agent_records_pr_url ON agent_records (pr_url)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_links (
                    agent_record_id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS webhook_deliveries (
                    delivery_id TEXT PRIMARY KEY,
                    event TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    recorded_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )

    def get_review_loop(self, loop_id: str) -> ReviewLoop | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM review_loops WHERE id = ?", (loop_id,)
            ).fetchone()
        return None if row is None else _loop_from_document(row[0])

    def get_review_loop_by_pr_url(self, pr_url: str) -> ReviewLoop | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM review_loops WHERE pr_url = ?", (pr_url,)
            ).fetchone()
        return None if row is None else _loop_from_document(row[0])

    def list_review_loops(self, *, include_terminal: bool = True) -> tuple[ReviewLoop, ...]:
        query = "SELECT document FROM review_loops"
        if not include_terminal:
            query += " WHERE phase NOT IN ('complete', 'max_iterations', 'rejected')"
        query += " ORDER BY created_at ASC, id ASC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return tuple(_loop_from_document(row[0]) for row in rows)

    def create_review_loop(self, loop: ReviewLoop) -> bool:
        """Insert a new loop. Returns False when a loop with this id or PR URL exists."""
        document = json.dumps(asdict(loop), sort_keys=True)
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO review_loops(
                    id, pr_url, agent_record_id, phase, iteration, document, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    loop.id,
                    loop.pr_url,
                    loop.agent_record_id,
                    loop.phase,
                    loop.iteration,
                    document,
                    loop.created_at,
                    loop.updated_at,
                ),
            )
            return cursor.rowcount == 1

    def save_review_loop(self, loop: ReviewLoop) -> None:
        document = json.dumps(asdict(loop), sort_keys=True)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO review_loops(
                    id, pr_url, agent_record_id, phase, iteration, document, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    pr_url=excluded.pr_url,
                    agent_record_id=excluded.agent_record_id,
                    phase=excluded.phase,
                    iteration=excluded.iteration,
                    document=excluded.document,
                    updated_at=excluded.updated_at
                """,
                (
                    loop.id,
                    loop.pr_url,
                    loop.agent_record_id,
                    loop.phase,
                    loop.iteration,
                    document,
                    loop.created_at,
                    loop.updated_at,
                ),
            )

    def delete_review_loop(self, loop_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM review_loops WHERE id = ?", (loop_id,))

    def upsert_agent_record(self, record: AgentRecord) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_records(
                    id, agent_id, status, repository, pr_url, branch_name, summary, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    agent_id=excluded.agent_id,
                    status=excluded.status,
                    repository=excluded.repository,
                    pr_url=excluded.pr_url,
                    branch_name=excluded.branch_name,
                    summary=excluded.summary,
                    updated_at=excluded.updated_at
                """,
                (
                    record.id,
                    record.agent_id,
                    record.status,
                    record.repository,
                    record.pr_url,
                    record.branch_name,
                    record.summary,
                    record.updated_at or utc_now_iso(),
                ),
            )

    def get_agent_record(self, record_id: str) -> AgentRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, agent_id, status, repository, pr_url, branch_name, summary, updated_at
                FROM agent_records
                WHERE id = ?
                """,
                (record_id,),
            ).fetchone()
        return None if row is None else _parse_agent_row(row)

    def get_agent_record_by_pr_url(self, pr_url: str) -> AgentRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, agent_id, status, repository, pr_url, branch_name, summary, updated_at
                FROM agent_records
                WHERE pr_url = ?
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (pr_url,),
            ).fetchone()
        return None if row is None else _parse_agent_row(row)

    def list_agent_records(
        self, *, statuses: tuple[AgentStatus, ...] | None = None
    ) -> tuple[AgentRecord, ...]:
        query = """
            SELECT id, agent_id, status, repository, pr_url, branch_name, summary, updated_at
            FROM agent_records
        """
        params: tuple[object, ...] = ()
        if statuses:
            query += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
            params = tuple(statuses)
        query += " ORDER BY updated_at ASC, id ASC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return tuple(_parse_agent_row(row) for row in rows)

    def link_workflow(self, *, agent_record_id: str, workflow_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_links(agent_record_id, workflow_id)
                VALUES(?, ?)
                ON CONFLICT(agent_record_id) DO UPDATE SET workflow_id=excluded.workflow_id
                """,
                (agent_record_id, workflow_id),
            )

    def get_workflow_for_agent(self, agent_record_id: str) -> str | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT workflow_id FROM workflow_links WHERE agent_record_id = ?",
                (agent_record_id,),
            ).fetchone()
        return None if row is None else str(row[0])

    def is_delivery_seen(self, delivery_id: str, *, now: datetime | None = None) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM webhook_deliveries WHERE delivery_id = ? AND expires_at > ?",
                (delivery_id, utc_now_iso(now)),
            ).fetchone()
        return row is not None

    def mark_delivery(
        self,
        delivery_id: str,
        *,
        event: str,
        status_code: int,
        ttl: timedelta = DEFAULT_DELIVERY_TTL,
        now: datetime | None = None,
    ) -> None:
        recorded = now if now is not None else datetime.now(timezone.utc)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO webhook_deliveries(delivery_id, event, status_code, recorded_at, expires_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(delivery_id) DO UPDATE SET
                    event=excluded.event,
                    status_code=excluded.status_code,
                    recorded_at=excluded.recorded_at,
                    expires_at=excluded.expires_at
                """,
                (
                    delivery_id,
                    event,
                    status_code,
                    utc_now_iso(recorded),
                    utc_now_iso(recorded + ttl),
                ),
            )

    def prune_deliveries(self, *, now: datetime | None = None) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM webhook_deliveries WHERE expires_at <= ?", (utc_now_iso(now),)
            )
            return cursor.rowcount


def _parse_agent_row(row: tuple[object, ...]) -> AgentRecord:
    record_id, agent_id, status, repository, pr_url, branch_name, summary, updated_at = row
    return AgentRecord(
        id=str(record_id),
        agent_id=str(agent_id),
        status=cast(AgentStatus, _parse_choice(status, _AGENT_STATUSES, field="agent status")),
        repository=str(repository),
        pr_url=str(pr_url),
        branch_name=str(branch_name),
        summary=str(summary),
        updated_at=str(updated_at),
    )


def _parse_choice(value: object, allowed: frozenset[str], *, field: str) -> str:
    # Callers cast the result to the matching Literal alias.
    if not isinstance(value, str) or value not in allowed:
        raise RuntimeError(f"Unknown {field} value stored in state: {value!r}")
    return value


def _loop_from_document(document: str) -> ReviewLoop:
    raw = json.loads(document)
    if not isinstance(raw, dict):
        raise RuntimeError("Invalid review loop document stored in review_loops")
    history = [
        ReviewLoopEvent(
            phase=cast(ReviewLoopPhase, _parse_choice(item.get("phase"), _PHASES, field="phase")),
            at=str(item.get("at", "")),
            detail=str(item.get("detail", "")),
        )
        for item in raw.get("history", [])
    ]
    findings = [_finding_from_dict(item) for item in raw.get("findings", [])]
    workflow_id = raw.get("workflow_id")
    return ReviewLoop(
        id=str(raw["id"]),
        agent_record_id=str(raw["agent_record_id"]),
        repo_owner=str(raw["repo_owner"]),
        repo_name=str(raw["repo_name"]),
        pr_number=int(raw["pr_number"]),
        pr_url=str(raw["pr_url"]),
        phase=cast(ReviewLoopPhase, _parse_choice(raw.get("phase"), _PHASES, field="phase")),
        iteration=int(raw["iteration"]),
        created_at=str(raw["created_at"]),
        updated_at=str(raw["updated_at"]),
        workflow_id=str(workflow_id) if workflow_id else None,
        last_commit_sha=str(raw.get("last_commit_sha", "")),
        last_feedback_dispatch_sha=str(raw.get("last_feedback_dispatch_sha", "")),
        last_feedback_dispatch_at=str(raw.get("last_feedback_dispatch_at", "")),
        last_feedback_digest=str(raw.get("last_feedback_digest", "")),
        history=history,
        findings=findings,
    )


def _finding_from_dict(item: dict[str, object]) -> ReviewFinding:
    status = item.get("status") or "open"
    reviewer_type = "ai_bot" if item.get("reviewer_type") == "ai_bot" else "human"
    return ReviewFinding(
        key=str(item.get("key", "")),
        status=cast(FindingStatus, _parse_choice(status, _FINDING_STATUSES, field="finding status")),
        source_type=cast(
            FeedbackSourceType,
            _parse_choice(item.get("source_type"), _SOURCE_TYPES, field="source type"),
        ),
        reviewer_login=str(item.get("reviewer_login", "")),
        reviewer_type=cast(ReviewerType, reviewer_type),
        actionable_text=str(item.get("actionable_text", "")),
        raw_text=str(item.get("raw_text", "")),
        source_id=str(item.get("source_id", "")),
        source_node_id=str(item.get("source_node_id", "")),
        source_url=str(item.get("source_url", "")),
        path=str(item.get("path", "")),
        line=int(cast(int, item.get("line") or 0)),
        commit_sha=str(item.get("commit_sha", "")),
        first_seen_at=str(item.get("first_seen_at", "")),
        first_seen_iteration=int(cast(int, item.get("first_seen_iteration") or 0)),
        last_seen_at=str(item.get("last_seen_at", "")),
        last_seen_iteration=int(cast(int, item.get("last_seen_iteration") or 0)),
    )
