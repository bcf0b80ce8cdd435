from __future__ import annotations

from datetime import datetime, timezone

import pytest

from reviewloop.models import (
    InvalidTransitionError,
    ReviewLoop,
    is_terminal_agent_status,
    is_terminal_phase,
    utc_now_iso,
)


def _loop() -> ReviewLoop:
    return ReviewLoop(
        id="loop-1",
        agent_record_id="rec-1",
        repo_owner="o",
        repo_name="r",
        pr_number=7,
        pr_url="https://github.com/o/r/pull/7",
        phase="requesting_review",
        iteration=1,
        created_at="t0",
        updated_at="t0",
    )


def test_transition_appends_history() -> None:
    loop = _loop()

    loop.transition("awaiting_review", at="t1", detail="Requested: coderabbitai[bot]")
    loop.record(at="t2", detail="note")

    assert loop.phase == "awaiting_review"
    assert loop.updated_at == "t2"
    assert [(event.phase, event.detail) for event in loop.history] == [
        ("awaiting_review", "Requested: coderabbitai[bot]"),
        ("awaiting_review", "note"),
    ]
    assert loop.repo_full_name == "o/r"


def test_terminal_phases_have_no_exits() -> None:
    loop = _loop()
    loop.transition("awaiting_review", at="t1")
    loop.transition("max_iterations", at="t2")

    assert loop.is_terminal
    for phase in ("awaiting_review", "cursor_fixing", "complete"):
        with pytest.raises(InvalidTransitionError):
            loop.transition(phase, at="t3")  # type: ignore[arg-type]
    assert loop.phase == "max_iterations"


def test_invalid_forward_transition_is_rejected() -> None:
    loop = _loop()

    with pytest.raises(InvalidTransitionError, match="requesting_review to cursor_fixing"):
        loop.transition("cursor_fixing", at="t1")


def test_terminal_helpers() -> None:
    assert is_terminal_phase("rejected")
    assert not is_terminal_phase("human_review")
    assert is_terminal_agent_status("finished")
    assert not is_terminal_agent_status("RUNNING")


def test_utc_now_iso_format() -> None:
    moment = datetime(2026, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)

    assert utc_now_iso(moment) == "2026-03-04T05:06:07.890000Z"
