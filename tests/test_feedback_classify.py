from __future__ import annotations

from dataclasses import replace

from hypothesis import given, strategies as st

from reviewloop.feedback_classify import (
    MAX_FINDINGS_RETAINED,
    candidate_key,
    classify,
    format_count_summary,
)
from reviewloop.feedback_extract import FeedbackCandidate
from reviewloop.models import ReviewFinding, ReviewLoop


def _loop(phase: str = "awaiting_review") -> ReviewLoop:
    return ReviewLoop(
        id="loop-1",
        agent_record_id="rec-1",
        repo_owner="o",
        repo_name="r",
        pr_number=7,
        pr_url="https://github.com/o/r/pull/7",
        phase=phase,  # type: ignore[arg-type]
        iteration=1,
        created_at="t0",
        updated_at="t0",
    )


def _candidate(
    text: str,
    *,
    source_id: int = 1,
    path: str = "src/app.py",
    line: int = 10,
    source_type: str = "review_comment",
    login: str = "coderabbitai[bot]",
    reviewer_type: str = "ai_bot",
    source_url: str = "",
) -> FeedbackCandidate:
    return FeedbackCandidate(
        source_type=source_type,  # type: ignore[arg-type]
        source_id=source_id,
        reviewer_login=login,
        reviewer_type=reviewer_type,  # type: ignore[arg-type]
        raw_text=text,
        path=path,
        line=line,
        source_url=source_url,
        actionable_text=text,
    )


def test_format_count_summary() -> None:
    assert format_count_summary(3, 2, 1) == "3 new, 2 repeated, 1 dismissed"


def test_first_harvest_opens_new_findings() -> None:
    loop = _loop()

    result = classify(loop, [_candidate("Close the file."), _candidate("Add a test.", line=20)], "t1")

    assert [finding.actionable_text for finding in result.new] == ["Close the file.", "Add a test."]
    assert result.dispatchable == result.new
    assert result.repeated == () and result.resolved == () and result.superseded == ()
    assert [finding.status for finding in loop.findings] == ["open", "open"]
    assert loop.findings[0].first_seen_at == "t1"
    assert loop.findings[0].source_id == "1"
    assert result.count_summary() == "2 new, 0 repeated, 0 dismissed"


def test_reclassifying_same_harvest_reports_everything_repeated() -> None:
    loop = _loop()
    candidates = [_candidate("Close the file."), _candidate("Add a test.", line=20)]
    classify(loop, candidates, "t1")
    loop.iteration = 2

    result = classify(loop, candidates, "t2")

    assert result.new == ()
    assert len(result.repeated) == 2
    assert result.dismissed_count == 0
    assert len(loop.findings) == 2
    assert all(finding.last_seen_at == "t2" for finding in loop.findings)
    assert all(finding.last_seen_iteration == 2 for finding in loop.findings)
    assert all(finding.first_seen_at == "t1" for finding in loop.findings)


def test_missing_feedback_is_resolved() -> None:
    loop = _loop()
    classify(loop, [_candidate("Close the file."), _candidate("Add a test.", line=20)], "t1")

    result = classify(loop, [_candidate("Add a test.", line=20)], "t2")

    assert [finding.actionable_text for finding in result.resolved] == ["Close the file."]
    assert result.count_summary() == "0 new, 1 repeated, 1 dismissed"
    statuses = {finding.actionable_text: finding.status for finding in loop.findings}
    assert statuses == {"Close the file.": "resolved", "Add a test.": "open"}


def test_new_text_at_same_location_supersedes_old_finding() -> None:
    loop = _loop()
    classify(loop, [_candidate("Close the file.")], "t1")

    result = classify(loop, [_candidate("Use a context manager.", source_id=2)], "t2")

    assert [finding.actionable_text for finding in result.new] == ["Use a context manager."]
    assert [finding.actionable_text for finding in result.superseded] == ["Close the file."]
    assert result.resolved == ()
    assert [finding.status for finding in loop.findings] == ["superseded", "open"]


def test_unscoped_duplicate_of_inline_text_is_collapsed() -> None:
    loop = _loop()

    result = classify(
        loop,
        [
            _candidate("Close the file."),
            _candidate("close the   file.", source_id=9, path="", line=0, source_type="review_body"),
        ],
        "t1",
    )

    assert len(result.new) == 1
    assert result.new[0].source_type == "review_comment"


def test_same_text_at_different_locations_is_kept() -> None:
    loop = _loop()

    result = classify(loop, [_candidate("Close the file."), _candidate("Close the file.", line=30)], "t1")

    assert len(result.new) == 2


def test_other_reviewer_type_findings_are_not_resolved() -> None:
    loop = _loop("human_review")
    classify(
        loop,
        [_candidate("Rename this.", login="alice", reviewer_type="human")],
        "t1",
    )
    loop.phase = "awaiting_review"

    result = classify(loop, [], "t2")

    assert result.resolved == ()
    assert loop.findings[0].status == "open"


def test_legacy_finding_without_key_is_backfilled_and_matched() -> None:
    loop = _loop()
    classify(loop, [_candidate("Close the file.")], "t1")
    loop.findings = [replace(loop.findings[0], key="")]

    result = classify(loop, [_candidate("Close the file.")], "t2")

    assert result.new == ()
    assert len(result.repeated) == 1


def test_candidates_without_text_are_ignored() -> None:
    loop = _loop()

    result = classify(loop, [_candidate("   ")], "t1")

    assert result.new == ()
    assert loop.findings == []


def test_ledger_is_bounded() -> None:
    loop = _loop()
    loop.findings = [
        ReviewFinding(
            key=f"k{index}",
            status="resolved",
            source_type="review_comment",
            reviewer_login="coderabbitai[bot]",
            reviewer_type="ai_bot",
            actionable_text=f"old {index}",
        )
        for index in range(MAX_FINDINGS_RETAINED)
    ]

    classify(loop, [_candidate("Close the file.")], "t1")

    assert len(loop.findings) == MAX_FINDINGS_RETAINED
    assert loop.findings[-1].actionable_text == "Close the file."
    assert loop.findings[0].key == "k1"


@given(
    texts=st.lists(
        st.sampled_from(["Close the file.", "Add a test.", "Rename x.", "Handle errors."]),
        max_size=6,
    ),
    lines=st.lists(st.integers(min_value=1, max_value=3), min_size=6, max_size=6),
)
def test_dispatchable_is_new_plus_repeated(texts: list[str], lines: list[int]) -> None:
    loop = _loop()
    first = [_candidate(text, line=lines[index]) for index, text in enumerate(texts)]
    classify(loop, first, "t1")

    result = classify(loop, list(reversed(first)), "t2")

    assert len(result.dispatchable) == len(result.new) + len(result.repeated)
    keys = [finding.key for finding in loop.findings if finding.status == "open"]
    assert len(keys) == len(set(keys))


def test_candidate_key_matches_finding_key() -> None:
    loop = _loop()
    candidate = _candidate("Close the file.")

    classify(loop, [candidate], "t1")

    assert loop.findings[0].key == candidate_key(candidate)
