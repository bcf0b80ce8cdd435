from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable

from reviewloop.feedback_extract import (
    MAX_ACTIONABLE_TEXT_LEN,
    MAX_RAW_TEXT_LEN,
    FeedbackCandidate,
    should_collect_for_phase,
)
from reviewloop.models import ReviewFinding, ReviewLoop
from reviewloop.text import canonicalize, fingerprint, location_key, truncate


MAX_FINDINGS_RETAINED = 200


@dataclass(frozen=True)
class Classification:
    new: tuple[ReviewFinding, ...] = ()
    repeated: tuple[ReviewFinding, ...] = ()
    resolved: tuple[ReviewFinding, ...] = ()
    superseded: tuple[ReviewFinding, ...] = ()
    dispatchable: tuple[ReviewFinding, ...] = ()

    @property
    def dismissed_count(self) -> int:
        return len(self.resolved) + len(self.superseded)

    def count_summary(self) -> str:
        return format_count_summary(len(self.new), len(self.repeated), self.dismissed_count)


def format_count_summary(new_count: int, repeated_count: int, dismissed_count: int) -> str:
    return f"{new_count} new, {repeated_count} repeated, {dismissed_count} dismissed"


def candidate_key(candidate: FeedbackCandidate) -> str:
    return fingerprint(
        candidate.actionable_text,
        path=candidate.path,
        line=candidate.line,
        source_type=candidate.source_type,
        reviewer_login=candidate.reviewer_login,
        source_url=candidate.source_url,
    )


def _finding_key(finding: ReviewFinding) -> str:
    return fingerprint(
        finding.actionable_text or finding.raw_text,
        path=finding.path,
        line=finding.line,
        source_url=finding.source_url,
    )


def _should_collapse_by_text(first: FeedbackCandidate, second: FeedbackCandidate) -> bool:
    if canonicalize(first.actionable_text) != canonicalize(second.actionable_text):
        return False
    first_location = location_key(first.path, first.line, first.source_url)
    second_location = location_key(second.path, second.line, second.source_url)
    # Unscoped text (a review body, say) repeats an inline comment with the same words.
    return first_location == second_location or not first_location or not second_location


def classify(loop: ReviewLoop, candidates: Iterable[FeedbackCandidate], now: str) -> Classification:
    """Merge a harvest into the loop's finding ledger.

    Each candidate either refreshes the open finding with the same fingerprint
    (repeated) or opens a new one, superseding older open findings at the same
    location. Open findings the current phase collects but the harvest no longer
    contains are resolved. ``loop.findings`` is replaced with the merged ledger,
    bounded to the newest ``MAX_FINDINGS_RETAINED`` entries.
    """
    findings: list[ReviewFinding] = []
    open_by_key: dict[str, int] = {}
    open_by_location: dict[str, list[int]] = {}
    for finding in loop.findings:
        if not finding.key:
            finding = replace(finding, key=_finding_key(finding))
        findings.append(finding)
        if finding.status != "open" or not finding.key:
            continue
        index = len(findings) - 1
        open_by_key[finding.key] = index
        location = location_key(finding.path, finding.line, finding.source_url, finding.reviewer_type)
        if location:
            open_by_location.setdefault(location, []).append(index)

    new: list[ReviewFinding] = []
    repeated: list[ReviewFinding] = []
    superseded: list[ReviewFinding] = []
    dispatchable: list[ReviewFinding] = []
    seen_keys: set[str] = set()
    seen_text: dict[str, FeedbackCandidate] = {}

    for candidate in candidates:
        if not candidate.actionable_text.strip():
            continue
        key = candidate_key(candidate)
        if not key or key in seen_keys:
            continue
        text_key = canonicalize(candidate.actionable_text)
        previous = seen_text.get(text_key)
        if previous is not None and _should_collapse_by_text(previous, candidate):
            continue
        seen_keys.add(key)
        seen_text[text_key] = candidate

        existing_index = open_by_key.get(key)
        if existing_index is not None:
            refreshed = replace(
                findings[existing_index],
                status="open",
                raw_text=truncate(candidate.raw_text, MAX_RAW_TEXT_LEN),
                actionable_text=truncate(candidate.actionable_text, MAX_ACTIONABLE_TEXT_LEN),
                source_type=candidate.source_type,
                source_id=str(candidate.source_id),
                source_node_id=candidate.source_node_id,
                source_url=candidate.source_url,
                reviewer_login=candidate.reviewer_login,
                reviewer_type=candidate.reviewer_type,
                path=candidate.path,
                line=candidate.line,
                commit_sha=candidate.commit_sha,
                last_seen_at=now,
                last_seen_iteration=loop.iteration,
            )
            findings[existing_index] = refreshed
            repeated.append(refreshed)
            dispatchable.append(refreshed)
            continue

        location = location_key(
            candidate.path, candidate.line, candidate.source_url, candidate.reviewer_type
        )
        for index in open_by_location.get(location, []) if location else []:
            existing = findings[index]
            if existing.status != "open" or existing.key == key:
                continue
            retired = replace(
                existing, status="superseded", last_seen_at=now, last_seen_iteration=loop.iteration
            )
            findings[index] = retired
            superseded.append(retired)

        created = ReviewFinding(
            key=key,
            status="open",
            source_type=candidate.source_type,
            source_id=str(candidate.source_id),
            source_node_id=candidate.source_node_id,
            source_url=candidate.source_url,
            reviewer_login=candidate.reviewer_login,
            reviewer_type=candidate.reviewer_type,
            path=candidate.path,
            line=candidate.line,
            commit_sha=candidate.commit_sha,
            raw_text=truncate(candidate.raw_text, MAX_RAW_TEXT_LEN),
            actionable_text=truncate(candidate.actionable_text, MAX_ACTIONABLE_TEXT_LEN),
            first_seen_at=now,
            first_seen_iteration=loop.iteration,
            last_seen_at=now,
            last_seen_iteration=loop.iteration,
        )
        findings.append(created)
        open_by_key[key] = len(findings) - 1
        if location:
            open_by_location.setdefault(location, []).append(len(findings) - 1)
        new.append(created)
        dispatchable.append(created)

    resolved: list[ReviewFinding] = []
    for index, finding in enumerate(findings):
        if finding.status != "open" or finding.key in seen_keys:
            continue
        if not should_collect_for_phase(loop.phase, finding.reviewer_type):
            continue
        closed = replace(
            finding, status="resolved", last_seen_at=now, last_seen_iteration=loop.iteration
        )
        findings[index] = closed
        resolved.append(closed)

    loop.findings = findings[-MAX_FINDINGS_RETAINED:]
    return Classification(
        new=tuple(new),
        repeated=tuple(repeated),
        resolved=tuple(resolved),
        superseded=tuple(superseded),
        dispatchable=tuple(dispatchable),
    )
