from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import re
import unicodedata
from typing import Literal

from reviewloop.github_gateway import GitHubGateway, GitHubPollingError
from reviewloop.models import FeedbackSourceType, ReviewLoop, ReviewLoopPhase, ReviewerType
from reviewloop.observability import log_event, log_warning
from reviewloop.shell import CommandError
from reviewloop.text import canonicalize, collapse_blank_lines, normalize, truncate


LOGGER = logging.getLogger("reviewloop.feedback_extract")

MAX_ACTIONABLE_TEXT_LEN = 1000
MAX_RAW_TEXT_LEN = 2000

PROMPT_MARKER_AI_AGENTS = "Prompt for AI Agents"
PROMPT_MARKER_ALL_COMMENTS = "Prompt for all review comments with AI agents"
_VERIFY_PREAMBLE_PREFIX = "verify each finding against the current code"
_VERIFY_GUIDANCE_PREFIX = "do not assume old snippets are still present"
_SECTION_LABELS = frozenset(
    {"walkthrough", "summary", "changes", "overview", "analysis chain", "script executed"}
)

_SPACE_RUN_RE = re.compile(r"[ \t]+")
_NON_ACTIONABLE_WHOLE_RE = re.compile(
    r"(?is)^(all good!?|looks good!?|lgtm!?"
    r"|no actionable (comments|issues) (found|posted)\.?|no changes requested\.?)$"
)
_RELAY_COMMENT_RE = re.compile(r"(?im)^@cursor\s+please address the following review feedback:\s*")

ExtractionRoute = Literal["prompt_bot", "generic"]
DropReason = Literal[
    "normalized_text_empty",
    "prompt_markers_missing",
    "generic_non_inline_source",
    "actionable_text_empty",
]


@dataclass(frozen=True)
class FeedbackCandidate:
    source_type: FeedbackSourceType
    source_id: int
    reviewer_login: str
    reviewer_type: ReviewerType
    raw_text: str
    source_node_id: str = ""
    source_url: str = ""
    path: str = ""
    line: int = 0
    commit_sha: str = ""
    created_at: str = ""
    normalized_text: str = ""
    actionable_text: str = ""


@dataclass(frozen=True)
class Extraction:
    actionable_text: str
    route: ExtractionRoute
    drop_reason: DropReason | None


@dataclass(frozen=True)
class DroppedCandidate:
    candidate: FeedbackCandidate
    route: ExtractionRoute
    reason: DropReason


@dataclass(frozen=True)
class SourceSummary:
    total: int = 0
    review_comment: int = 0
    review_body: int = 0
    issue_comment: int = 0
    ai_bot: int = 0
    human: int = 0


@dataclass(frozen=True)
class HarvestResult:
    candidates: tuple[FeedbackCandidate, ...]
    dropped: tuple[DroppedCandidate, ...]
    sources: SourceSummary


def reviewer_type_for_login(login: str, bots: tuple[str, ...]) -> ReviewerType:
    normalized = login.strip().lower()
    if any(bot.strip().lower() == normalized for bot in bots):
        return "ai_bot"
    return "human"


def should_collect_for_phase(phase: ReviewLoopPhase, reviewer_type: ReviewerType) -> bool:
    if phase == "awaiting_review":
        return reviewer_type == "ai_bot"
    if phase == "human_review":
        return reviewer_type == "human"
    return False


def is_relay_comment(body: str) -> bool:
    return _RELAY_COMMENT_RE.search(body.strip()) is not None


def normalize_candidate(candidate: FeedbackCandidate) -> FeedbackCandidate:
    raw = candidate.raw_text.strip()
    return replace(candidate, path=candidate.path.strip(), raw_text=raw, normalized_text=normalize(raw))


def extract_actionable_text(candidate: FeedbackCandidate, *, prompt_bot: str) -> Extraction:
    """Reduce a normalized candidate to the directive a coding agent should act on.

    Comments from ``prompt_bot`` only contribute their labeled agent-prompt section.
    Everyone else contributes inline comments verbatim, minus all-clear boilerplate.
    """
    route: ExtractionRoute = (
        "prompt_bot"
        if candidate.reviewer_login.strip().lower() == prompt_bot.strip().lower()
        else "generic"
    )
    text = candidate.normalized_text.strip()
    if not text:
        return Extraction("", route, "normalized_text_empty")

    if route == "prompt_bot":
        markers = _markers_for_source(candidate.source_type)
        if _find_marker_line(text.split("\n"), markers) is None:
            return Extraction("", route, "prompt_markers_missing")
        actionable = _finalize(_strip_verify_preamble(_extract_prompt_section(text, markers)))
    else:
        if candidate.source_type != "review_comment":
            return Extraction("", route, "generic_non_inline_source")
        actionable = _finalize(text)

    if not actionable:
        return Extraction("", route, "actionable_text_empty")
    return Extraction(actionable, route, None)


def _finalize(text: str) -> str:
    collapsed = collapse_blank_lines(text)
    if not collapsed or _NON_ACTIONABLE_WHOLE_RE.match(canonicalize(collapsed)):
        return ""
    return truncate(collapsed, MAX_ACTIONABLE_TEXT_LEN)


def _markers_for_source(source_type: str) -> tuple[str, str]:
    if source_type == "review_body":
        return (PROMPT_MARKER_ALL_COMMENTS, PROMPT_MARKER_AI_AGENTS)
    return (PROMPT_MARKER_AI_AGENTS, PROMPT_MARKER_ALL_COMMENTS)


def _find_marker_line(lines: list[str], markers: tuple[str, ...]) -> int | None:
    # Marker preference wins over position.
    for marker in markers:
        for index, line in enumerate(lines):
            if _is_marker_line(line, marker):
                return index
    return None


def _is_marker_line(line: str, marker: str) -> bool:
    return normalize_marker_line(line) == _SPACE_RUN_RE.sub(" ", marker.strip().lower())


def normalize_marker_line(line: str) -> str:
    """Strip list, quote, heading and emphasis markup so labels compare equal."""
    normalized = line.strip()
    while normalized and normalized[0] in ">#-":
        normalized = normalized[1:].lstrip(" \t")
    normalized = _strip_leading_symbols(normalized)

    while True:
        previous = normalized
        normalized = normalized.strip().removesuffix(":").strip()
        if len(normalized) >= 4 and normalized.startswith("**") and normalized.endswith("**"):
            normalized = normalized[2:-2].strip()
        elif len(normalized) >= 2 and normalized[0] == normalized[-1] and normalized[0] in "*`":
            normalized = normalized[1:-1].strip()
        if normalized == previous:
            break

    normalized = _strip_leading_symbols(normalized)
    return _SPACE_RUN_RE.sub(" ", normalized.lower().strip())


def _strip_leading_symbols(text: str) -> str:
    # Labels are often decorated with an emoji, e.g. "🤖 Prompt for AI Agents".
    index = 0
    while index < len(text) and (
        unicodedata.category(text[index]) in ("So", "Mn", "Cf") or text[index].isspace()
    ):
        index += 1
    return text[index:]


def _is_fence(line: str) -> bool:
    return line.strip().startswith("```")


def _is_boundary_line(line: str) -> bool:
    trimmed = line.strip()
    if not trimmed:
        return False
    if trimmed.startswith("#"):
        return True
    if _is_marker_line(line, PROMPT_MARKER_AI_AGENTS) or _is_marker_line(
        line, PROMPT_MARKER_ALL_COMMENTS
    ):
        return True
    normalized = normalize_marker_line(line)
    return normalized.startswith(_VERIFY_PREAMBLE_PREFIX) or normalized in _SECTION_LABELS


def _extract_prompt_section(text: str, markers: tuple[str, ...]) -> str:
    lines = text.split("\n")
    marker_index = _find_marker_line(lines, markers)
    if marker_index is None:
        return ""

    start = marker_index + 1
    first_content = next(
        (index for index in range(start, len(lines)) if lines[index].strip()), None
    )
    if first_content is None:
        return ""

    if _is_fence(lines[first_content]):
        fenced: list[str] = []
        for line in lines[first_content + 1 :]:
            if _is_fence(line):
                break
            fenced.append(line)
        return collapse_blank_lines("\n".join(fenced))

    section: list[str] = []
    for line in lines[first_content:]:
        if _is_boundary_line(line):
            # A verify preamble directly under the marker belongs to the section
            # and is stripped afterwards; anywhere else it ends the section.
            is_preamble = normalize_marker_line(line).startswith(_VERIFY_PREAMBLE_PREFIX)
            if section or not is_preamble:
                break
        section.append(line)
    return collapse_blank_lines("\n".join(section))


def _strip_verify_preamble(text: str) -> str:
    lines = text.split("\n")
    first_content = next((index for index, line in enumerate(lines) if line.strip()), None)
    if first_content is None:
        return ""
    if not normalize_marker_line(lines[first_content]).startswith(_VERIFY_PREAMBLE_PREFIX):
        return text.strip()

    start = first_content + 1
    while start < len(lines):
        trimmed = lines[start].strip()
        if not trimmed:
            start += 1
            break
        guidance = normalize_marker_line(trimmed.lstrip("-*"))
        if not guidance.startswith(_VERIFY_GUIDANCE_PREFIX):
            break
        start += 1
    return collapse_blank_lines("\n".join(lines[start:]))


def summarize_sources(candidates: tuple[FeedbackCandidate, ...]) -> SourceSummary:
    return SourceSummary(
        total=len(candidates),
        review_comment=sum(1 for c in candidates if c.source_type == "review_comment"),
        review_body=sum(1 for c in candidates if c.source_type == "review_body"),
        issue_comment=sum(1 for c in candidates if c.source_type == "issue_comment"),
        ai_bot=sum(1 for c in candidates if c.reviewer_type == "ai_bot"),
        human=sum(1 for c in candidates if c.reviewer_type == "human"),
    )


def extract_candidates(
    raw_candidates: list[FeedbackCandidate], *, loop_id: str, prompt_bot: str
) -> tuple[tuple[FeedbackCandidate, ...], tuple[DroppedCandidate, ...]]:
    kept: list[FeedbackCandidate] = []
    dropped: list[DroppedCandidate] = []
    for raw in raw_candidates:
        candidate = normalize_candidate(raw)
        extraction = extract_actionable_text(candidate, prompt_bot=prompt_bot)
        if extraction.drop_reason is not None:
            dropped.append(DroppedCandidate(candidate, extraction.route, extraction.drop_reason))
            log_event(
                LOGGER,
                "feedback_candidate_dropped",
                review_loop_id=loop_id,
                route=extraction.route,
                reason=extraction.drop_reason,
                source_type=candidate.source_type,
                source_id=candidate.source_id,
                reviewer=candidate.reviewer_login,
            )
            continue
        kept.append(replace(candidate, actionable_text=extraction.actionable_text))
    return tuple(kept), tuple(dropped)


def collect_feedback_candidates(
    loop: ReviewLoop,
    github: GitHubGateway,
    *,
    bots: tuple[str, ...],
    prompt_bot: str,
) -> HarvestResult:
    """List PR feedback from every source and reduce it to actionable candidates.

    Only reviewers of the type the loop's current phase collects are considered.
    Inline comments are required; review bodies and issue comments are best effort.
    """
    raw: list[FeedbackCandidate] = []

    for comment in github.list_review_comments(loop.pr_number):
        reviewer_type = reviewer_type_for_login(comment.user_login, bots)
        if not should_collect_for_phase(loop.phase, reviewer_type):
            continue
        if loop.last_commit_sha and comment.commit_id and comment.commit_id != loop.last_commit_sha:
            continue
        raw.append(
            FeedbackCandidate(
                source_type="review_comment",
                source_id=comment.comment_id,
                source_node_id=comment.node_id,
                source_url=comment.html_url,
                reviewer_login=comment.user_login,
                reviewer_type=reviewer_type,
                path=comment.path,
                line=comment.line or 0,
                commit_sha=comment.commit_id,
                created_at=comment.created_at,
                raw_text=comment.body,
            )
        )

    try:
        reviews = github.list_reviews(loop.pr_number)
    except (GitHubPollingError, CommandError) as exc:
        log_warning(LOGGER, "feedback_source_failed", source="reviews", error=str(exc))
        reviews = []
    for review in reviews:
        reviewer_type = reviewer_type_for_login(review.user_login, bots)
        if not should_collect_for_phase(loop.phase, reviewer_type):
            continue
        raw.append(
            FeedbackCandidate(
                source_type="review_body",
                source_id=review.review_id,
                source_node_id=review.node_id,
                source_url=review.html_url,
                reviewer_login=review.user_login,
                reviewer_type=reviewer_type,
                commit_sha=review.commit_id,
                created_at=review.submitted_at,
                raw_text=review.body,
            )
        )

    try:
        issue_comments = github.list_issue_comments(loop.pr_number)
    except (GitHubPollingError, CommandError) as exc:
        log_warning(LOGGER, "feedback_source_failed", source="issue_comments", error=str(exc))
        issue_comments = []
    for issue_comment in issue_comments:
        reviewer_type = reviewer_type_for_login(issue_comment.user_login, bots)
        if not should_collect_for_phase(loop.phase, reviewer_type):
            continue
        if is_relay_comment(issue_comment.body):
            continue
        raw.append(
            FeedbackCandidate(
                source_type="issue_comment",
                source_id=issue_comment.comment_id,
                source_node_id=issue_comment.node_id,
                source_url=issue_comment.html_url,
                reviewer_login=issue_comment.user_login,
                reviewer_type=reviewer_type,
                created_at=issue_comment.created_at,
                raw_text=issue_comment.body,
            )
        )

    candidates, dropped = extract_candidates(raw, loop_id=loop.id, prompt_bot=prompt_bot)
    sources = summarize_sources(tuple(raw))
    log_event(
        LOGGER,
        "feedback_harvested",
        review_loop_id=loop.id,
        phase=loop.phase,
        total=sources.total,
        review_comment=sources.review_comment,
        review_body=sources.review_body,
        issue_comment=sources.issue_comment,
        actionable=len(candidates),
        dropped=len(dropped),
    )
    return HarvestResult(candidates=candidates, dropped=dropped, sources=sources)


