"""Text normalization and fingerprinting for review feedback.

Everything here is pure: it operates on strings and finding records and never
touches the network or the store.
"""

from __future__ import annotations

import hashlib
import re
from typing import Iterable

from reviewloop.models import ReviewFinding


FINGERPRINT_BYTES = 16

_DETAILS_RE = re.compile(r"(?i)</?details>")
_SUMMARY_RE = re.compile(r"(?i)<summary>(.*?)</summary>")
_BLOCKQUOTE_RE = re.compile(r"(?is)<blockquote>(.*?)</blockquote>")
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_SPACE_RUN_RE = re.compile(r"[ \t]+")


def normalize(raw: str) -> str:
    """Turn review markup into plain display-safe text.

    Collapsible sections are unwrapped, summaries become bold lines, block
    quotes become ``> `` prefixed lines, and any remaining HTML tags are dropped.
    """
    body = raw.replace("\r\n", "\n")
    body = _DETAILS_RE.sub("", body)
    body = _SUMMARY_RE.sub(r"**\1**", body)
    body = _BLOCKQUOTE_RE.sub(_quote_block, body)
    body = _TAG_RE.sub("", body)
    return collapse_blank_lines(body)


def _quote_block(match: re.Match[str]) -> str:
    lines = match.group(1).strip().split("\n")
    return "\n".join(f"> {line.strip()}" for line in lines)


def collapse_blank_lines(text: str) -> str:
    return _BLANK_RUN_RE.sub("\n\n", text).strip()


def canonicalize(text: str) -> str:
    trimmed = text.lower().strip()
    if not trimmed:
        return ""
    lines = trimmed.replace("\r\n", "\n").split("\n")
    return "\n".join(_SPACE_RUN_RE.sub(" ", line.strip()) for line in lines).strip()


def truncate(text: str, limit: int) -> str:
    trimmed = text.strip()
    if len(trimmed) <= limit:
        return trimmed
    return f"{trimmed[: limit - 3]}..."


def location_key(path: str, line: int, source_url: str, reviewer_type: str = "") -> str:
    """Coarse location used for supersession and text collapsing.

    Inline feedback is keyed by ``path:line``; anything else falls back to its URL.
    An empty result means the feedback cannot be located at all.
    """
    normalized_path = path.strip().lower()
    if normalized_path or line > 0:
        if reviewer_type:
            return f"{reviewer_type}|{normalized_path}:{line}"
        return f"{normalized_path}:{line}"

    normalized_url = source_url.strip().lower()
    if reviewer_type and normalized_url:
        return f"{reviewer_type}|{normalized_url}"
    return normalized_url


def fingerprint_scope(
    *, path: str, line: int, source_type: str, reviewer_login: str, source_url: str
) -> str:
    if path.strip() or line > 0:
        return location_key(path, line, "")

    normalized_type = source_type.strip().lower()
    normalized_login = reviewer_login.strip().lower()
    if normalized_type or normalized_login:
        return f"{normalized_type}|{normalized_login}"
    return location_key("", 0, source_url)


def fingerprint(
    actionable_text: str,
    *,
    path: str = "",
    line: int = 0,
    source_type: str = "",
    reviewer_login: str = "",
    source_url: str = "",
) -> str:
    """Return a stable 32-char hex key, or "" when there is no text to key on."""
    canonical = canonicalize(actionable_text)
    if not canonical:
        return ""
    scope = fingerprint_scope(
        path=path,
        line=line,
        source_type=source_type,
        reviewer_login=reviewer_login,
        source_url=source_url,
    )
    material = f"{scope}|{canonical}" if scope else canonical
    return hashlib.sha256(material.encode("utf-8")).digest()[:FINGERPRINT_BYTES].hex()


def feedback_digest(findings: Iterable[ReviewFinding]) -> str:
    parts = sorted(
        "|".join((finding.key, finding.path, str(finding.line), canonicalize(finding.actionable_text)))
        for finding in findings
    )
    if not parts:
        return ""
    return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()
