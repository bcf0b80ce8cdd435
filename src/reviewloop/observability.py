from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import sys
from typing import Final, Literal, cast


_LOGGER_NAME: Final[str] = "reviewloop"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
# Lifecycle events kept when running with --verbose low.
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "review_loop_started",
        "review_loop_phase_changed",
        "review_loop_start_failed",
        "feedback_dispatched",
        "feedback_dispatch_failed",
        "webhook_rejected",
        "webhook_failed",
        "agent_status_changed",
        "github_mark_ready_failed",
        "github_request_reviewers_failed",
        "notification_failed",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    _configure_handler(stream_handler, mode)
    logger.addHandler(stream_handler)

    if state_dir is not None:
        file_handler = _UtcDailyFileHandler(base_dir=state_dir)
        _configure_handler(file_handler, mode)
        logger.addHandler(file_handler)

    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


def log_warning(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_build_event_message(event=event, fields=fields))


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _configure_handler(handler: logging.Handler, mode: VerboseMode) -> None:
    handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        handler.addFilter(_LowVerbosityFilter())


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    first_field = message.split(" ", 1)[0]
    if first_field == "event=":
        return None
    return first_field[len("event=") :]


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return _extract_event_name(record.getMessage()) in _LOW_VERBOSITY_EVENTS


def _utc_date_key() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class _UtcDailyFileHandler(logging.FileHandler):
    """Appends to <base_dir>/logs/YYYY-MM-DD.log, switching files at UTC midnight."""

    def __init__(self, *, base_dir: Path) -> None:
        self._logs_dir = base_dir / "logs"
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._active_date = _utc_date_key()
        super().__init__(self._logs_dir / f"{self._active_date}.log", encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._switch_date_if_needed()
        except Exception:
            self.handleError(record)
            return
        super().emit(record)

    def _switch_date_if_needed(self) -> None:
        # Called under the handler lock from Handler.handle.
        date_key = _utc_date_key()
        if date_key == self._active_date:
            return
        if self.stream is not None:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        self._active_date = date_key
        self.baseFilename = os.path.abspath(self._logs_dir / f"{date_key}.log")
