from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_AI_REVIEWER_BOTS: tuple[str, ...] = ("coderabbitai[bot]", "copilot-pull-request-reviewer")
DEFAULT_PRIMARY_BOT = "coderabbitai[bot]"
MIN_REVIEW_ITERATIONS = 1
MAX_REVIEW_ITERATIONS = 20


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    delivery_ttl_seconds: int = 86400

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class ReviewLoopConfig:
    enabled: bool = True
    max_review_iterations: int = 5
    ai_reviewer_bots: tuple[str, ...] = DEFAULT_AI_REVIEWER_BOTS
    primary_bot: str = DEFAULT_PRIMARY_BOT
    human_review_team: str | None = None


@dataclass(frozen=True)
class GitHubConfig:
    webhook_secret_env: str | None = None
    read_timeout_seconds: int = 15
    request_timeout_seconds: int = 30

    def webhook_secret(self) -> str | None:
        if self.webhook_secret_env is None:
            return None
        return os.environ.get(self.webhook_secret_env) or None


@dataclass(frozen=True)
class AgentConfig:
    base_url: str = "https://api.cursor.com"
    api_key_env: str = "CURSOR_API_KEY"
    timeout_seconds: int = 30

    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env) or None


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    review_loop: ReviewLoopConfig = ReviewLoopConfig()
    github: GitHubConfig = GitHubConfig()
    agent: AgentConfig = AgentConfig()


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    review_data = _optional_table(data, "review_loop") or {}
    github_data = _optional_table(data, "github") or {}
    agent_data = _optional_table(data, "agent") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        delivery_ttl_seconds=_int_with_default(runtime_data, "delivery_ttl_seconds", 86400),
    )
    if runtime.delivery_ttl_seconds < 60:
        raise ConfigError("runtime.delivery_ttl_seconds must be >= 60")

    bots = _tuple_of_str_with_default(review_data, "ai_reviewer_bots", DEFAULT_AI_REVIEWER_BOTS)
    review_loop = ReviewLoopConfig(
        enabled=_bool_with_default(review_data, "enabled", True),
        max_review_iterations=clamp_review_iterations(
            _int_with_default(review_data, "max_review_iterations", 5)
        ),
        ai_reviewer_bots=tuple(bot.strip() for bot in bots if bot.strip()),
        primary_bot=_str_with_default(review_data, "primary_bot", DEFAULT_PRIMARY_BOT),
        human_review_team=_optional_str(review_data, "human_review_team"),
    )

    github = GitHubConfig(
        webhook_secret_env=_optional_str(github_data, "webhook_secret_env"),
        read_timeout_seconds=_positive_int_with_default(github_data, "read_timeout_seconds", 15),
        request_timeout_seconds=_positive_int_with_default(
            github_data, "request_timeout_seconds", 30
        ),
    )

    agent = AgentConfig(
        base_url=_str_with_default(agent_data, "base_url", "https://api.cursor.com"),
        api_key_env=_str_with_default(agent_data, "api_key_env", "CURSOR_API_KEY"),
        timeout_seconds=_positive_int_with_default(agent_data, "timeout_seconds", 30),
    )

    return AppConfig(runtime=runtime, review_loop=review_loop, github=github, agent=agent)


def clamp_review_iterations(value: int) -> int:
    return max(MIN_REVIEW_ITERATIONS, min(MAX_REVIEW_ITERATIONS, value))


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _positive_int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = _int_with_default(data, key, default)
    if value < 1:
        raise ConfigError(f"{key} must be an integer >= 1")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    # A comma separated string is accepted for parity with env-style settings.
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{key} must be a list of strings")
    return tuple(cast(list[str], value))
