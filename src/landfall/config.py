from __future__ import annotations

from dataclasses import dataclass, field, replace
import os
from pathlib import Path
import tomllib
from typing import Literal, Mapping, cast


PullConflictStrategy = Literal["abort", "prefer_remote"]

DEFAULT_FEATURE_BRANCH_PREFIXES: tuple[str, ...] = (
    "build",
    "ci",
    "docs",
    "feat",
    "fix",
    "perf",
    "refactor",
    "test",
)


@dataclass(frozen=True)
class MergeConfig:
    poll_interval_seconds: int = 60
    max_wait_seconds: int = 3600
    default_branch: str | None = None
    feature_branch_prefixes: tuple[str, ...] = DEFAULT_FEATURE_BRANCH_PREFIXES

    def is_feature_branch(self, branch: str) -> bool:
        prefix, sep, rest = branch.partition("/")
        return bool(sep) and bool(rest) and prefix in self.feature_branch_prefixes


@dataclass(frozen=True)
class CleanupConfig:
    pull_conflict_strategy: PullConflictStrategy = "abort"


@dataclass(frozen=True)
class InfraConfig:
    token_env: str = "TFC_TOKEN"
    config_dir: str = "terraform"
    api_url: str = "https://app.terraform.io/api/v2"
    app_url: str = "https://app.terraform.io"
    log_tail_lines: int = 50
    approval_comment: str = "Approved via landfall"


@dataclass(frozen=True)
class SessionConfig:
    state_dir: str = ".landfall"
    issue_marker: str = ".beads/current-issue"


@dataclass(frozen=True)
class AppConfig:
    enabled: bool = True
    merge: MergeConfig = field(default_factory=MergeConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    infra: InfraConfig = field(default_factory=InfraConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


class ConfigError(ValueError):
    pass


def load_config(path: Path | None, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    data: dict[str, object] = {}
    if path is not None and path.exists():
        with path.open("rb") as fh:
            data = tomllib.load(fh)

    merge_data = _optional_table(data, "merge") or {}
    cleanup_data = _optional_table(data, "cleanup") or {}
    infra_data = _optional_table(data, "infra") or {}
    session_data = _optional_table(data, "session") or {}

    merge = MergeConfig(
        poll_interval_seconds=_int_with_default(merge_data, "poll_interval_seconds", 60),
        max_wait_seconds=_int_with_default(merge_data, "max_wait_seconds", 3600),
        default_branch=_optional_str(merge_data, "default_branch"),
        feature_branch_prefixes=_tuple_of_str_with_default(
            merge_data, "feature_branch_prefixes", DEFAULT_FEATURE_BRANCH_PREFIXES
        ),
    )
    cleanup = CleanupConfig(
        pull_conflict_strategy=_pull_conflict_strategy_with_default(
            cleanup_data, "pull_conflict_strategy", "abort"
        ),
    )
    infra = InfraConfig(
        token_env=_str_with_default(infra_data, "token_env", "TFC_TOKEN"),
        config_dir=_str_with_default(infra_data, "config_dir", "terraform"),
        api_url=_str_with_default(infra_data, "api_url", "https://app.terraform.io/api/v2"),
        app_url=_str_with_default(infra_data, "app_url", "https://app.terraform.io"),
        log_tail_lines=_int_with_default(infra_data, "log_tail_lines", 50),
        approval_comment=_str_with_default(
            infra_data, "approval_comment", "Approved via landfall"
        ),
    )
    session = SessionConfig(
        state_dir=_str_with_default(session_data, "state_dir", ".landfall"),
        issue_marker=_str_with_default(session_data, "issue_marker", ".beads/current-issue"),
    )

    config = AppConfig(
        enabled=_bool_with_default(data, "enabled", True),
        merge=merge,
        cleanup=cleanup,
        infra=infra,
        session=session,
    )
    config = apply_env_overrides(config, os.environ if environ is None else environ)
    _validate(config)
    return config


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    if environ.get("LANDFALL_DISABLED", "").strip() == "1":
        config = replace(config, enabled=False)
    merge = config.merge
    interval = _env_int(environ, "LANDFALL_CHECK_INTERVAL")
    if interval is not None:
        merge = replace(merge, poll_interval_seconds=interval)
    max_wait = _env_int(environ, "LANDFALL_MAX_WAIT")
    if max_wait is not None:
        merge = replace(merge, max_wait_seconds=max_wait)
    return replace(config, merge=merge)


def with_poll_overrides(
    config: AppConfig, *, interval_seconds: int | None, max_wait_seconds: int | None
) -> AppConfig:
    merge = config.merge
    if interval_seconds is not None:
        merge = replace(merge, poll_interval_seconds=interval_seconds)
    if max_wait_seconds is not None:
        merge = replace(merge, max_wait_seconds=max_wait_seconds)
    updated = replace(config, merge=merge)
    _validate(updated)
    return updated


def _validate(config: AppConfig) -> None:
    if config.merge.poll_interval_seconds < 1:
        raise ConfigError("merge.poll_interval_seconds must be >= 1")
    if config.merge.max_wait_seconds < 0:
        raise ConfigError("merge.max_wait_seconds must be >= 0")
    if not config.merge.feature_branch_prefixes:
        raise ConfigError("merge.feature_branch_prefixes must not be empty")
    if config.infra.log_tail_lines < 1:
        raise ConfigError("infra.log_tail_lines must be >= 1")


def _env_int(environ: Mapping[str, str], key: str) -> int | None:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer") from exc


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
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
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a list of strings")
        normalized = item.strip().rstrip("/")
        if normalized not in out:
            out.append(normalized)
    return tuple(out)


def _pull_conflict_strategy_with_default(
    data: dict[str, object], key: str, default: PullConflictStrategy
) -> PullConflictStrategy:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: abort, prefer_remote")
    normalized = value.strip().lower()
    if normalized not in {"abort", "prefer_remote"}:
        raise ConfigError(f"{key} must be one of: abort, prefer_remote")
    return cast(PullConflictStrategy, normalized)
