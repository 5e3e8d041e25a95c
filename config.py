"""Environment-driven runtime configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from retry import RetryPolicy

PROVIDERS = ("openai", "anthropic")
SINK_BACKENDS = ("sqlite", "rest")


@dataclass(frozen=True)
class PipelineConfig:
    provider: str = "openai"
    concurrency: int = 4
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 30.0
    backoff_jitter_seconds: float = 0.25
    cancel_grace_seconds: float = 10.0
    sink_backend: str = "sqlite"
    sqlite_path: str = "annotations.db"
    sink_max_attempts: int = 3
    sink_failure_limit: int = 5
    schema_path: str | None = None
    id_prefix: str = "pub"
    failures_report_path: str = "annotation_failures.csv"
    prompt_context: str = ""

    def __post_init__(self) -> None:
        if self.provider not in PROVIDERS:
            raise ValueError(f"ANNOTATION_PROVIDER must be one of {PROVIDERS}, got {self.provider!r}")
        if self.sink_backend not in SINK_BACKENDS:
            raise ValueError(f"SINK_BACKEND must be one of {SINK_BACKENDS}, got {self.sink_backend!r}")
        if self.concurrency < 1:
            raise ValueError("ANNOTATION_CONCURRENCY must be >= 1")
        if self.sink_failure_limit < 1:
            raise ValueError("SINK_FAILURE_LIMIT must be >= 1")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> PipelineConfig:
        """Read settings from ``env`` (defaults to ``os.environ``)."""
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            provider=env.get("ANNOTATION_PROVIDER", defaults.provider).strip().lower(),
            concurrency=_env_int(env, "ANNOTATION_CONCURRENCY", defaults.concurrency),
            max_attempts=_env_int(env, "ANNOTATION_MAX_ATTEMPTS", defaults.max_attempts),
            backoff_base_seconds=_env_float(env, "BACKOFF_BASE_SECONDS", defaults.backoff_base_seconds),
            backoff_multiplier=_env_float(env, "BACKOFF_MULTIPLIER", defaults.backoff_multiplier),
            backoff_max_seconds=_env_float(env, "BACKOFF_MAX_SECONDS", defaults.backoff_max_seconds),
            backoff_jitter_seconds=_env_float(env, "BACKOFF_JITTER_SECONDS", defaults.backoff_jitter_seconds),
            cancel_grace_seconds=_env_float(env, "CANCEL_GRACE_SECONDS", defaults.cancel_grace_seconds),
            sink_backend=env.get("SINK_BACKEND", defaults.sink_backend).strip().lower(),
            sqlite_path=env.get("SQLITE_PATH", defaults.sqlite_path),
            sink_max_attempts=_env_int(env, "SINK_MAX_ATTEMPTS", defaults.sink_max_attempts),
            sink_failure_limit=_env_int(env, "SINK_FAILURE_LIMIT", defaults.sink_failure_limit),
            schema_path=env.get("ANNOTATION_SCHEMA_PATH") or None,
            id_prefix=env.get("ID_PREFIX", defaults.id_prefix),
            failures_report_path=env.get("FAILURES_REPORT_PATH", defaults.failures_report_path),
            prompt_context=env.get("ANNOTATION_PROMPT_CONTEXT", defaults.prompt_context),
        )

    def retry_policy(self) -> RetryPolicy:
        """Backoff for annotation attempts."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base_seconds,
            multiplier=self.backoff_multiplier,
            max_delay=self.backoff_max_seconds,
            jitter=self.backoff_jitter_seconds,
        )

    def sink_retry_policy(self) -> RetryPolicy:
        """Run-level budget for persistence calls."""
        return RetryPolicy(
            max_attempts=self.sink_max_attempts,
            base_delay=self.backoff_base_seconds,
            multiplier=self.backoff_multiplier,
            max_delay=self.backoff_max_seconds,
        )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
