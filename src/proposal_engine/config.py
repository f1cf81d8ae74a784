"""Runtime configuration for the proposal workflow engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from proposal_engine.workflow.thread_ids import DEFAULT_COMPONENT


@dataclass(slots=True)
class RetrySettings:
    """Retry/backoff for collaborator calls made by workflow steps."""

    max_attempts: int = 3
    base_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    call_timeout_seconds: float = 120.0


@dataclass(slots=True)
class CheckpointSettings:
    """Checkpoint store retry and SQLite lock policy."""

    max_attempts: int = 3
    base_delay_ms: int = 100
    max_delay_ms: int = 2_000
    busy_timeout_ms: int = 5_000
    default_component: str = DEFAULT_COMPONENT
    idle_timeout_hours: float = 24.0


@dataclass(slots=True)
class ContextSettings:
    """Token budget for outgoing LLM messages."""

    model: str = "default"
    context_window_tokens: int = 8_192
    reserved_tokens: int = 1_000
    summarization_threshold_tokens: int = 0
    summarization_ratio: float = 0.5
    token_cache_size: int = 2_048

    @property
    def budget_tokens(self) -> int:
        return self.context_window_tokens - self.reserved_tokens


@dataclass(slots=True)
class WorkflowSettings:
    """Graph execution settings."""

    max_steps: int = 100
    backend: str = "echo"
    criteria_path: Path | None = None
    dependencies_path: Path | None = None
    required_sections: tuple[str, ...] = ()
    transitive_staleness: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".proposal_engine.db")
    retry: RetrySettings = field(default_factory=RetrySettings)
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PROPOSAL_ENGINE_DB_PATH", ".proposal_engine.db")),
            retry=RetrySettings(
                max_attempts=int(os.getenv("PROPOSAL_ENGINE_RETRY_MAX_ATTEMPTS", "3")),
                base_delay_ms=int(os.getenv("PROPOSAL_ENGINE_RETRY_BASE_DELAY_MS", "1000")),
                max_delay_ms=int(os.getenv("PROPOSAL_ENGINE_RETRY_MAX_DELAY_MS", "30000")),
                call_timeout_seconds=float(
                    os.getenv("PROPOSAL_ENGINE_CALL_TIMEOUT_SECONDS", "120"),
                ),
            ),
            checkpoint=CheckpointSettings(
                max_attempts=int(os.getenv("PROPOSAL_ENGINE_CHECKPOINT_MAX_ATTEMPTS", "3")),
                base_delay_ms=int(os.getenv("PROPOSAL_ENGINE_CHECKPOINT_BASE_DELAY_MS", "100")),
                max_delay_ms=int(os.getenv("PROPOSAL_ENGINE_CHECKPOINT_MAX_DELAY_MS", "2000")),
                busy_timeout_ms=int(
                    os.getenv("PROPOSAL_ENGINE_CHECKPOINT_BUSY_TIMEOUT_MS", "5000"),
                ),
                default_component=os.getenv(
                    "PROPOSAL_ENGINE_DEFAULT_COMPONENT",
                    DEFAULT_COMPONENT,
                ).strip(),
                idle_timeout_hours=float(
                    os.getenv("PROPOSAL_ENGINE_THREAD_IDLE_HOURS", "24"),
                ),
            ),
            context=ContextSettings(
                model=os.getenv("PROPOSAL_ENGINE_MODEL", "default").strip(),
                context_window_tokens=int(
                    os.getenv("PROPOSAL_ENGINE_CONTEXT_WINDOW_TOKENS", "8192"),
                ),
                reserved_tokens=int(os.getenv("PROPOSAL_ENGINE_RESERVED_TOKENS", "1000")),
                summarization_threshold_tokens=int(
                    os.getenv("PROPOSAL_ENGINE_SUMMARIZATION_THRESHOLD_TOKENS", "0"),
                ),
                summarization_ratio=float(
                    os.getenv("PROPOSAL_ENGINE_SUMMARIZATION_RATIO", "0.5"),
                ),
                token_cache_size=int(os.getenv("PROPOSAL_ENGINE_TOKEN_CACHE_SIZE", "2048")),
            ),
            workflow=WorkflowSettings(
                max_steps=int(os.getenv("PROPOSAL_ENGINE_MAX_STEPS", "100")),
                backend=os.getenv("PROPOSAL_ENGINE_BACKEND", "echo").strip().lower(),
                criteria_path=_env_path("PROPOSAL_ENGINE_CRITERIA_PATH"),
                dependencies_path=_env_path("PROPOSAL_ENGINE_DEPENDENCIES_PATH"),
                required_sections=_env_csv("PROPOSAL_ENGINE_REQUIRED_SECTIONS"),
                transitive_staleness=_env_bool("PROPOSAL_ENGINE_TRANSITIVE_STALENESS", False),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent values."""

        for prefix, attempts, base, maximum in (
            (
                "PROPOSAL_ENGINE_RETRY",
                self.retry.max_attempts,
                self.retry.base_delay_ms,
                self.retry.max_delay_ms,
            ),
            (
                "PROPOSAL_ENGINE_CHECKPOINT",
                self.checkpoint.max_attempts,
                self.checkpoint.base_delay_ms,
                self.checkpoint.max_delay_ms,
            ),
        ):
            if attempts < 1:
                raise ValueError(f"{prefix}_MAX_ATTEMPTS must be >= 1.")
            if base <= 0 or maximum <= 0:
                raise ValueError(f"{prefix}_BASE_DELAY_MS and _MAX_DELAY_MS must be > 0.")
            if base > maximum:
                raise ValueError(f"{prefix}_BASE_DELAY_MS must not exceed _MAX_DELAY_MS.")
        if self.retry.call_timeout_seconds < 0:
            raise ValueError("PROPOSAL_ENGINE_CALL_TIMEOUT_SECONDS must be >= 0.")
        if self.checkpoint.busy_timeout_ms <= 0:
            raise ValueError("PROPOSAL_ENGINE_CHECKPOINT_BUSY_TIMEOUT_MS must be > 0.")
        if self.checkpoint.idle_timeout_hours <= 0:
            raise ValueError("PROPOSAL_ENGINE_THREAD_IDLE_HOURS must be > 0.")
        if not 0 < self.context.summarization_ratio < 1:
            raise ValueError("PROPOSAL_ENGINE_SUMMARIZATION_RATIO must be between 0 and 1.")
        if self.context.reserved_tokens < 0:
            raise ValueError("PROPOSAL_ENGINE_RESERVED_TOKENS must be >= 0.")
        if self.context.reserved_tokens >= self.context.context_window_tokens:
            raise ValueError(
                "PROPOSAL_ENGINE_RESERVED_TOKENS must be lower than "
                "PROPOSAL_ENGINE_CONTEXT_WINDOW_TOKENS.",
            )
        if self.context.summarization_threshold_tokens < 0:
            raise ValueError("PROPOSAL_ENGINE_SUMMARIZATION_THRESHOLD_TOKENS must be >= 0.")
        if self.context.token_cache_size < 0:
            raise ValueError("PROPOSAL_ENGINE_TOKEN_CACHE_SIZE must be >= 0.")
        if self.workflow.max_steps < 1:
            raise ValueError("PROPOSAL_ENGINE_MAX_STEPS must be >= 1.")
        if self.workflow.backend != "echo":
            raise ValueError(
                f"Unsupported PROPOSAL_ENGINE_BACKEND {self.workflow.backend!r}; "
                "only 'echo' is built in.",
            )


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
