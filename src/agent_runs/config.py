"""Runtime configuration for the agent run pipeline."""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from agent_runs.pipeline.circuit_breaker import BreakerConfig
from agent_runs.pipeline.models import AgentType

_T = TypeVar("_T", int, float)


@dataclass(slots=True)
class StorageSettings:
    """SQLite access settings."""

    busy_timeout_ms: int = 5_000
    stale_running_after_seconds: int = 3_600


@dataclass(slots=True)
class PipelineSettings:
    """Gate, retry and classification thresholds with per-agent overrides."""

    min_input_bytes: int = 100
    max_retries: int = 3
    min_confidence: float = 0.5
    call_timeout_seconds: float = 120.0
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    deadline_seconds: float | None = None
    min_input_bytes_by_agent: dict[AgentType, int] = field(default_factory=dict)
    max_retries_by_agent: dict[AgentType, int] = field(default_factory=dict)
    min_confidence_by_agent: dict[AgentType, float] = field(default_factory=dict)
    call_timeout_by_agent: dict[AgentType, float] = field(default_factory=dict)
    deadline_by_agent: dict[AgentType, float] = field(default_factory=dict)


@dataclass(slots=True)
class BreakerSettings:
    """Circuit breaker defaults with per-agent overrides."""

    failure_threshold: int = 5
    window_seconds: float = 300.0
    cooldown_seconds: float = 3_600.0
    failure_threshold_by_agent: dict[AgentType, int] = field(default_factory=dict)
    window_by_agent: dict[AgentType, float] = field(default_factory=dict)
    cooldown_by_agent: dict[AgentType, float] = field(default_factory=dict)


@dataclass(slots=True)
class CacheSettings:
    """Content-hash result cache settings."""

    enabled: bool = True
    claim_wait_seconds: float = 30.0
    claim_ttl_seconds: float = 900.0
    poll_interval_seconds: float = 0.25


@dataclass(frozen=True, slots=True)
class AgentPolicy:
    """Effective configuration for one agent type."""

    agent_type: AgentType
    min_input_bytes: int
    max_retries: int
    min_confidence: float
    call_timeout_seconds: float
    retry_base_seconds: float
    retry_max_seconds: float
    deadline_seconds: float | None
    breaker: BreakerConfig


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_runs.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_RUNS_DB_PATH", ".agent_runs.db")),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("AGENT_RUNS_BUSY_TIMEOUT_MS", "5000")),
                stale_running_after_seconds=int(
                    os.getenv("AGENT_RUNS_STALE_RUNNING_AFTER_SECONDS", "3600"),
                ),
            ),
            pipeline=PipelineSettings(
                min_input_bytes=int(os.getenv("AGENT_RUNS_MIN_INPUT_BYTES", "100")),
                max_retries=int(os.getenv("AGENT_RUNS_MAX_RETRIES", "3")),
                min_confidence=float(os.getenv("AGENT_RUNS_MIN_CONFIDENCE", "0.5")),
                call_timeout_seconds=float(
                    os.getenv("AGENT_RUNS_CALL_TIMEOUT_SECONDS", "120"),
                ),
                retry_base_seconds=float(os.getenv("AGENT_RUNS_RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(os.getenv("AGENT_RUNS_RETRY_MAX_SECONDS", "30.0")),
                deadline_seconds=_env_optional_float("AGENT_RUNS_DEADLINE_SECONDS"),
                min_input_bytes_by_agent=_collect_agent_overrides(
                    "AGENT_RUNS_MIN_INPUT_BYTES_BY_AGENT",
                    int,
                ),
                max_retries_by_agent=_collect_agent_overrides(
                    "AGENT_RUNS_MAX_RETRIES_BY_AGENT",
                    int,
                ),
                min_confidence_by_agent=_collect_agent_overrides(
                    "AGENT_RUNS_MIN_CONFIDENCE_BY_AGENT",
                    float,
                ),
                call_timeout_by_agent=_collect_agent_overrides(
                    "AGENT_RUNS_CALL_TIMEOUT_SECONDS_BY_AGENT",
                    float,
                ),
                deadline_by_agent=_collect_agent_overrides(
                    "AGENT_RUNS_DEADLINE_SECONDS_BY_AGENT",
                    float,
                ),
            ),
            breaker=BreakerSettings(
                failure_threshold=int(os.getenv("AGENT_RUNS_BREAKER_THRESHOLD", "5")),
                window_seconds=float(os.getenv("AGENT_RUNS_BREAKER_WINDOW_SECONDS", "300")),
                cooldown_seconds=float(
                    os.getenv("AGENT_RUNS_BREAKER_COOLDOWN_SECONDS", "3600"),
                ),
                failure_threshold_by_agent=_collect_agent_overrides(
                    "AGENT_RUNS_BREAKER_THRESHOLD_BY_AGENT",
                    int,
                ),
                window_by_agent=_collect_agent_overrides(
                    "AGENT_RUNS_BREAKER_WINDOW_SECONDS_BY_AGENT",
                    float,
                ),
                cooldown_by_agent=_collect_agent_overrides(
                    "AGENT_RUNS_BREAKER_COOLDOWN_SECONDS_BY_AGENT",
                    float,
                ),
            ),
            cache=CacheSettings(
                enabled=_env_bool("AGENT_RUNS_CACHE_ENABLED", default=True),
                claim_wait_seconds=float(
                    os.getenv("AGENT_RUNS_CACHE_CLAIM_WAIT_SECONDS", "30"),
                ),
                claim_ttl_seconds=float(os.getenv("AGENT_RUNS_CACHE_CLAIM_TTL_SECONDS", "900")),
                poll_interval_seconds=float(
                    os.getenv("AGENT_RUNS_CACHE_POLL_INTERVAL_SECONDS", "0.25"),
                ),
            ),
        )

    def policy_for(self, agent_type: AgentType) -> AgentPolicy:
        """Resolve the effective policy for one agent type."""

        pipeline = self.pipeline
        breaker = self.breaker
        return AgentPolicy(
            agent_type=agent_type,
            min_input_bytes=pipeline.min_input_bytes_by_agent.get(
                agent_type,
                pipeline.min_input_bytes,
            ),
            max_retries=pipeline.max_retries_by_agent.get(agent_type, pipeline.max_retries),
            min_confidence=pipeline.min_confidence_by_agent.get(
                agent_type,
                pipeline.min_confidence,
            ),
            call_timeout_seconds=pipeline.call_timeout_by_agent.get(
                agent_type,
                pipeline.call_timeout_seconds,
            ),
            retry_base_seconds=pipeline.retry_base_seconds,
            retry_max_seconds=pipeline.retry_max_seconds,
            deadline_seconds=pipeline.deadline_by_agent.get(
                agent_type,
                pipeline.deadline_seconds,
            ),
            breaker=BreakerConfig(
                failure_threshold=breaker.failure_threshold_by_agent.get(
                    agent_type,
                    breaker.failure_threshold,
                ),
                window_seconds=breaker.window_by_agent.get(agent_type, breaker.window_seconds),
                cooldown_seconds=breaker.cooldown_by_agent.get(
                    agent_type,
                    breaker.cooldown_seconds,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot run with."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("AGENT_RUNS_BUSY_TIMEOUT_MS must be > 0.")
        if self.storage.stale_running_after_seconds <= 0:
            raise ValueError("AGENT_RUNS_STALE_RUNNING_AFTER_SECONDS must be > 0.")
        if self.pipeline.retry_base_seconds < 0:
            raise ValueError("AGENT_RUNS_RETRY_BASE_SECONDS must be >= 0.")
        if self.pipeline.retry_max_seconds < self.pipeline.retry_base_seconds:
            raise ValueError(
                "AGENT_RUNS_RETRY_MAX_SECONDS must be >= AGENT_RUNS_RETRY_BASE_SECONDS.",
            )
        if self.cache.claim_ttl_seconds <= 0:
            raise ValueError("AGENT_RUNS_CACHE_CLAIM_TTL_SECONDS must be > 0.")
        if self.cache.poll_interval_seconds <= 0:
            raise ValueError("AGENT_RUNS_CACHE_POLL_INTERVAL_SECONDS must be > 0.")

        for agent_type in AgentType:
            policy = self.policy_for(agent_type)
            name = agent_type.value
            if policy.min_input_bytes < 0:
                raise ValueError(f"Minimum input bytes for {name} must be >= 0.")
            if policy.max_retries < 1:
                raise ValueError(f"Max retries for {name} must be >= 1.")
            if not 0.0 <= policy.min_confidence <= 1.0:
                raise ValueError(f"Confidence threshold for {name} must be within [0, 1].")
            if policy.call_timeout_seconds <= 0:
                raise ValueError(f"Call timeout for {name} must be > 0.")
            if policy.deadline_seconds is not None and policy.deadline_seconds <= 0:
                raise ValueError(f"Invocation deadline for {name} must be > 0.")
            if policy.breaker.failure_threshold < 1:
                raise ValueError(f"Breaker threshold for {name} must be >= 1.")
            if policy.breaker.window_seconds <= 0:
                raise ValueError(f"Breaker window for {name} must be > 0.")
            if policy.breaker.cooldown_seconds < 0:
                raise ValueError(f"Breaker cooldown for {name} must be >= 0.")


def _collect_agent_overrides(name: str, cast: Callable[[str], _T]) -> dict[AgentType, _T]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return {}

    overrides: dict[AgentType, _T] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                f"Invalid {name} entry: {token!r}. Expected format '<AGENT_TYPE>|<value>'.",
            )
        agent_raw, value_raw = token.rsplit("|", 1)
        agent_raw = agent_raw.strip().upper()
        value_raw = value_raw.strip()
        try:
            agent_type = AgentType(agent_raw)
        except ValueError as error:
            raise ValueError(f"Unknown agent type in {name}: {agent_raw!r}") from error
        try:
            overrides[agent_type] = cast(value_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid {name} value for {agent_type.value}: {value_raw!r}",
            ) from error
    return overrides


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


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error
