"""Domain models for agent run execution and outcome classification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class AgentType(str, Enum):
    """LLM-backed capabilities whose invocations are tracked as runs."""

    SENTINEL = "SENTINEL"
    OCR = "OCR"
    EXTRACTOR = "EXTRACTOR"
    COMPOSER = "COMPOSER"
    REVIEWER = "REVIEWER"
    ARBITER = "ARBITER"
    RELEASER = "RELEASER"
    CONTENT_CLASSIFIER = "CONTENT_CLASSIFIER"
    CLAIM_EXTRACTOR = "CLAIM_EXTRACTOR"
    QUERY_CLASSIFIER = "QUERY_CLASSIFIER"


class AgentRunStatus(str, Enum):
    """Run lifecycle states."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not AgentRunStatus.RUNNING


class AgentRunOutcome(str, Enum):
    """Closed set of final run classifications."""

    SUCCESS_APPLIED = "SUCCESS_APPLIED"
    SUCCESS_NO_CHANGE = "SUCCESS_NO_CHANGE"
    VALIDATION_REJECTED = "VALIDATION_REJECTED"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    EMPTY_OUTPUT = "EMPTY_OUTPUT"
    PARSE_FAILED = "PARSE_FAILED"
    CONTENT_LOW_QUALITY = "CONTENT_LOW_QUALITY"
    SKIPPED_DETERMINISTIC = "SKIPPED_DETERMINISTIC"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    DUPLICATE_CACHED = "DUPLICATE_CACHED"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    TIMEOUT = "TIMEOUT"


class NoChangeCode(str, Enum):
    """Sub-classification explaining why a run produced no new state."""

    ALREADY_EXTRACTED = "ALREADY_EXTRACTED"
    DUPLICATE_POINTERS = "DUPLICATE_POINTERS"
    NO_RELEVANT_CHANGES = "NO_RELEVANT_CHANGES"
    BELOW_MIN_CONFIDENCE = "BELOW_MIN_CONFIDENCE"
    VALIDATION_BLOCKED = "VALIDATION_BLOCKED"


class FailureClass(str, Enum):
    """Normalized model-call failure classes used by retry policy."""

    TIMEOUT = "timeout"
    CANCELED = "canceled"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    MALFORMED_REQUEST = "malformed_request"


TRANSIENT_FAILURE_CLASSES = frozenset({FailureClass.TIMEOUT, FailureClass.BACKEND_TRANSIENT})

# Outcomes that may carry a no-change code, mapped to the codes each accepts.
_ALLOWED_NO_CHANGE_CODES: dict[AgentRunOutcome, frozenset[NoChangeCode]] = {
    AgentRunOutcome.SUCCESS_NO_CHANGE: frozenset(
        {
            NoChangeCode.ALREADY_EXTRACTED,
            NoChangeCode.DUPLICATE_POINTERS,
            NoChangeCode.NO_RELEVANT_CHANGES,
        },
    ),
    AgentRunOutcome.VALIDATION_REJECTED: frozenset({NoChangeCode.VALIDATION_BLOCKED}),
    AgentRunOutcome.LOW_CONFIDENCE: frozenset({NoChangeCode.BELOW_MIN_CONFIDENCE}),
    AgentRunOutcome.CONTENT_LOW_QUALITY: frozenset({NoChangeCode.NO_RELEVANT_CHANGES}),
}


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """Outcome with its optional no-change code and free-text detail.

    Illegal pairs (a no-change code on an outcome that never carries one, or a
    code from another branch) are rejected at construction.
    """

    outcome: AgentRunOutcome
    no_change_code: NoChangeCode | None = None
    detail: str | None = None

    def __post_init__(self) -> None:
        if self.no_change_code is None:
            return
        allowed = _ALLOWED_NO_CHANGE_CODES.get(self.outcome, frozenset())
        if self.no_change_code not in allowed:
            raise ValueError(
                f"No-change code {self.no_change_code.value} is not valid "
                f"for outcome {self.outcome.value}.",
            )


@dataclass(frozen=True, slots=True)
class CorrelationContext:
    """Caller-supplied identifiers threaded through one invocation."""

    run_id: str | None = None
    job_id: str | None = None
    parent_job_id: str | None = None
    source_slug: str | None = None
    queue_name: str = "default"


@dataclass(slots=True)
class RunMetrics:
    """Metrics accumulated during one invocation, written once at finalize."""

    input_chars: int | None = None
    input_bytes: int | None = None
    tokens_used: int | None = None
    duration_ms: int | None = None
    confidence: float | None = None
    items_produced: int = 0
    attempt: int = 1
    cache_hit: bool = False
    prompt_template_id: str | None = None
    prompt_template_version: str | None = None
    prompt_hash: str | None = None
    output: Any = None
    raw_output: str | None = None


@dataclass(slots=True)
class AgentRunOpen:
    """Input to create a RUNNING row at invocation start."""

    id: str
    agent_type: AgentType
    correlation: CorrelationContext
    input_payload: Any
    input_content_hash: str
    started_at: datetime


@dataclass(slots=True)
class AgentRunFinish:
    """Single terminal write for one run."""

    id: str
    status: AgentRunStatus
    outcome: RunOutcome
    metrics: RunMetrics
    completed_at: datetime
    error: str | None = None


@dataclass(slots=True)
class AgentRunView:
    """Readable run view for reporting and tests."""

    id: str
    agent_type: str
    status: AgentRunStatus
    outcome: AgentRunOutcome | None
    no_change_code: NoChangeCode | None
    no_change_detail: str | None
    items_produced: int
    started_at: datetime
    completed_at: datetime | None
    prompt_template_id: str | None
    prompt_template_version: str | None
    prompt_hash: str | None
    input_chars: int | None
    input_bytes: int | None
    tokens_used: int | None
    duration_ms: int | None
    confidence: float | None
    run_id: str | None
    job_id: str | None
    parent_job_id: str | None
    source_slug: str | None
    queue_name: str | None
    attempt: int
    input_content_hash: str | None
    cache_hit: bool
    input_payload: Any
    output: Any
    raw_output: str | None
    error: str | None


@dataclass(slots=True)
class CachedResultView:
    """Published or claimed result cache entry."""

    id: int
    agent_type: str
    model: str
    prompt_hash: str
    input_content_hash: str
    state: str
    owner_run_id: str
    output: Any
    raw_output: str | None
    confidence: float | None
    tokens_used: int | None
    hit_count: int
    claimed_at: datetime
    published_at: datetime | None
    last_hit_at: datetime | None


@dataclass(slots=True)
class OutcomeAggregateView:
    """Grouped run counts for waste analysis."""

    agent_type: str
    outcome: str
    runs: int
    tokens_used: int
    duration_ms: int
    cache_hits: int
