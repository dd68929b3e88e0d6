"""Deterministic model-call failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from agent_runs.pipeline.backend.base import ModelCallError
from agent_runs.pipeline.models import TRANSIENT_FAILURE_CLASSES, FailureClass

CALL_FAILURE_CLASSIFIER_VERSION = 1

_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
_AUTH_STATUS_CODES = frozenset({401, 403})
_MALFORMED_STATUS_CODES = frozenset({400, 413, 422})
_MODEL_NOT_FOUND_STATUS_CODES = frozenset({404})

_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "deadline exceeded",
    "timed out",
    "timeout",
    "etimedout",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_MALFORMED_REQUEST_PATTERNS: tuple[str, ...] = (
    "malformed",
    "invalid request",
    "bad request",
    "context length",
    "too many tokens",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "service unavailable",
    "overloaded",
    "connection reset",
    "econnreset",
    "econnrefused",
    "socket hang up",
    "network error",
    "could not resolve host",
    "eai_again",
)


@dataclass(slots=True)
class CallFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def is_transient(self) -> bool:
        return self.failure_class in TRANSIENT_FAILURE_CLASSES

    def to_log_details(self, *, agent_type: str, model: str) -> dict[str, object]:
        """Serialize classifier diagnostics for attempt logs."""

        return {
            "classifier_version": CALL_FAILURE_CLASSIFIER_VERSION,
            "agent_type": agent_type,
            "model": model,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_call_failure(  # noqa: PLR0911
    *,
    agent_type: str,
    error: ModelCallError,
) -> CallFailureClassification:
    """Classify one failed model call into a deterministic retry class."""

    agent = agent_type.lower()
    haystack = error.message.lower()
    status_code = error.status_code

    if error.timed_out:
        return _classified(FailureClass.TIMEOUT, agent, "deadline", "timed_out_flag", None)

    if status_code in _RETRYABLE_STATUS_CODES:
        failure_class = (
            FailureClass.TIMEOUT if status_code == 408 else FailureClass.BACKEND_TRANSIENT
        )
        return _classified(failure_class, agent, f"http_{status_code}", "status_code", None)
    if status_code in _AUTH_STATUS_CODES:
        return _classified(
            FailureClass.ACCESS_OR_AUTH,
            agent,
            "access_or_auth",
            "status_code",
            None,
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return _classified(FailureClass.TIMEOUT, agent, "deadline", "timeout", pattern)

    for failure_class, rule, patterns in (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.MALFORMED_REQUEST, "malformed_request", _MALFORMED_REQUEST_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _classified(failure_class, agent, rule, rule, pattern)

    if status_code in _MODEL_NOT_FOUND_STATUS_CODES:
        return _classified(
            FailureClass.MODEL_NOT_AVAILABLE,
            agent,
            "model_not_available",
            "status_code",
            None,
        )
    if status_code in _MALFORMED_STATUS_CODES:
        return _classified(
            FailureClass.MALFORMED_REQUEST,
            agent,
            "malformed_request",
            "status_code",
            None,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return _classified(
            FailureClass.BACKEND_TRANSIENT,
            agent,
            "rate_limit_transient",
            "rate_limit_transient",
            pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or (status_code is not None and status_code >= 500):  # noqa: PLR2004
        return _classified(
            FailureClass.BACKEND_TRANSIENT,
            agent,
            "backend_transient",
            "generic_transient" if pattern is not None else "server_error_status",
            pattern,
        )

    return _classified(
        FailureClass.BACKEND_NON_RETRYABLE,
        agent,
        "backend_non_retryable",
        "fallback_non_retryable",
        None,
    )


def _classified(
    failure_class: FailureClass,
    agent: str,
    reason: str,
    rule: str,
    pattern: str | None,
) -> CallFailureClassification:
    return CallFailureClassification(
        failure_class=failure_class,
        reason_code=f"{agent}_{reason}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
