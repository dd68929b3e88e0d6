"""Model invocation interface for agent runs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class ModelCallRequest:
    """Inputs required to execute one model call attempt."""

    prompt_text: str
    timeout_seconds: float
    attempt: int = 1
    params: dict[str, Any] = field(default_factory=dict)
    cancel_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class ModelCallError:
    """Provider-level failure details returned instead of output."""

    message: str
    status_code: int | None = None
    timed_out: bool = False


@dataclass(slots=True)
class ModelCallResponse:
    """Raw model response; ``error`` is set when the provider call failed."""

    raw_output: str | None
    tokens_used: int | None = None
    error: ModelCallError | None = None


class ModelClient(Protocol):
    """Protocol implemented by model providers.

    Implementations must honor ``timeout_seconds`` and should poll
    ``cancel_requested`` while waiting on the provider.
    """

    model_id: str

    def call(self, request: ModelCallRequest) -> ModelCallResponse:
        """Run one model call attempt."""
