"""Cheap pre-call checks that can end a run before any model call."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from agent_runs.pipeline.models import AgentRunOutcome, AgentType, NoChangeCode, RunOutcome
from agent_runs.storage.common import canonical_json

SkipPredicate = Callable[[AgentType, Any], bool]


@dataclass(frozen=True, slots=True)
class InputSize:
    """Size of the canonical input serialization."""

    chars: int
    bytes: int


@dataclass(frozen=True, slots=True)
class GatePass:
    """Gate let the input through."""

    size: InputSize
    rejected = False


@dataclass(frozen=True, slots=True)
class GateReject:
    """Gate ended the run; carries the outcome to record."""

    size: InputSize
    outcome: RunOutcome
    rejected = True


GateResult = GatePass | GateReject


def measure_input(payload: Any) -> InputSize:
    """Char and UTF-8 byte counts of the canonical serialization."""

    text = payload if isinstance(payload, str) else canonical_json(payload)
    return InputSize(chars=len(text), bytes=len(text.encode("utf-8")))


def never_skip(_agent_type: AgentType, _payload: Any) -> bool:
    return False


class PreCallGate:
    """Size threshold first, then the deterministic-skip predicate."""

    def __init__(
        self,
        *,
        min_input_bytes: Mapping[AgentType, int],
        default_min_input_bytes: int = 100,
        should_skip: SkipPredicate = never_skip,
    ) -> None:
        self._min_input_bytes = dict(min_input_bytes)
        self._default_min_input_bytes = default_min_input_bytes
        self._should_skip = should_skip

    def min_input_bytes(self, agent_type: AgentType) -> int:
        return self._min_input_bytes.get(agent_type, self._default_min_input_bytes)

    def evaluate(self, agent_type: AgentType, payload: Any) -> GateResult:
        """Pure evaluation; first matching rule wins."""

        size = measure_input(payload)
        threshold = self.min_input_bytes(agent_type)
        if size.bytes < threshold:
            return GateReject(
                size=size,
                outcome=RunOutcome(
                    outcome=AgentRunOutcome.CONTENT_LOW_QUALITY,
                    no_change_code=NoChangeCode.NO_RELEVANT_CHANGES,
                    detail=f"input_bytes={size.bytes} below minimum {threshold}",
                ),
            )

        if self._should_skip(agent_type, payload):
            return GateReject(
                size=size,
                outcome=RunOutcome(
                    outcome=AgentRunOutcome.SKIPPED_DETERMINISTIC,
                    detail="deterministic skip predicate matched",
                ),
            )

        return GatePass(size=size)
