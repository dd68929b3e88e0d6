"""Sole writer of agent run records."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from agent_runs.pipeline.models import (
    AgentRunFinish,
    AgentRunOpen,
    AgentRunStatus,
    AgentType,
    CorrelationContext,
    RunMetrics,
    RunOutcome,
)
from agent_runs.pipeline.prompts import render_input
from agent_runs.pipeline.repository import AgentRunRepository
from agent_runs.storage.common import sha256_hex, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunHandle:
    """Open run owned by exactly one invocation."""

    id: str
    agent_type: AgentType
    correlation: CorrelationContext
    input_content_hash: str
    started_at: datetime
    started_monotonic: float
    attempt: int = 1
    finalized: bool = field(default=False)


def input_content_hash(payload: Any) -> str:
    """Stable hash of the canonical input serialization."""

    return sha256_hex(render_input(payload))


class AgentRunRecorder:
    """Open a RUNNING row at invocation start and finalize it exactly once."""

    def __init__(
        self,
        repository: AgentRunRepository,
        *,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
    ) -> None:
        self.repository = repository
        self._clock = clock
        self._id_factory = id_factory

    def open(
        self,
        correlation: CorrelationContext,
        agent_type: AgentType,
        input_payload: Any,
    ) -> RunHandle:
        """Write the RUNNING row; raises if the ledger is unavailable."""

        handle = RunHandle(
            id=self._id_factory(),
            agent_type=agent_type,
            correlation=correlation,
            input_content_hash=input_content_hash(input_payload),
            started_at=utc_now(),
            started_monotonic=self._clock(),
        )
        self.repository.insert_run(
            AgentRunOpen(
                id=handle.id,
                agent_type=agent_type,
                correlation=correlation,
                input_payload=input_payload,
                input_content_hash=handle.input_content_hash,
                started_at=handle.started_at,
            ),
        )
        return handle

    def mark_attempt(self, handle: RunHandle, attempt: int) -> None:
        """Persist attempt progress; best effort, finalize writes the final count."""

        if attempt <= handle.attempt:
            return
        handle.attempt = attempt
        try:
            self.repository.update_attempt(run_pk=handle.id, attempt=attempt)
        except SQLAlchemyError:
            logger.exception("Failed to record attempt %d for agent run %s", attempt, handle.id)

    def finalize(  # noqa: PLR0913
        self,
        handle: RunHandle,
        *,
        outcome: RunOutcome,
        status: AgentRunStatus,
        metrics: RunMetrics,
        error: str | None = None,
    ) -> bool:
        """Single terminal write. Returns False when nothing was written."""

        if not status.is_terminal:
            raise ValueError(f"finalize requires a terminal status, got {status.value}.")
        if handle.finalized:
            logger.warning("Agent run %s is already finalized; ignoring second finalize", handle.id)
            return False

        handle.finalized = True
        if metrics.duration_ms is None:
            metrics.duration_ms = max(0, int((self._clock() - handle.started_monotonic) * 1000))
        metrics.attempt = max(metrics.attempt, handle.attempt)
        completed_at = max(utc_now(), handle.started_at)

        try:
            written = self.repository.finalize_run(
                AgentRunFinish(
                    id=handle.id,
                    status=status,
                    outcome=outcome,
                    metrics=metrics,
                    completed_at=completed_at,
                    error=error,
                ),
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to finalize agent run %s (outcome=%s); run stays RUNNING",
                handle.id,
                outcome.outcome.value,
            )
            return False

        if not written:
            logger.warning("Agent run %s was not RUNNING at finalize; nothing written", handle.id)
        return written
