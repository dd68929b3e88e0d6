"""Shared test fixtures."""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from agent_runs.config import Settings
from agent_runs.pipeline.backend.base import ModelCallError, ModelCallRequest, ModelCallResponse
from agent_runs.pipeline.circuit_breaker import CircuitBreaker
from agent_runs.pipeline.recorder import AgentRunRecorder
from agent_runs.pipeline.repository import AgentRunRepository
from agent_runs.pipeline.retry import RetryController
from agent_runs.pipeline.runner import AgentRunner, build_circuit_breaker

LONG_TEXT = (
    "Section 7.1 Payment terms. The buyer shall pay each invoice within forty-five days "
    "of receipt. Interest on overdue amounts accrues at one percent per month. "
) * 4


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedModelClient:
    """Model client replaying scripted responses; the last one repeats."""

    model_id = "scripted-model"

    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.requests: list[ModelCallRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def call(self, request: ModelCallRequest) -> ModelCallResponse:
        self.requests.append(request)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(request)
        return item


def ok_response(
    *,
    items: int = 1,
    confidence: float | None = 0.9,
    tokens: int = 40,
    **extra: Any,
) -> ModelCallResponse:
    payload: dict[str, Any] = {"items": [{"value": f"item-{index}"} for index in range(items)]}
    if confidence is not None:
        payload["confidence"] = confidence
    payload.update(extra)
    return ModelCallResponse(raw_output=json.dumps(payload), tokens_used=tokens)


def error_response(
    message: str,
    *,
    status_code: int | None = None,
    tokens: int | None = None,
) -> ModelCallResponse:
    return ModelCallResponse(
        raw_output=None,
        tokens_used=tokens,
        error=ModelCallError(message=message, status_code=status_code),
    )


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[AgentRunRepository]:
    repo = AgentRunRepository(tmp_path / "agent_runs.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def settings(repository: AgentRunRepository) -> Settings:
    return Settings(db_path=repository.db_path)


@pytest.fixture()
def make_runner(
    repository: AgentRunRepository,
    settings: Settings,
    fake_clock: FakeClock,
) -> Callable[..., AgentRunner]:
    """Build a runner on the test database with fake time."""

    def _build(
        model_client: Any,
        *,
        breaker: CircuitBreaker | None = None,
        runner_settings: Settings | None = None,
        **kwargs: Any,
    ) -> AgentRunner:
        effective = runner_settings or settings
        return AgentRunner(
            settings=effective,
            recorder=AgentRunRecorder(repository, clock=fake_clock),
            model_client=model_client,
            breaker=breaker or build_circuit_breaker(effective, clock=fake_clock),
            retry_controller=RetryController(sleep=fake_clock.sleep, clock=fake_clock),
            **kwargs,
        )

    return _build


@pytest.fixture()
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop AGENT_RUNS_* variables leaking from the developer shell."""

    for name in list(os.environ):
        if name.startswith("AGENT_RUNS_"):
            monkeypatch.delenv(name, raising=False)
