"""Deterministic local model client for smoke runs and tests."""

from __future__ import annotations

import json

from agent_runs.pipeline.backend.base import ModelCallRequest, ModelCallResponse

_INPUT_MARKER = "INPUT:"


class EchoModelClient:
    """Echo the prompt's input section back as a one-item extraction."""

    model_id = "echo-local"

    def __init__(self, *, confidence: float = 0.9) -> None:
        self.confidence = confidence
        self.calls = 0

    def call(self, request: ModelCallRequest) -> ModelCallResponse:
        self.calls += 1
        _, _, tail = request.prompt_text.partition(_INPUT_MARKER)
        payload_text = tail.strip()
        items = [{"value": payload_text}] if payload_text else []
        raw_output = json.dumps(
            {"items": items, "confidence": self.confidence},
            ensure_ascii=False,
            sort_keys=True,
        )
        return ModelCallResponse(
            raw_output=raw_output,
            tokens_used=len(request.prompt_text.split()) + len(raw_output.split()),
        )
