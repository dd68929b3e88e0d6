"""Model client implementations."""

from agent_runs.pipeline.backend.base import (
    ModelCallError,
    ModelCallRequest,
    ModelCallResponse,
    ModelClient,
)
from agent_runs.pipeline.backend.echo_client import EchoModelClient

__all__ = [
    "EchoModelClient",
    "ModelCallError",
    "ModelCallRequest",
    "ModelCallResponse",
    "ModelClient",
]
