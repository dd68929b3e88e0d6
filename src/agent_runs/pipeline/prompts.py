"""Versioned prompt templates per agent type and prompt provenance hashing."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from agent_runs.pipeline.models import AgentType
from agent_runs.storage.common import canonical_json, sha256_hex

PromptBuilder = Callable[[Any], str]


class PromptRegistryError(RuntimeError):
    """Registry misconfiguration; raised at startup, never per call."""


@dataclass(frozen=True, slots=True)
class PromptTemplate:
    """Published prompt capability for one agent type."""

    agent_type: AgentType
    template_id: str
    version: str
    build_prompt: PromptBuilder


@dataclass(frozen=True, slots=True)
class PromptProvenance:
    """What exactly produced a prompt."""

    template_id: str
    version: str
    prompt_text: str
    prompt_hash: str


def prompt_hash(template_id: str, version: str, prompt_text: str) -> str:
    """Stable hash of template identity plus rendered text."""

    return sha256_hex(canonical_json([template_id, version, prompt_text]))


def render_input(payload: Any) -> str:
    """Canonical text form of an agent input for embedding in prompts."""

    if isinstance(payload, str):
        return payload
    return canonical_json(payload)


class PromptRegistry:
    """Lookup table of prompt templates, one active version per agent type."""

    def __init__(self, templates: Iterable[PromptTemplate] = ()) -> None:
        self._active: dict[AgentType, PromptTemplate] = {}
        self._published: dict[tuple[str, str], PromptTemplate] = {}
        for template in templates:
            self.register(template)

    def register(self, template: PromptTemplate) -> None:
        """Publish a template version and make it active for its agent type."""

        published_key = (template.template_id, template.version)
        existing = self._published.get(published_key)
        if existing is not None and existing != template:
            raise PromptRegistryError(
                f"Prompt {template.template_id}@{template.version} is already published; "
                "changing prompt text requires a new version.",
            )
        self._published[published_key] = template
        self._active[template.agent_type] = template

    def lookup(self, agent_type: AgentType) -> PromptTemplate:
        """Active template for an agent type."""

        template = self._active.get(agent_type)
        if template is None:
            raise PromptRegistryError(f"No prompt template registered for {agent_type.value}.")
        return template

    def require(self, agent_types: Iterable[AgentType]) -> None:
        """Fail fast when any served agent type lacks a template."""

        missing = sorted(
            agent_type.value for agent_type in agent_types if agent_type not in self._active
        )
        if missing:
            raise PromptRegistryError(
                "Missing prompt templates for agent types: " + ", ".join(missing),
            )

    def build(self, agent_type: AgentType, payload: Any) -> PromptProvenance:
        """Render the active prompt and its provenance hash."""

        template = self.lookup(agent_type)
        prompt_text = template.build_prompt(payload)
        return PromptProvenance(
            template_id=template.template_id,
            version=template.version,
            prompt_text=prompt_text,
            prompt_hash=prompt_hash(template.template_id, template.version, prompt_text),
        )

    @property
    def agent_types(self) -> tuple[AgentType, ...]:
        return tuple(self._active)


def _instruction_prompt(instruction: str) -> PromptBuilder:
    def _build(payload: Any) -> str:
        return f"{instruction}\n\nINPUT:\n{render_input(payload)}"

    return _build


_DEFAULT_INSTRUCTIONS: dict[AgentType, str] = {
    AgentType.SENTINEL: "Detect whether the monitored source content changed.",
    AgentType.OCR: "Transcribe the document text exactly.",
    AgentType.EXTRACTOR: "Extract explicitly stated data points with exact quotes.",
    AgentType.COMPOSER: "Compose candidate rules from the extracted data points.",
    AgentType.REVIEWER: "Review the candidate rules against their evidence.",
    AgentType.ARBITER: "Resolve the conflict between the competing rules.",
    AgentType.RELEASER: "Prepare the release notes for the approved rules.",
    AgentType.CONTENT_CLASSIFIER: "Classify the content type of the evidence.",
    AgentType.CLAIM_EXTRACTOR: "Extract atomic claims from the evidence.",
    AgentType.QUERY_CLASSIFIER: "Classify the intent of the user query.",
}


def default_prompt_registry() -> PromptRegistry:
    """Registry with a v1 template for every known agent type."""

    return PromptRegistry(
        PromptTemplate(
            agent_type=agent_type,
            template_id=f"{agent_type.value.lower()}-v1",
            version="1.0.0",
            build_prompt=_instruction_prompt(instruction),
        )
        for agent_type, instruction in _DEFAULT_INSTRUCTIONS.items()
    )
