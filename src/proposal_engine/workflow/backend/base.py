"""Collaborator interfaces consumed by workflow steps."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from proposal_engine.workflow.models import ActionRequest, Message


@dataclass(slots=True)
class GenerationContext:
    """Inputs handed to the content generator for one step attempt."""

    step: str
    artifact: str | None
    messages: list[Message] = field(default_factory=list)
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class GeneratedContent:
    """Content produced by a generator; `actions` requests external tool calls."""

    text: str
    data: dict[str, Any] | None = None
    actions: tuple[ActionRequest, ...] = ()


class ContentGenerator(Protocol):
    def generate(self, prompt: str, context: GenerationContext) -> GeneratedContent:
        """Produce structured content for a prompt."""


class Summarizer(Protocol):
    def summarize(self, messages: Sequence[Message]) -> Message:
        """Condense messages into one synthetic message."""


class TokenEstimator(Protocol):
    def estimate_tokens(self, text: str) -> int:
        """Return the token count of `text` for the target model."""


class ContentEvaluator(Protocol):
    def score(
        self,
        content: str,
        *,
        content_type: str,
        criteria: Sequence[str],
    ) -> Mapping[str, float]:
        """Return a 0..1 score per criterion id."""


class DocumentLoader(Protocol):
    def load(self, source: str) -> str:
        """Return raw document text for a source handle."""


class ActionExecutor(Protocol):
    def execute(self, action: ActionRequest) -> str:
        """Run one external action and return its textual result."""


@dataclass(slots=True)
class Collaborators:
    """External services wired into the proposal flow at startup."""

    generator: ContentGenerator
    evaluator: ContentEvaluator
    loader: DocumentLoader
    executor: ActionExecutor | None = None
