"""Deterministic local backend for CLI runs and integration tests."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from pathlib import Path

from proposal_engine.workflow.backend.base import (
    Collaborators,
    GeneratedContent,
    GenerationContext,
)
from proposal_engine.workflow.models import ActionRequest, Message

_SUMMARY_SNIPPET_CHARS = 60


class EchoBackend:
    """Echoes prompts back as content and scores every non-empty text as passing."""

    name = "echo"

    def generate(self, prompt: str, context: GenerationContext) -> GeneratedContent:
        label = context.artifact or context.step
        text = prompt.strip() or f"{label} output"
        guidance = [
            message.content
            for message in context.messages
            if message.role == "user" and message.metadata.get("target") == context.artifact
        ]
        if guidance:
            text = f"{text}\n\nRevision notes: {guidance[-1]}"
        return GeneratedContent(
            text=text,
            data={"backend": self.name, "artifact": label, "summary": text},
        )

    def summarize(self, messages: Sequence[Message]) -> Message:
        snippets = [
            f"{message.role}: {message.content[:_SUMMARY_SNIPPET_CHARS]}" for message in messages
        ]
        return Message(
            role="system",
            content=f"Summary of {len(messages)} earlier messages. " + " | ".join(snippets),
            is_summary=True,
        )

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / 4)

    def score(
        self,
        content: str,
        *,
        content_type: str,  # noqa: ARG002
        criteria: Sequence[str],
    ) -> Mapping[str, float]:
        value = 1.0 if content.strip() else 0.0
        return {criterion: value for criterion in criteria}

    def load(self, source: str) -> str:
        path = Path(source)
        if path.is_file():
            return path.read_text(encoding="utf-8")
        return source

    def execute(self, action: ActionRequest) -> str:
        arguments = ", ".join(f"{key}={value}" for key, value in sorted(action.arguments.items()))
        return f"{action.name}({arguments})"


def build_echo_collaborators() -> tuple[Collaborators, EchoBackend]:
    backend = EchoBackend()
    collaborators = Collaborators(
        generator=backend,
        evaluator=backend,
        loader=backend,
        executor=backend,
    )
    return collaborators, backend
