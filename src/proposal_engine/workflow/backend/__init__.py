"""Collaborator backends for workflow steps."""

from proposal_engine.workflow.backend.base import (
    ActionExecutor,
    Collaborators,
    ContentEvaluator,
    ContentGenerator,
    DocumentLoader,
    GeneratedContent,
    GenerationContext,
    Summarizer,
    TokenEstimator,
)
from proposal_engine.workflow.backend.echo_agent import EchoBackend, build_echo_collaborators

__all__ = [
    "ActionExecutor",
    "Collaborators",
    "ContentEvaluator",
    "ContentGenerator",
    "DocumentLoader",
    "EchoBackend",
    "GeneratedContent",
    "GenerationContext",
    "Summarizer",
    "TokenEstimator",
    "build_echo_collaborators",
]
