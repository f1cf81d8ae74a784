"""Deterministic failure classification for step retry policy."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from proposal_engine.workflow.models import (
    CheckpointError,
    CollaboratorTimeoutError,
    ContextWindowError,
    ErrorCategory,
    InvalidResponseFormatError,
    ToolExecutionError,
)

FAILURE_CLASSIFIER_VERSION = 1

_SUMMARIZATION_PATTERNS: tuple[str, ...] = (
    "summarization failed",
    "summarisation failed",
    "failed to summarize",
    "summary generation failed",
)
_TOKEN_CALCULATION_PATTERNS: tuple[str, ...] = (
    "token count",
    "token estimation",
    "estimate tokens",
    "tokenizer",
)
_CONTEXT_MANAGEMENT_PATTERNS: tuple[str, ...] = (
    "context window management",
    "context manager failed",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "ratelimit",
    "rate_limit",
    "too many requests",
)
_CONTEXT_WINDOW_PATTERNS: tuple[str, ...] = (
    "maximum context length",
    "context length",
    "context window",
    "token limit",
    "too many tokens",
    "prompt is too long",
)
_LLM_UNAVAILABLE_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "connection error",
    "service unavailable",
    "server error",
    "bad gateway",
    "overloaded",
    "temporarily unavailable",
)
_INVALID_FORMAT_PATTERNS: tuple[str, ...] = (
    "parse",
    "json",
    "schema",
    "invalid format",
    "invalid response",
    "malformed",
    "validation error",
    "unexpected token",
)
_CHECKPOINT_PATTERNS: tuple[str, ...] = ("checkpoint",)

_RATE_LIMIT_CODE_RE = re.compile(r"\b429\b")
_HTTP_SERVER_CODE_RE = re.compile(r"\b(?:http|status|code|returned)\D{0,3}(5\d\d)\b")
_SERVER_CODE_RE = re.compile(r"\b5\d\d\b")
_TOOL_RE = re.compile(r"\btool\b.*\b(execution|failed|error)\b|\b(execution|failed)\b.*\btool\b")

_TYPE_RULES: tuple[tuple[type[BaseException], ErrorCategory, str], ...] = (
    (CheckpointError, ErrorCategory.CHECKPOINT_ERROR, "checkpoint_error_type"),
    (CollaboratorTimeoutError, ErrorCategory.LLM_UNAVAILABLE, "timeout_type"),
    (TimeoutError, ErrorCategory.LLM_UNAVAILABLE, "timeout_type"),
    (ContextWindowError, ErrorCategory.CONTEXT_WINDOW_MANAGEMENT_ERROR, "context_window_type"),
    (InvalidResponseFormatError, ErrorCategory.INVALID_RESPONSE_FORMAT, "invalid_format_type"),
    (json.JSONDecodeError, ErrorCategory.INVALID_RESPONSE_FORMAT, "invalid_format_type"),
    (ToolExecutionError, ErrorCategory.TOOL_EXECUTION_ERROR, "tool_execution_type"),
    (ConnectionError, ErrorCategory.LLM_UNAVAILABLE, "connection_type"),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self, *, step: str | None) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and checkpoint metadata."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "step": step,
            "category": self.category.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(error: BaseException | str) -> ErrorCategory:
    """Map a failure onto the error taxonomy. Never raises."""

    return classify_failure(error).category


def classify_failure(error: BaseException | str) -> FailureClassification:
    """Classify by exception type, then status code, then message patterns."""

    try:
        return _classify(error)
    except Exception:  # noqa: BLE001 - classification must be total
        return FailureClassification(
            category=ErrorCategory.UNKNOWN,
            matched_rule="classifier_failure",
            matched_pattern=None,
        )


def _classify(error: BaseException | str) -> FailureClassification:  # noqa: PLR0911
    if isinstance(error, BaseException):
        for error_type, category, rule in _TYPE_RULES:
            if isinstance(error, error_type):
                return FailureClassification(
                    category=category,
                    matched_rule=rule,
                    matched_pattern=None,
                )
        status_code = _status_code(error)
        if status_code == 429:  # noqa: PLR2004
            return FailureClassification(
                category=ErrorCategory.RATE_LIMIT_EXCEEDED,
                matched_rule="status_code",
                matched_pattern="429",
            )
        if status_code is not None and 500 <= status_code < 600:  # noqa: PLR2004
            return FailureClassification(
                category=ErrorCategory.LLM_UNAVAILABLE,
                matched_rule="status_code",
                matched_pattern=str(status_code),
            )

    haystack = _normalize_text(error)

    ordered_rules: tuple[tuple[str, tuple[str, ...], ErrorCategory], ...] = (
        ("summarization", _SUMMARIZATION_PATTERNS, ErrorCategory.SUMMARIZATION_ERROR),
        (
            "context_window_management",
            _CONTEXT_MANAGEMENT_PATTERNS,
            ErrorCategory.CONTEXT_WINDOW_MANAGEMENT_ERROR,
        ),
        ("rate_limit", _RATE_LIMIT_PATTERNS, ErrorCategory.RATE_LIMIT_EXCEEDED),
        ("context_window", _CONTEXT_WINDOW_PATTERNS, ErrorCategory.CONTEXT_WINDOW_EXCEEDED),
        ("token_calculation", _TOKEN_CALCULATION_PATTERNS, ErrorCategory.TOKEN_CALCULATION_ERROR),
    )
    for rule, patterns, category in ordered_rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                category=category,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    code_match = _RATE_LIMIT_CODE_RE.search(haystack)
    if code_match is not None:
        return FailureClassification(
            category=ErrorCategory.RATE_LIMIT_EXCEEDED,
            matched_rule="rate_limit_code",
            matched_pattern=code_match.group(0),
        )

    pattern = _first_match(haystack, _LLM_UNAVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=ErrorCategory.LLM_UNAVAILABLE,
            matched_rule="llm_unavailable",
            matched_pattern=pattern,
        )

    code_match = _HTTP_SERVER_CODE_RE.search(haystack)
    if code_match is not None:
        return FailureClassification(
            category=ErrorCategory.LLM_UNAVAILABLE,
            matched_rule="server_code",
            matched_pattern=code_match.group(1),
        )

    tool_match = _TOOL_RE.search(haystack)
    if tool_match is not None:
        return FailureClassification(
            category=ErrorCategory.TOOL_EXECUTION_ERROR,
            matched_rule="tool_execution",
            matched_pattern=tool_match.group(0),
        )

    pattern = _first_match(haystack, _INVALID_FORMAT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=ErrorCategory.INVALID_RESPONSE_FORMAT,
            matched_rule="invalid_format",
            matched_pattern=pattern,
        )

    # A bare 5xx number only counts once no format or tool rule has claimed the message.
    code_match = _SERVER_CODE_RE.search(haystack)
    if code_match is not None:
        return FailureClassification(
            category=ErrorCategory.LLM_UNAVAILABLE,
            matched_rule="server_code",
            matched_pattern=code_match.group(0),
        )

    pattern = _first_match(haystack, _CHECKPOINT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=ErrorCategory.CHECKPOINT_ERROR,
            matched_rule="checkpoint",
            matched_pattern=pattern,
        )

    return FailureClassification(
        category=ErrorCategory.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def _status_code(error: BaseException) -> int | None:
    for attribute in ("status_code", "status", "code", "http_status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _normalize_text(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error.lower()
    return f"{type(error).__name__}: {error}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
