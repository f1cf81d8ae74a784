"""Fit outgoing conversation messages into a model's token budget.

The manager is constructed once per engine and injected; it owns its token
estimation cache. The fallback chain is estimate -> summarize -> truncate ->
last-resort message, and every fallback emits a `ContextWindowEvent`.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from proposal_engine.workflow.backend.base import Summarizer, TokenEstimator
from proposal_engine.workflow.models import ErrorCategory, Message

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW_TOKENS = 8192
DEFAULT_RESERVED_TOKENS = 1000
DEFAULT_SUMMARIZATION_RATIO = 0.5
DEFAULT_THRESHOLD_FACTOR = 1.5
DEFAULT_CACHE_SIZE = 2048

FALLBACK_TOKENS_PER_WORD = 4
FALLBACK_MESSAGE_OVERHEAD = 20
FALLBACK_SAFETY_MULTIPLIER = 1.2

HISTORY_UNAVAILABLE_TEXT = (
    "Earlier conversation history is unavailable because it could not be fitted "
    "into the model context. Continue from the current task only."
)


@dataclass(frozen=True, slots=True)
class ContextWindowEvent:
    """Observable record of a fallback path taken while preparing messages."""

    kind: str
    category: ErrorCategory | None
    model: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PreparedMessages:
    messages: list[Message]
    total_tokens: int
    was_summarized: bool = False
    was_truncated: bool = False
    events: list[ContextWindowEvent] = field(default_factory=list)


def fallback_token_estimate(text: str) -> int:
    """Word-count heuristic used when the estimator fails."""

    words = len(text.split())
    return math.ceil(
        (words * FALLBACK_TOKENS_PER_WORD + FALLBACK_MESSAGE_OVERHEAD)
        * FALLBACK_SAFETY_MULTIPLIER,
    )


class ContextWindowManager:
    """Token accounting, summarization and truncation for bounded LLM inputs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        estimator: TokenEstimator | None = None,
        summarizer: Summarizer | None = None,
        default_model: str = "default",
        context_window_tokens: int = DEFAULT_CONTEXT_WINDOW_TOKENS,
        model_context_sizes: Mapping[str, int] | None = None,
        reserved_tokens: int = DEFAULT_RESERVED_TOKENS,
        summarization_threshold_tokens: int | None = None,
        summarization_ratio: float = DEFAULT_SUMMARIZATION_RATIO,
        cache_size: int = DEFAULT_CACHE_SIZE,
        on_event: Callable[[ContextWindowEvent], None] | None = None,
    ) -> None:
        if not 0 < summarization_ratio < 1:
            raise ValueError("summarization_ratio must be between 0 and 1")
        if reserved_tokens < 0:
            raise ValueError("reserved_tokens must be >= 0")
        self.estimator = estimator
        self.summarizer = summarizer
        self.default_model = default_model
        self.context_window_tokens = context_window_tokens
        self.model_context_sizes = dict(model_context_sizes or {})
        self.reserved_tokens = reserved_tokens
        self.summarization_threshold_tokens = summarization_threshold_tokens or None
        self.summarization_ratio = summarization_ratio
        self.cache_size = max(cache_size, 0)
        self.on_event = on_event
        self._token_cache: OrderedDict[tuple[str, str, str], int] = OrderedDict()

    def budget_for(self, model: str | None = None) -> int:
        size = self.model_context_sizes.get(
            model or self.default_model,
            self.context_window_tokens,
        )
        return max(size - self.reserved_tokens, 0)

    def threshold_for(self, model: str | None = None) -> int:
        budget = self.budget_for(model)
        if self.summarization_threshold_tokens is not None:
            return max(self.summarization_threshold_tokens, budget)
        return int(budget * DEFAULT_THRESHOLD_FACTOR)

    def clear_cache(self) -> None:
        self._token_cache.clear()

    @property
    def cache_entries(self) -> int:
        return len(self._token_cache)

    def estimate_message_tokens(self, message: Message, model: str | None = None) -> int:
        tokens, _ = self._estimate(message, model or self.default_model)
        return tokens

    def estimate_total(self, messages: Sequence[Message], model: str | None = None) -> int:
        model_name = model or self.default_model
        return sum(self._estimate(message, model_name)[0] for message in messages)

    def prepare_messages(  # noqa: PLR0911
        self,
        messages: Sequence[Message],
        model: str | None = None,
    ) -> PreparedMessages:
        """Return messages that fit `context size - reserved tokens` for `model`."""

        model_name = model or self.default_model
        events: list[ContextWindowEvent] = []
        items = list(messages)
        if not items:
            return PreparedMessages(messages=[], total_tokens=0, events=events)

        budget = self.budget_for(model_name)
        counts = self._estimate_all(items, model_name, events)
        total = sum(counts)
        if total <= budget:
            return PreparedMessages(messages=items, total_tokens=total, events=events)

        threshold = self.threshold_for(model_name)
        logger.info(
            "Context over budget for model=%s: tokens=%d budget=%d threshold=%d messages=%d",
            model_name,
            total,
            budget,
            threshold,
            len(items),
        )
        was_summarized = False
        if total > threshold:
            summarized = self._summarize(items, model_name, events)
            if summarized is not None:
                was_summarized = True
                items = summarized
                counts = self._estimate_all(items, model_name, events)
                total = sum(counts)
                if total <= budget:
                    return PreparedMessages(
                        messages=items,
                        total_tokens=total,
                        was_summarized=True,
                        events=events,
                    )

        truncated = self._truncate(items, counts, budget)
        if truncated is not None:
            kept, kept_total = truncated
            self._emit(
                events,
                ContextWindowEvent(
                    kind="truncated",
                    category=ErrorCategory.CONTEXT_WINDOW_EXCEEDED,
                    model=model_name,
                    details={
                        "input_messages": len(items),
                        "kept_messages": len(kept),
                        "tokens": kept_total,
                        "budget": budget,
                    },
                ),
            )
            return PreparedMessages(
                messages=kept,
                total_tokens=kept_total,
                was_summarized=was_summarized,
                was_truncated=True,
                events=events,
            )

        fallback = Message(role="system", content=HISTORY_UNAVAILABLE_TEXT)
        self._emit(
            events,
            ContextWindowEvent(
                kind="history_unavailable",
                category=ErrorCategory.CONTEXT_WINDOW_MANAGEMENT_ERROR,
                model=model_name,
                details={"input_messages": len(items), "budget": budget},
            ),
        )
        return PreparedMessages(
            messages=[fallback],
            total_tokens=fallback_token_estimate(fallback.content),
            was_summarized=was_summarized,
            was_truncated=True,
            events=events,
        )

    def _estimate_all(
        self,
        messages: Sequence[Message],
        model: str,
        events: list[ContextWindowEvent],
    ) -> list[int]:
        counts: list[int] = []
        failures = 0
        last_error: str | None = None
        for message in messages:
            tokens, error = self._estimate(message, model)
            counts.append(tokens)
            if error is not None:
                failures += 1
                last_error = error
        if failures:
            self._emit(
                events,
                ContextWindowEvent(
                    kind="token_estimation_fallback",
                    category=ErrorCategory.TOKEN_CALCULATION_ERROR,
                    model=model,
                    details={"failed_messages": failures, "error": last_error},
                ),
            )
        return counts

    def _estimate(self, message: Message, model: str) -> tuple[int, str | None]:
        key = (model, message.role, message.content)
        cached = self._token_cache.get(key)
        if cached is not None:
            self._token_cache.move_to_end(key)
            return cached, None
        if self.estimator is None:
            return fallback_token_estimate(message.content), None
        try:
            tokens = self.estimator.estimate_tokens(message.content)
            if not isinstance(tokens, int) or isinstance(tokens, bool) or tokens < 0:
                raise ValueError(f"token estimator returned {tokens!r}")
        except Exception as error:  # noqa: BLE001 - estimator failure degrades to heuristic
            return fallback_token_estimate(message.content), f"{type(error).__name__}: {error}"
        if self.cache_size:
            self._token_cache[key] = tokens
            if len(self._token_cache) > self.cache_size:
                self._token_cache.popitem(last=False)
        return tokens, None

    def _summarize(
        self,
        messages: list[Message],
        model: str,
        events: list[ContextWindowEvent],
    ) -> list[Message] | None:
        system = [item for item in messages if item.role == "system" and not item.is_summary]
        conversation = [item for item in messages if item.role != "system" or item.is_summary]
        split_at = math.floor(len(conversation) * self.summarization_ratio)
        if self.summarizer is None or split_at < 1 or split_at >= len(conversation):
            return None
        older, recent = conversation[:split_at], conversation[split_at:]
        try:
            summary = self.summarizer.summarize(older)
        except Exception as error:  # noqa: BLE001 - summarization failure falls back to truncation
            self._emit(
                events,
                ContextWindowEvent(
                    kind="summarization_failed",
                    category=ErrorCategory.SUMMARIZATION_ERROR,
                    model=model,
                    details={
                        "summarized_messages": len(older),
                        "error": f"{type(error).__name__}: {error}",
                    },
                ),
            )
            return None
        summary = replace(summary, is_summary=True)
        self._emit(
            events,
            ContextWindowEvent(
                kind="summarized",
                category=None,
                model=model,
                details={"summarized_messages": len(older), "kept_messages": len(recent)},
            ),
        )
        return [*system, summary, *recent]

    @staticmethod
    def _truncate(
        messages: list[Message],
        counts: list[int],
        budget: int,
    ) -> tuple[list[Message], int] | None:
        pinned = {
            index
            for index, message in enumerate(messages)
            if message.role == "system" or message.is_summary
        }
        used = sum(counts[index] for index in pinned)
        if used > budget:
            return None
        kept = set(pinned)
        for index in range(len(messages) - 1, -1, -1):
            if index in kept:
                continue
            if used + counts[index] > budget:
                break
            kept.add(index)
            used += counts[index]
        if not kept:
            return None
        ordered = sorted(kept)
        return [messages[index] for index in ordered], used

    def _emit(self, events: list[ContextWindowEvent], event: ContextWindowEvent) -> None:
        events.append(event)
        log = logger.info if event.category is None else logger.warning
        log(
            "Context window event kind=%s category=%s model=%s details=%s",
            event.kind,
            event.category.value if event.category is not None else None,
            event.model,
            event.details,
        )
        if self.on_event is not None:
            self.on_event(event)
