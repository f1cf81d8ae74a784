"""Retry policy, exponential backoff and per-call timeouts."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import TypeVar

from proposal_engine.storage.common import utc_now
from proposal_engine.workflow.failure_classifier import classify_failure
from proposal_engine.workflow.models import (
    CollaboratorTimeoutError,
    ErrorCategory,
    ErrorEvent,
    WorkflowError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_DELAY_MS = 1_000
DEFAULT_MAX_DELAY_MS = 30_000
JITTER_RATIO = 0.2

_RNG = random.Random()  # noqa: S311

_ALWAYS_RETRY = frozenset({ErrorCategory.LLM_UNAVAILABLE, ErrorCategory.RATE_LIMIT_EXCEEDED})
_NEVER_RETRY = frozenset(
    {
        ErrorCategory.CONTEXT_WINDOW_EXCEEDED,
        ErrorCategory.CONTEXT_WINDOW_MANAGEMENT_ERROR,
        ErrorCategory.CHECKPOINT_ERROR,
    },
)

_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.LLM_UNAVAILABLE: (
        "The AI service is temporarily unavailable. Please try again in a few moments."
    ),
    ErrorCategory.RATE_LIMIT_EXCEEDED: (
        "We've reached the usage limit. Please try again in a few moments."
    ),
    ErrorCategory.CONTEXT_WINDOW_EXCEEDED: (
        "The conversation has become too long to process. "
        "Start a new conversation or focus on smaller pieces of information."
    ),
    ErrorCategory.CONTEXT_WINDOW_MANAGEMENT_ERROR: (
        "The conversation history could not be condensed to fit the model. "
        "Try shortening the material under review."
    ),
    ErrorCategory.TOOL_EXECUTION_ERROR: (
        "I had trouble executing a tool or accessing external data. "
        "Please check the information provided and try again."
    ),
    ErrorCategory.INVALID_RESPONSE_FORMAT: (
        "I encountered a problem formatting my response. Let's approach this differently."
    ),
    ErrorCategory.CHECKPOINT_ERROR: (
        "Progress could not be saved. The last saved state is intact; please retry."
    ),
    ErrorCategory.SUMMARIZATION_ERROR: (
        "Earlier conversation could not be summarized. Please try again."
    ),
    ErrorCategory.TOKEN_CALCULATION_ERROR: (
        "The size of the request could not be measured. Please try again."
    ),
}


def should_retry(event: ErrorEvent, attempts_so_far: int, max_attempts: int) -> bool:
    """Decide whether a failed call is worth another attempt.

    Categories that are retried "once" use `attempts_so_far < 1` uniformly.
    """

    if attempts_so_far >= max_attempts or event.fatal:
        return False
    if event.category in _ALWAYS_RETRY:
        return True
    if event.category in _NEVER_RETRY:
        return False
    return attempts_so_far < 1


def compute_backoff(
    attempt: int,
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    *,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay in milliseconds with uniform +/-20% jitter, capped."""

    generator = rng or _RNG
    delay = base_delay_ms * (2 ** max(attempt, 0))
    jitter = delay * JITTER_RATIO * generator.uniform(-1.0, 1.0)
    return max(0.0, min(delay + jitter, max_delay_ms))


def user_facing_message(category: ErrorCategory) -> str:
    """Explanation shown to the user when an error is surfaced."""

    prefix = "I encountered an error while processing your request. "
    return prefix + _USER_MESSAGES.get(
        category,
        "Something unexpected happened. Let's try a different approach.",
    )


def build_error_event(
    error: BaseException,
    *,
    step: str | None,
    retry_count: int,
    fatal: bool = False,
) -> ErrorEvent:
    classification = classify_failure(error)
    return ErrorEvent(
        timestamp=utc_now(),
        category=classification.category,
        message=str(error) or type(error).__name__,
        step=step,
        retry_count=retry_count,
        fatal=fatal,
    )


@dataclass(slots=True)
class RetryPolicy:
    """Bounded retry settings shared by the engine and the checkpoint store."""

    max_attempts: int = 3
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def delay_seconds(self, attempt: int) -> float:
        return (
            compute_backoff(
                attempt,
                self.base_delay_ms,
                self.max_delay_ms,
                rng=self.rng,
            )
            / 1000.0
        )


class RetryExhaustedError(WorkflowError):
    """Last failure of a retried call, with its classified event."""

    def __init__(self, event: ErrorEvent, error: BaseException) -> None:
        super().__init__(event.message)
        self.event = event
        self.error = error


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    step: str | None,
    retry_on: tuple[type[BaseException], ...] | None = None,
) -> T:
    """Call `operation`, retrying per policy.

    `attempts_so_far` counts the retries already spent, so the first failure is
    evaluated with 0 and at most `max_attempts` retries follow the first call.
    With `retry_on`, only those exception types are retried (up to
    `max_attempts`) instead of consulting the category policy.
    """

    attempts_so_far = 0
    while True:
        try:
            return operation()
        except Exception as error:
            event = build_error_event(error, step=step, retry_count=attempts_so_far)
            if retry_on is not None:
                retryable = isinstance(error, retry_on) and attempts_so_far < policy.max_attempts
            else:
                retryable = should_retry(event, attempts_so_far, policy.max_attempts)
            if not retryable:
                raise RetryExhaustedError(event, error) from error
            delay = policy.delay_seconds(attempts_so_far)
            logger.warning(
                "Retrying %s after %s (category=%s attempt=%d delay=%.3fs)",
                step or "operation",
                type(error).__name__,
                event.category.value,
                attempts_so_far + 1,
                delay,
            )
            policy.sleep(delay)
            attempts_so_far += 1


def call_with_timeout(
    func: Callable[[], T],
    *,
    timeout_seconds: float | None,
    description: str,
) -> T:
    """Run one external call under a wall-clock timeout.

    The worker thread is abandoned on timeout; the caller sees
    `CollaboratorTimeoutError` which classifies as LLM_UNAVAILABLE.
    """

    if timeout_seconds is None or timeout_seconds <= 0:
        return func()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="collaborator-call")
    try:
        future = executor.submit(func)
        try:
            return future.result(timeout=timeout_seconds)
        except FutureTimeoutError as error:
            future.cancel()
            raise CollaboratorTimeoutError(
                f"{description} timed out after {timeout_seconds:.1f}s",
            ) from error
    finally:
        executor.shutdown(wait=False)
