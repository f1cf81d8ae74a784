"""Thread id naming convention: `{component}_{logicalId}[_{suffix}]`."""

from __future__ import annotations

import re
from dataclasses import dataclass

from proposal_engine.storage.common import utc_now
from proposal_engine.workflow.models import ThreadIdError

DEFAULT_COMPONENT = "proposal"
MAX_THREAD_ID_LENGTH = 200

_PART = r"[A-Za-z0-9][A-Za-z0-9-]*"
_COMPONENT = r"[a-z][a-z0-9-]*"
_THREAD_ID_RE = re.compile(
    rf"^(?P<component>{_COMPONENT})_(?P<logical_id>{_PART})(?:_(?P<suffix>{_PART}))?$",
)


@dataclass(frozen=True, slots=True)
class ThreadIdParts:
    component: str
    logical_id: str
    suffix: str | None


def parse_thread_id(thread_id: str) -> ThreadIdParts:
    """Split a thread id into parts or raise `ThreadIdError`."""

    if not isinstance(thread_id, str) or not thread_id:
        raise ThreadIdError("Thread id must be a non-empty string")
    if len(thread_id) > MAX_THREAD_ID_LENGTH:
        raise ThreadIdError(
            f"Thread id exceeds {MAX_THREAD_ID_LENGTH} characters: {thread_id[:40]!r}...",
        )
    match = _THREAD_ID_RE.match(thread_id)
    if match is None:
        raise ThreadIdError(
            f"Malformed thread id {thread_id!r}; expected "
            "'{component}_{logicalId}[_{suffix}]'",
        )
    return ThreadIdParts(
        component=match.group("component"),
        logical_id=match.group("logical_id"),
        suffix=match.group("suffix"),
    )


def validate_thread_id(thread_id: str) -> str:
    parse_thread_id(thread_id)
    return thread_id


def is_valid_thread_id(thread_id: str) -> bool:
    try:
        parse_thread_id(thread_id)
    except ThreadIdError:
        return False
    return True


def build_thread_id(
    logical_id: str,
    *,
    component: str | None = None,
    suffix: str | None = None,
    timestamped: bool = False,
) -> str:
    """Compose a valid thread id; `timestamped` appends epoch milliseconds."""

    component = (component or DEFAULT_COMPONENT).strip().lower()
    logical_id = logical_id.strip()
    if timestamped and suffix is None:
        suffix = str(int(utc_now().timestamp() * 1000))
    thread_id = f"{component}_{logical_id}"
    if suffix is not None:
        thread_id = f"{thread_id}_{suffix.strip()}"
    return validate_thread_id(thread_id)
