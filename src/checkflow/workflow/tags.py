"""Workflow tags embedded as a text prefix in a remark.

A tagged remark reads ``[family|state] payload``. The prefix is a public
micro-format, so the set of families and states recognised here is closed:
anything else is plain text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

Family = Literal["ai-todo", "prompt-execution"]

AI_TODO: Family = "ai-todo"
PROMPT_EXECUTION: Family = "prompt-execution"

FAMILY_STATES: dict[str, tuple[str, ...]] = {
    AI_TODO: ("pending", "queued", "running", "completed", "failed"),
    PROMPT_EXECUTION: ("pending", "running", "completed", "failed"),
}

TAG_PATTERN = re.compile(r"^\[([a-z-]+)\|([a-z]+)\] ?(.*)$", re.DOTALL)
LEGACY_PATTERN = re.compile(r"^TODO \(Assigned to AI\):\s*(.*)$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class WorkflowTag:
    family: str
    state: str

    def __post_init__(self) -> None:
        if not is_valid(self.family, self.state):
            raise ValueError(f"Unknown workflow tag: {self.family}|{self.state}")

    @property
    def prefix(self) -> str:
        return f"[{self.family}|{self.state}]"

    def with_state(self, state: str) -> WorkflowTag:
        return WorkflowTag(self.family, state)


@dataclass(frozen=True, slots=True)
class DecodedTag:
    tag: WorkflowTag
    payload: str

    @property
    def family(self) -> str:
        return self.tag.family

    @property
    def state(self) -> str:
        return self.tag.state


def is_valid(family: str, state: str) -> bool:
    return state in FAMILY_STATES.get(family, ())


def encode_tag(family: str, state: str, payload: str) -> str:
    prefix = WorkflowTag(family, state).prefix
    return f"{prefix} {payload}" if payload else prefix


def decode_tag(text: str) -> DecodedTag | None:
    """Decode a ``[family|state] payload`` prefix, or ``None`` for plain text.

    At most one space after the closing bracket belongs to the prefix, so a
    payload may also follow the tag directly. The rest of the text is
    returned untouched so that encode/decode round trips.
    """
    match = TAG_PATTERN.match(text)
    if match is None:
        return None
    family, state, payload = match.group(1), match.group(2), match.group(3)
    if not is_valid(family, state):
        return None
    return DecodedTag(WorkflowTag(family, state), payload or "")


def decode_legacy(text: str) -> DecodedTag | None:
    """Recognise the deprecated ``TODO (Assigned to AI): ...`` convention."""
    match = LEGACY_PATTERN.match(text)
    if match is None:
        return None
    return DecodedTag(WorkflowTag(AI_TODO, "pending"), match.group(1).strip())


def decode_import(text: str) -> DecodedTag | None:
    # Tagged text wins, so already-migrated remarks are never migrated twice.
    return decode_tag(text) or decode_legacy(text)


def migrate_legacy_text(text: str) -> str:
    decoded = decode_legacy(text)
    if decoded is None:
        return text
    return encode_tag(decoded.family, decoded.state, decoded.payload)
