from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from checkflow.models import Checklist, Remark, new_id
from checkflow.workflow.tags import AI_TODO, PROMPT_EXECUTION, WorkflowTag

logger = logging.getLogger(__name__)

Event = Literal["enqueue", "dequeue", "succeed", "fail", "reset"]

DEFAULT_STALE_AFTER = timedelta(minutes=30)
DEFAULT_RETRY_COOLDOWN = timedelta(minutes=5)
STALE_RESET_MESSAGE = "AI to-do was stuck in a running state and has been reset automatically."

TRANSITIONS: dict[str, dict[tuple[str, str], str]] = {
    AI_TODO: {
        ("pending", "enqueue"): "queued",
        ("failed", "enqueue"): "queued",
        ("completed", "enqueue"): "queued",
        ("queued", "dequeue"): "running",
        ("running", "succeed"): "completed",
        ("running", "fail"): "failed",
        ("running", "reset"): "pending",
    },
    PROMPT_EXECUTION: {
        ("pending", "dequeue"): "running",
        ("running", "succeed"): "completed",
        ("running", "fail"): "failed",
        ("running", "reset"): "pending",
    },
}

TERMINAL_STATES = frozenset({"completed", "failed"})


class InvalidTransitionError(RuntimeError):
    """Raised when an event is not allowed from a remark's current state."""

    def __init__(self, tag: WorkflowTag, event: str, message: str | None = None) -> None:
        super().__init__(message or f"Cannot {event} a {tag.family} remark in state '{tag.state}'.")
        self.tag = tag
        self.event = event


class RetryCooldownError(InvalidTransitionError):
    """Raised when a completed to-do is re-enqueued before its cooldown elapsed."""

    def __init__(self, tag: WorkflowTag, available_at: datetime) -> None:
        super().__init__(
            tag,
            "enqueue",
            f"Completed to-do can be re-run from {available_at.isoformat()} onwards.",
        )
        self.available_at = available_at


def can_transition(tag: WorkflowTag, event: str) -> bool:
    return (tag.state, event) in TRANSITIONS.get(tag.family, {})


def next_state(tag: WorkflowTag, event: str) -> str:
    try:
        return TRANSITIONS[tag.family][(tag.state, event)]
    except KeyError:
        raise InvalidTransitionError(tag, event) from None


def retry_available_at(tag: WorkflowTag, updated_at: datetime, cooldown: timedelta) -> datetime:
    if tag.state == "completed":
        return updated_at + cooldown
    return updated_at


def is_retry_eligible(
    tag: WorkflowTag,
    updated_at: datetime,
    now: datetime,
    cooldown: timedelta = DEFAULT_RETRY_COOLDOWN,
) -> bool:
    """Whether an ``enqueue`` is allowed right now.

    Failed to-dos may be retried at once; completed ones only once the
    cooldown has elapsed since completion.
    """
    if not can_transition(tag, "enqueue"):
        return False
    if tag.state != "completed":
        return True
    return now >= retry_available_at(tag, updated_at, cooldown)


def apply_event(
    remark: Remark,
    event: Event,
    *,
    now: datetime,
    cooldown: timedelta = DEFAULT_RETRY_COOLDOWN,
) -> WorkflowTag:
    if remark.tag is None:
        raise ValueError(f"Remark {remark.id} carries no workflow tag.")
    tag = remark.tag
    state = next_state(tag, event)
    if event == "enqueue" and not is_retry_eligible(tag, remark.state_changed_at, now, cooldown):
        raise RetryCooldownError(
            tag, retry_available_at(tag, remark.state_changed_at, cooldown)
        )
    remark.set_state(state, now)
    return remark.tag


def force_state(remark: Remark, state: str, *, now: datetime) -> WorkflowTag:
    """Set a state without consulting the transition table (late results)."""
    remark.set_state(state, now)
    return remark.tag


@dataclass(frozen=True, slots=True)
class StaleReset:
    task_id: str
    remark_id: str


def sweep_stale(
    checklist: Checklist,
    *,
    now: datetime,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
    system_user_id: str = "system",
) -> list[StaleReset]:
    """Reset remarks stuck in ``running`` for longer than ``stale_after``.

    Each affected task gains one system remark recording the reset.
    """
    resets: list[StaleReset] = []
    for task in checklist.tasks:
        task_reset = False
        for remark in task.remarks:
            if remark.tag is None or remark.tag.state != "running":
                continue
            if now - remark.state_changed_at <= stale_after:
                continue
            apply_event(remark, "reset", now=now)
            resets.append(StaleReset(task.id, remark.id))
            task_reset = True
        if task_reset:
            task.remarks.append(
                Remark(
                    id=new_id("rem-reset"),
                    text=STALE_RESET_MESSAGE,
                    user_id=system_user_id,
                    timestamp=now,
                )
            )
    if resets:
        logger.info("Reset %d stale running remark(s) in checklist %s.", len(resets), checklist.id)
    return resets


def is_running_anywhere(checklist: Checklist) -> bool:
    return any(
        remark.tag is not None and remark.tag.state == "running"
        for _task, remark in checklist.iter_remarks()
    )
