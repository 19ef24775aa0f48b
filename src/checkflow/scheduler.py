"""Single-flight processing of queued AI to-dos.

At most one to-do executes at a time across the whole checklist: a step only
starts work when nothing in the checklist is ``running``, and it awaits the
execution before returning. The queue is passed in and handed back as a
value; an entry is consumed only once its ``running`` state has been saved.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from checkflow.engine import ChecklistEngine
from checkflow.executor import ContextDocument, ExecuteFn, ExecutionRequest
from checkflow.models import Checklist, Remark, Task, new_id
from checkflow.threads import discussion_history
from checkflow.workflow.machine import (
    apply_event,
    can_transition,
    force_state,
    is_running_anywhere,
)
from checkflow.workflow.queue import ExecutionQueue, QueueEntry

logger = logging.getLogger(__name__)

StepStatus = Literal["idle", "busy", "dropped", "completed", "failed"]
ClaimResult = Literal["claimed", "busy", "unavailable"]
EventHook = Callable[[dict[str, Any]], None]

RESULT_PREFIX = "AI execution complete."
FAILURE_PREFIX = "AI execution failed. Error:"
UNKNOWN_ERROR = "An unknown error occurred."


@dataclass(frozen=True, slots=True)
class StepOutcome:
    status: StepStatus
    entry: QueueEntry | None = None
    result_remark_id: str | None = None
    error: str | None = None
    late: bool = False


def _resolve(checklist: Checklist, entry: QueueEntry) -> tuple[Task, Remark] | None:
    task = checklist.find_task(entry.task_id)
    if task is None:
        return None
    remark = task.find_remark(entry.remark_id)
    if remark is None:
        return None
    return task, remark


class Scheduler:
    def __init__(
        self,
        engine: ChecklistEngine,
        checklist_id: str,
        execute: ExecuteFn,
        *,
        context_documents: Callable[[], list[ContextDocument]] | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.engine = engine
        self.checklist_id = checklist_id
        self.execute = execute
        self.context_documents = context_documents
        self.event_hook = event_hook if event_hook is not None else engine.event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook({"checklist_id": self.checklist_id, **event})

    def _drop(self, entry: QueueEntry, reason: str) -> StepOutcome:
        logger.warning(
            "Dropping queue entry %s/%s: %s", entry.task_id, entry.remark_id, reason
        )
        self._emit(
            {
                "event": "queue_entry_dropped",
                "task_id": entry.task_id,
                "remark_id": entry.remark_id,
                "reason": reason,
            }
        )
        return StepOutcome("dropped", entry=entry)

    def _mark_running(self, entry: QueueEntry) -> tuple[Checklist, ClaimResult]:
        """Claim ``entry`` by saving it as ``running``.

        The single-flight check runs inside the same read-modify-write, so a
        to-do started by another process since the last load is seen here.
        """
        result: list[ClaimResult] = ["unavailable"]

        def _updater(checklist: Checklist) -> None:
            result[0] = "unavailable"
            if is_running_anywhere(checklist):
                result[0] = "busy"
                return
            resolved = _resolve(checklist, entry)
            if resolved is None:
                return
            _task, remark = resolved
            if remark.tag is None or not can_transition(remark.tag, "dequeue"):
                return
            apply_event(remark, "dequeue", now=self.engine.clock())
            result[0] = "claimed"

        checklist = self.engine.update(self.checklist_id, _updater)
        return checklist, result[0]

    def _build_request(self, task: Task, remark: Remark) -> ExecutionRequest:
        documents = self.context_documents() if self.context_documents else []
        return ExecutionRequest(
            instruction=remark.text,
            task_description=task.description,
            discussion_history=discussion_history(task.remarks),
            context_documents=list(documents),
        )

    def _record_outcome(
        self,
        entry: QueueEntry,
        *,
        result: str | None,
        error: str | None,
    ) -> tuple[str | None, bool]:
        workflow = self.engine.workflow
        recorded: dict[str, Any] = {"remark_id": None, "late": False}

        def _updater(checklist: Checklist) -> None:
            recorded.update(remark_id=None, late=False)
            resolved = _resolve(checklist, entry)
            if resolved is None:
                return
            task, remark = resolved
            if remark.tag is None:
                return
            now = self.engine.clock()
            target = "completed" if error is None else "failed"
            if remark.tag.state == "running":
                apply_event(remark, "succeed" if error is None else "fail", now=now)
            else:
                # Swept or re-queued while the call was in flight; the late result still wins.
                force_state(remark, target, now=now)
                recorded["late"] = True
            if error is None:
                child = Remark(
                    id=new_id("rem-res"),
                    text=f"{RESULT_PREFIX} **Summary:** {result}",
                    user_id=workflow.executor_user_id,
                    timestamp=now,
                    parent_id=remark.id,
                )
            else:
                child = Remark(
                    id=new_id("rem-fail"),
                    text=f"{FAILURE_PREFIX} {error}",
                    user_id=workflow.system_user_id,
                    timestamp=now,
                    parent_id=remark.id,
                )
            task.remarks.append(child)
            recorded["remark_id"] = child.id

        self.engine.update(self.checklist_id, _updater)
        return recorded["remark_id"], recorded["late"]

    async def step(self, queue: ExecutionQueue) -> tuple[ExecutionQueue, StepOutcome]:
        """Process the head of ``queue`` if nothing else is running.

        Returns the remaining queue and what happened. Execution failures are
        recorded on the checklist, never raised. A failed write of the
        ``running`` state raises ``StoreError``; the caller's ``queue`` value
        still holds the entry in that case.
        """
        if not queue:
            return queue, StepOutcome("idle")

        checklist = await asyncio.to_thread(self.engine.load, self.checklist_id)
        if is_running_anywhere(checklist):
            return queue, StepOutcome("busy", entry=queue.head)

        entry, remaining = queue.pop()
        if _resolve(checklist, entry) is None:
            return remaining, self._drop(entry, "task or remark no longer exists")

        checklist, claim = await asyncio.to_thread(self._mark_running, entry)
        if claim == "busy":
            return queue, StepOutcome("busy", entry=entry)
        if claim == "unavailable":
            return remaining, self._drop(entry, "remark is not waiting to run")

        task, remark = _resolve(checklist, entry)  # type: ignore[misc]
        self._emit(
            {
                "event": "todo_running",
                "task_id": entry.task_id,
                "remark_id": entry.remark_id,
                "family": remark.tag.family if remark.tag else None,
                "queue_length": len(remaining),
            }
        )
        logger.info("Executing %s on task %s", entry.remark_id, entry.task_id)

        result: str | None = None
        error: str | None = None
        try:
            result = await self.execute(self._build_request(task, remark))
        except Exception as exc:
            error = str(exc).strip() or UNKNOWN_ERROR
            logger.warning("Execution of %s failed: %s", entry.remark_id, error)

        result_remark_id, late = await asyncio.to_thread(
            self._record_outcome, entry, result=result, error=error
        )
        if result_remark_id is None:
            logger.warning("Discarding result for %s: remark no longer exists", entry.remark_id)
        status: StepStatus = "completed" if error is None else "failed"
        self._emit(
            {
                "event": f"todo_{status}",
                "task_id": entry.task_id,
                "remark_id": entry.remark_id,
                "result_remark_id": result_remark_id,
                "late": late,
                "error": error,
            }
        )
        return remaining, StepOutcome(
            status,
            entry=entry,
            result_remark_id=result_remark_id,
            error=error,
            late=late,
        )

    async def drain(self, queue: ExecutionQueue) -> tuple[ExecutionQueue, list[StepOutcome]]:
        """Run steps in FIFO order until the queue is empty or blocked."""
        outcomes: list[StepOutcome] = []
        while True:
            queue, outcome = await self.step(queue)
            if outcome.status in {"idle", "busy"}:
                if outcome.status == "busy":
                    outcomes.append(outcome)
                return queue, outcomes
            outcomes.append(outcome)
