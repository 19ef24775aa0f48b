from __future__ import annotations

import getpass
import logging
import re
from collections import Counter
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from checkflow.config import WorkflowConfig
from checkflow.markdown import MalformedImportError, export_markdown, import_markdown
from checkflow.models import (
    PRIORITIES,
    Checklist,
    Remark,
    Task,
    format_timestamp,
    new_id,
    utcnow,
)
from checkflow.state.store import ChecklistStore, StoreError
from checkflow.threads import FlatRemark, flatten_remarks
from checkflow.workflow.machine import (
    apply_event,
    is_retry_eligible,
    retry_available_at,
    sweep_stale,
)
from checkflow.workflow.queue import ExecutionQueue, QueueEntry
from checkflow.workflow.tags import AI_TODO, PROMPT_EXECUTION, WorkflowTag

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]

REFINED_PROMPT_PATTERN = re.compile(r"Generated a refined prompt for: (.+)")


class TaskNotFoundError(LookupError):
    """Raised when a user action names a task that does not exist."""


class RemarkNotFoundError(LookupError):
    """Raised when a user action names a remark that does not exist."""


def default_identity() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return "anonymous"


def _require_task(checklist: Checklist, task_id: str) -> Task:
    task = checklist.find_task(task_id)
    if task is None:
        raise TaskNotFoundError(f"Task not found: {task_id}")
    return task


def _require_remark(task: Task, remark_id: str) -> Remark:
    remark = task.find_remark(remark_id)
    if remark is None:
        raise RemarkNotFoundError(f"Remark not found: {remark_id}")
    return remark


class ChecklistEngine:
    """User-facing operations on stored checklists.

    Every mutation is a read-modify-write through ``ChecklistStore.update``;
    loading a checklist also repairs to-dos left ``running`` for too long.
    """

    def __init__(
        self,
        store: ChecklistStore,
        *,
        workflow: WorkflowConfig | None = None,
        identity: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = utcnow,
        event_hook: EventHook | None = None,
    ) -> None:
        self.store = store
        self.workflow = workflow or WorkflowConfig()
        self.identity = identity or default_identity
        self.clock = clock
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _sweep(self, checklist: Checklist) -> list:
        return sweep_stale(
            checklist,
            now=self.clock(),
            stale_after=self.workflow.stale_after,
            system_user_id=self.workflow.system_user_id,
        )

    def load(self, checklist_id: str) -> Checklist:
        checklist, _revision = self.store.load(checklist_id)
        resets = self._sweep(checklist)
        if not resets:
            return checklist
        checklist = self.store.update(checklist_id, self._sweep)
        for reset in resets:
            self._emit(
                {
                    "event": "todo_stale_reset",
                    "checklist_id": checklist_id,
                    "task_id": reset.task_id,
                    "remark_id": reset.remark_id,
                }
            )
        return checklist

    def update(self, checklist_id: str, updater: Callable[[Checklist], Any]) -> Checklist:
        return self.store.update(checklist_id, updater)

    def create_checklist(self, name: str, tasks: list[Task] | None = None) -> Checklist:
        if not name.strip():
            raise ValueError("Checklist name must not be empty.")
        checklist = Checklist(
            id=new_id("cl"),
            name=name.strip(),
            tasks=list(tasks or []),
            owner_id=self.identity(),
        )
        self.store.save(checklist)
        return checklist

    def add_task(
        self,
        checklist_id: str,
        description: str,
        *,
        priority: str = "Medium",
        due_date: date | None = None,
        assignee: str | None = None,
    ) -> Task:
        if priority not in PRIORITIES:
            raise ValueError(f"Unknown priority: {priority}")
        task = Task(
            id=new_id("task"),
            description=description.strip(),
            priority=priority,  # type: ignore[arg-type]
            assignee=assignee or None,
            due_date=due_date or self.clock().date(),
        )

        def _updater(checklist: Checklist) -> None:
            checklist.tasks.append(task)

        self.update(checklist_id, _updater)
        return task

    def toggle_task(self, checklist_id: str, task_id: str) -> Task:
        def _updater(checklist: Checklist) -> None:
            task = _require_task(checklist, task_id)
            task.status = "pending" if task.is_complete else "complete"

        checklist = self.update(checklist_id, _updater)
        return _require_task(checklist, task_id)

    def delete_task(self, checklist_id: str, task_id: str) -> None:
        def _updater(checklist: Checklist) -> None:
            task = _require_task(checklist, task_id)
            checklist.tasks.remove(task)

        self.update(checklist_id, _updater)

    def add_remark(
        self,
        checklist_id: str,
        task_id: str,
        text: str,
        *,
        parent_id: str | None = None,
        ai_todo: bool = False,
    ) -> Remark:
        now = self.clock()
        body = text.strip()
        if not body:
            raise ValueError("Remark text must not be empty.")
        remark = Remark(
            id=new_id("rem"),
            text=body,
            user_id=self.identity(),
            timestamp=now,
            parent_id=parent_id,
            tag=WorkflowTag(AI_TODO, "pending") if ai_todo else None,
            tag_updated_at=now if ai_todo else None,
        )

        def _updater(checklist: Checklist) -> None:
            task = _require_task(checklist, task_id)
            if parent_id is not None:
                _require_remark(task, parent_id)
            task.remarks.append(remark)

        self.update(checklist_id, _updater)
        return remark

    def delete_remark(self, checklist_id: str, task_id: str, remark_id: str) -> int:
        removed: list[int] = []

        def _updater(checklist: Checklist) -> None:
            task = _require_task(checklist, task_id)
            _require_remark(task, remark_id)
            doomed = {remark_id}
            changed = True
            while changed:
                changed = False
                for remark in task.remarks:
                    if remark.parent_id in doomed and remark.id not in doomed:
                        doomed.add(remark.id)
                        changed = True
            before = len(task.remarks)
            task.remarks = [remark for remark in task.remarks if remark.id not in doomed]
            removed[:] = [before - len(task.remarks)]

        self.update(checklist_id, _updater)
        return removed[0]

    def thread(self, checklist_id: str, task_id: str) -> list[FlatRemark]:
        task = _require_task(self.load(checklist_id), task_id)
        return flatten_remarks(task.remarks)

    def enqueue_todo(
        self,
        queue: ExecutionQueue,
        checklist_id: str,
        task_id: str,
        remark_id: str,
    ) -> ExecutionQueue:
        """Move an AI to-do to ``queued`` and append it to ``queue``.

        Raises ``InvalidTransitionError`` (or ``RetryCooldownError``) when the
        to-do cannot be queued from its current state.
        """
        self.load(checklist_id)

        def _updater(checklist: Checklist) -> None:
            remark = _require_remark(_require_task(checklist, task_id), remark_id)
            if remark.tag is None:
                raise ValueError(f"Remark {remark_id} is not an AI to-do.")
            apply_event(
                remark, "enqueue", now=self.clock(), cooldown=self.workflow.retry_cooldown
            )

        self.update(checklist_id, _updater)
        entry = QueueEntry(task_id, remark_id)
        self._emit(
            {
                "event": "todo_queued",
                "checklist_id": checklist_id,
                "task_id": task_id,
                "remark_id": remark_id,
                "queue_length": len(queue) + 1,
            }
        )
        return queue.push(entry)

    def request_refined_prompt(
        self,
        queue: ExecutionQueue,
        checklist_id: str,
        task_id: str,
        result_remark_id: str,
    ) -> tuple[ExecutionQueue, Remark]:
        """Create a pending prompt-execution under a completed AI to-do.

        ``result_remark_id`` is the result remark the scheduler posted for the
        to-do; the new remark is nested under the to-do itself.
        """
        now = self.clock()
        created: list[Remark] = []

        def _updater(checklist: Checklist) -> None:
            task = _require_task(checklist, task_id)
            result = _require_remark(task, result_remark_id)
            todo = task.find_remark(result.parent_id) if result.parent_id else None
            if todo is None or todo.tag is None or todo.tag.family != AI_TODO:
                raise RemarkNotFoundError(
                    f"Remark {result_remark_id} is not the result of an AI to-do."
                )
            if todo.tag.state != "completed":
                raise ValueError(f"AI to-do {todo.id} has not completed.")
            match = REFINED_PROMPT_PATTERN.search(result.text)
            topic = match.group(1).strip() if match else todo.text
            child = Remark(
                id=new_id("rem"),
                text=f"Execute the refined prompt to {topic}",
                user_id=self.identity(),
                timestamp=now,
                parent_id=todo.id,
                tag=WorkflowTag(PROMPT_EXECUTION, "pending"),
                tag_updated_at=now,
            )
            task.remarks.append(child)
            created[:] = [child]

        self.update(checklist_id, _updater)
        child = created[0]
        self._emit(
            {
                "event": "prompt_execution_requested",
                "checklist_id": checklist_id,
                "task_id": task_id,
                "remark_id": child.id,
            }
        )
        return queue.push(QueueEntry(task_id, child.id)), child

    def recover_queue(self, queue: ExecutionQueue, checklist_id: str) -> ExecutionQueue:
        """Re-enqueue work a previous process left waiting, oldest first."""
        checklist = self.load(checklist_id)
        waiting: list[tuple[datetime, str, QueueEntry]] = []
        for task, remark in checklist.iter_remarks():
            if remark.tag is None:
                continue
            if (remark.tag.family, remark.tag.state) in {
                (AI_TODO, "queued"),
                (PROMPT_EXECUTION, "pending"),
            }:
                entry = QueueEntry(task.id, remark.id)
                waiting.append((remark.state_changed_at, remark.id, entry))
        for _changed_at, _remark_id, entry in sorted(waiting, key=lambda item: item[:2]):
            queue = queue.push(entry)
        return queue

    def export_markdown(self, checklist_id: str) -> str:
        return export_markdown(self.load(checklist_id))

    def import_markdown(
        self,
        text: str,
        *,
        into: str | None = None,
        replace: bool = False,
    ) -> Checklist:
        imported = import_markdown(text, now=self.clock())
        if into is not None:
            if not imported.tasks:
                raise MalformedImportError("No valid tasks found in the file.")

            def _append(checklist: Checklist) -> None:
                checklist.tasks.extend(imported.tasks)

            return self.update(into, _append)

        existing_id = self.store.find_by_name(imported.name)
        if existing_id is not None and not replace:
            raise StoreError(
                f"A checklist named '{imported.name}' already exists ({existing_id})."
            )
        if existing_id is not None:
            imported.id = existing_id
            _current, revision = self.store.load(existing_id)
            self.store.save(imported, expected_revision=revision)
            return imported
        imported.owner_id = self.identity()
        self.store.save(imported)
        return imported

    def status(self, checklist_id: str) -> dict[str, Any]:
        checklist = self.load(checklist_id)
        now = self.clock()
        states: Counter[str] = Counter()
        todos: list[dict[str, Any]] = []
        for task, remark in checklist.iter_remarks():
            if remark.tag is None:
                continue
            states[f"{remark.tag.family}|{remark.tag.state}"] += 1
            todos.append(
                {
                    "task_id": task.id,
                    "remark_id": remark.id,
                    "family": remark.tag.family,
                    "state": remark.tag.state,
                    "updated_at": format_timestamp(remark.state_changed_at),
                    "retry_eligible": is_retry_eligible(
                        remark.tag, remark.state_changed_at, now, self.workflow.retry_cooldown
                    ),
                    "retry_available_at": format_timestamp(
                        retry_available_at(
                            remark.tag, remark.state_changed_at, self.workflow.retry_cooldown
                        )
                    ),
                }
            )
        return {
            "id": checklist.id,
            "name": checklist.name,
            "tasks": len(checklist.tasks),
            "completed_tasks": sum(1 for task in checklist.tasks if task.is_complete),
            "workflow": dict(sorted(states.items())),
            "todos": todos,
        }
