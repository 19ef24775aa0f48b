import asyncio
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from checkflow.engine import ChecklistEngine
from checkflow.executor import ContextDocument, ExecutionRequest
from checkflow.models import Remark
from checkflow.scheduler import Scheduler
from checkflow.state import ChecklistStore, StoreError
from checkflow.workflow.machine import STALE_RESET_MESSAGE
from checkflow.workflow.queue import ExecutionQueue, QueueEntry

T0 = datetime(2024, 7, 1, 14, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _setup(tmp_path: Path, events: list[dict[str, Any]] | None = None):
    clock = FakeClock(T0)
    engine = ChecklistEngine(
        ChecklistStore(tmp_path / "store"),
        identity=lambda: "alice",
        clock=clock,
        event_hook=events.append if events is not None else None,
    )
    checklist = engine.create_checklist("Ops")
    task = engine.add_task(checklist.id, "Quarterly review")
    return engine, clock, checklist.id, task.id


def _remark(engine: ChecklistEngine, checklist_id: str, task_id: str, remark_id: str) -> Remark:
    remark = engine.store.load(checklist_id)[0].find_task(task_id).find_remark(remark_id)
    assert remark is not None
    return remark


def test_single_flight_runs_todos_in_order(tmp_path: Path) -> None:
    engine, _clock, checklist_id, task_id = _setup(tmp_path)
    first = engine.add_remark(checklist_id, task_id, "collect metrics", ai_todo=True)
    second = engine.add_remark(checklist_id, task_id, "write summary", ai_todo=True)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, first.id)
    queue = engine.enqueue_todo(queue, checklist_id, task_id, second.id)
    seen: list[tuple[str, str, str]] = []

    async def execute(request: ExecutionRequest) -> str:
        states = {
            remark.id: remark.tag.state
            for _task, remark in engine.store.load(checklist_id)[0].iter_remarks()
            if remark.tag is not None
        }
        seen.append((request.instruction, states[first.id], states[second.id]))
        return f"did {request.instruction}"

    scheduler = Scheduler(engine, checklist_id, execute)
    remaining, outcomes = asyncio.run(scheduler.drain(queue))

    assert not remaining
    assert [outcome.status for outcome in outcomes] == ["completed", "completed"]
    assert seen == [
        ("collect metrics", "running", "queued"),
        ("write summary", "completed", "running"),
    ]
    result = _remark(engine, checklist_id, task_id, outcomes[0].result_remark_id)
    assert result.parent_id == first.id
    assert result.user_id == "ai_executor"
    assert result.text == "AI execution complete. **Summary:** did collect metrics"
    assert _remark(engine, checklist_id, task_id, first.id).tag.state == "completed"


def test_step_waits_while_something_is_running(tmp_path: Path) -> None:
    engine, clock, checklist_id, task_id = _setup(tmp_path)
    busy = engine.add_remark(checklist_id, task_id, "already going", ai_todo=True)
    waiting = engine.add_remark(checklist_id, task_id, "next", ai_todo=True)
    engine.update(
        checklist_id,
        lambda cl: cl.find_task(task_id).find_remark(busy.id).set_state("running", clock()),
    )
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, waiting.id)
    calls: list[ExecutionRequest] = []

    async def execute(request: ExecutionRequest) -> str:
        calls.append(request)
        return "never"

    remaining, outcome = asyncio.run(Scheduler(engine, checklist_id, execute).step(queue))

    assert outcome.status == "busy"
    assert remaining == queue
    assert calls == []


def test_claim_rechecks_for_work_started_by_another_process(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine, clock, checklist_id, task_id = _setup(tmp_path)
    other = engine.add_remark(checklist_id, task_id, "started elsewhere", ai_todo=True)
    mine = engine.add_remark(checklist_id, task_id, "run here", ai_todo=True)
    engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, other.id)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, mine.id)
    original_update = engine.update
    interleaved: list[bool] = []

    def update_after_other_writer(checklist_id_arg: str, updater: Any):
        if not interleaved:
            interleaved.append(True)
            original_update(
                checklist_id_arg,
                lambda cl: cl.find_task(task_id).find_remark(other.id).set_state("running", clock()),
            )
        return original_update(checklist_id_arg, updater)

    monkeypatch.setattr(engine, "update", update_after_other_writer)
    calls: list[ExecutionRequest] = []

    async def execute(request: ExecutionRequest) -> str:
        calls.append(request)
        return "should not run"

    remaining, outcome = asyncio.run(Scheduler(engine, checklist_id, execute).step(queue))

    assert interleaved == [True]
    assert outcome.status == "busy"
    assert remaining == queue
    assert QueueEntry(task_id, mine.id) in remaining
    assert calls == []
    assert _remark(engine, checklist_id, task_id, other.id).tag.state == "running"
    assert _remark(engine, checklist_id, task_id, mine.id).tag.state == "queued"


def test_failure_is_recorded_as_system_remark(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    engine, _clock, checklist_id, task_id = _setup(tmp_path, events)
    todo = engine.add_remark(checklist_id, task_id, "call the vendor", ai_todo=True)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, todo.id)

    async def execute(request: ExecutionRequest) -> str:
        raise RuntimeError("backend down")

    remaining, outcome = asyncio.run(Scheduler(engine, checklist_id, execute).step(queue))

    assert not remaining
    assert outcome.status == "failed"
    assert outcome.error == "backend down"
    assert _remark(engine, checklist_id, task_id, todo.id).tag.state == "failed"
    failure = _remark(engine, checklist_id, task_id, outcome.result_remark_id)
    assert failure.text == "AI execution failed. Error: backend down"
    assert failure.user_id == "system"
    assert failure.parent_id == todo.id
    assert events[-1]["event"] == "todo_failed"
    assert events[-1]["checklist_id"] == checklist_id


def test_failure_without_message_gets_generic_text(tmp_path: Path) -> None:
    engine, _clock, checklist_id, task_id = _setup(tmp_path)
    todo = engine.add_remark(checklist_id, task_id, "call the vendor", ai_todo=True)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, todo.id)

    async def execute(request: ExecutionRequest) -> str:
        raise RuntimeError()

    _remaining, outcome = asyncio.run(Scheduler(engine, checklist_id, execute).step(queue))

    failure = _remark(engine, checklist_id, task_id, outcome.result_remark_id)
    assert failure.text == "AI execution failed. Error: An unknown error occurred."


def test_failed_running_write_keeps_entry_queued(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine, _clock, checklist_id, task_id = _setup(tmp_path)
    todo = engine.add_remark(checklist_id, task_id, "call the vendor", ai_todo=True)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, todo.id)
    calls: list[ExecutionRequest] = []

    async def execute(request: ExecutionRequest) -> str:
        calls.append(request)
        return "ok"

    def failing_save(*args: Any, **kwargs: Any) -> int:
        raise StoreError("disk full")

    monkeypatch.setattr(engine.store, "save", failing_save)
    scheduler = Scheduler(engine, checklist_id, execute)

    with pytest.raises(StoreError):
        asyncio.run(scheduler.step(queue))

    monkeypatch.undo()
    assert calls == []
    assert QueueEntry(task_id, todo.id) in queue
    assert _remark(engine, checklist_id, task_id, todo.id).tag.state == "queued"

    remaining, outcome = asyncio.run(scheduler.step(queue))
    assert outcome.status == "completed"
    assert not remaining


def test_entry_for_deleted_remark_is_dropped(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    engine, _clock, checklist_id, task_id = _setup(tmp_path, events)
    todo = engine.add_remark(checklist_id, task_id, "call the vendor", ai_todo=True)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, todo.id)
    engine.delete_remark(checklist_id, task_id, todo.id)

    async def execute(request: ExecutionRequest) -> str:
        raise AssertionError("should not run")

    remaining, outcome = asyncio.run(Scheduler(engine, checklist_id, execute).step(queue))

    assert outcome.status == "dropped"
    assert not remaining
    assert events[-1]["event"] == "queue_entry_dropped"


def test_late_result_still_completes_swept_todo(tmp_path: Path) -> None:
    engine, clock, checklist_id, task_id = _setup(tmp_path)
    todo = engine.add_remark(checklist_id, task_id, "long analysis", ai_todo=True)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, todo.id)

    async def execute(request: ExecutionRequest) -> str:
        clock.now = T0 + timedelta(minutes=45)
        engine.load(checklist_id)
        return "finally done"

    _remaining, outcome = asyncio.run(Scheduler(engine, checklist_id, execute).step(queue))

    assert outcome.status == "completed"
    assert outcome.late is True
    remarks = engine.store.load(checklist_id)[0].find_task(task_id).remarks
    assert _remark(engine, checklist_id, task_id, todo.id).tag.state == "completed"
    assert [remark.text for remark in remarks if remark.user_id == "system"] == [
        STALE_RESET_MESSAGE
    ]
    assert remarks[-1].text == "AI execution complete. **Summary:** finally done"


def test_request_carries_thread_and_documents(tmp_path: Path) -> None:
    engine, _clock, checklist_id, task_id = _setup(tmp_path)
    note = engine.add_remark(checklist_id, task_id, "numbers are in the sheet")
    todo = engine.add_remark(checklist_id, task_id, "chart the numbers", ai_todo=True, parent_id=note.id)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, todo.id)
    captured: list[ExecutionRequest] = []

    async def execute(request: ExecutionRequest) -> str:
        captured.append(request)
        return "chart attached"

    documents = [ContextDocument("sheet.csv", "q1,10\nq2,12\n")]
    scheduler = Scheduler(engine, checklist_id, execute, context_documents=lambda: documents)
    asyncio.run(scheduler.step(queue))

    (request,) = captured
    assert request.instruction == "chart the numbers"
    assert request.task_description == "Quarterly review"
    assert request.discussion_history == [
        "numbers are in the sheet",
        "[ai-todo|running] chart the numbers",
    ]
    assert request.context_documents == documents


def test_prompt_execution_runs_from_pending(tmp_path: Path) -> None:
    engine, _clock, checklist_id, task_id = _setup(tmp_path)
    todo = engine.add_remark(checklist_id, task_id, "draft prompt", ai_todo=True)
    engine.update(
        checklist_id,
        lambda cl: cl.find_task(task_id).find_remark(todo.id).set_state("completed", T0),
    )
    result = engine.add_remark(
        checklist_id,
        task_id,
        "AI execution complete. **Summary:** Generated a refined prompt for: the launch email",
        parent_id=todo.id,
    )
    queue, child = engine.request_refined_prompt(ExecutionQueue(), checklist_id, task_id, result.id)

    async def execute(request: ExecutionRequest) -> str:
        return "email sent"

    remaining, outcome = asyncio.run(Scheduler(engine, checklist_id, execute).step(queue))

    assert outcome.status == "completed"
    assert not remaining
    stored = _remark(engine, checklist_id, task_id, child.id)
    assert stored.wire_text == "[prompt-execution|completed] Execute the refined prompt to the launch email"


def test_store_access_runs_off_the_event_loop_thread(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine, _clock, checklist_id, task_id = _setup(tmp_path)
    todo = engine.add_remark(checklist_id, task_id, "tidy the backlog", ai_todo=True)
    queue = engine.enqueue_todo(ExecutionQueue(), checklist_id, task_id, todo.id)
    original_update = engine.store.update
    writer_threads: list[int] = []

    def recording_update(*args: Any, **kwargs: Any):
        writer_threads.append(threading.get_ident())
        return original_update(*args, **kwargs)

    monkeypatch.setattr(engine.store, "update", recording_update)
    loop_threads: list[int] = []

    async def execute(request: ExecutionRequest) -> str:
        loop_threads.append(threading.get_ident())
        return "done"

    _remaining, outcome = asyncio.run(Scheduler(engine, checklist_id, execute).step(queue))

    assert outcome.status == "completed"
    assert len(writer_threads) == 2
    assert loop_threads[0] not in writer_threads
