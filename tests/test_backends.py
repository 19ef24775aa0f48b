import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from checkflow.backends import (
    AgentBackend,
    CommandBackend,
    ExecutionError,
    ExecutionProcessError,
    ResilientBackend,
    RetryPolicy,
)
from checkflow.executor import (
    ContextDocument,
    ExecutionRequest,
    TodoExecutor,
    load_context_documents,
)


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.calls = 0
        self.retriable = retriable

    async def execute(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        self.calls += 1
        raise ExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    def __init__(self, chunks: list[str] | None = None) -> None:
        self.chunks = chunks if chunks is not None else ["ok"]
        self.prompts: list[tuple[str, str]] = []

    async def execute(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        self.prompts.append((system_prompt, user_prompt))
        for chunk in self.chunks:
            yield chunk


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self._payload = payload

    async def read(self) -> bytes:
        return self._payload


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self._return_code = return_code

    async def wait(self) -> int:
        return self._return_code


def _collect(backend: AgentBackend) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user"):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def test_command_presets_shape() -> None:
    claude = CommandBackend("claude", working_directory=Path("."))
    codex = CommandBackend("codex", binary="/opt/bin/codex")

    claude_command = claude.build_command("system", "summarise")
    codex_command = codex.build_command("", "summarise")

    assert claude_command[0:2] == ["claude", "-p"]
    assert "stream-json" in claude_command
    assert claude_command[2] == "system\n\nsummarise"
    assert codex_command == ["/opt/bin/codex", "exec", "--json", "summarise"]


def test_unknown_backend_without_args_is_rejected() -> None:
    with pytest.raises(ValueError):
        CommandBackend("gemini")


def test_command_backend_streams_json_content(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        return FakeProcess(
            [
                b"{\"type\":\"assistant\",\"message\":{\"content\":[{\"type\":\"text\",\"text\":\"hel\"}]}}\n",
                b"{\"type\":\"delta\",\n",
                b"\"delta\":\"lo\"}\n",
                b"\n",
                b"{\"type\":\"result\",\"result\":\"hello\"}\n",
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = CommandBackend("claude", event_hook=events.append)

    assert _collect(backend) == "hello"
    assert captured["args"][0] == "claude"
    assert [event["event"] for event in events] == ["backend_process_start", "backend_process_exit"]


def test_command_backend_passes_through_plain_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        return FakeProcess([b"plain answer\n", b"{\"item\":{\"text\":\" done\"}}\n"])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    assert _collect(CommandBackend("codex")) == "plain answer done"


def test_command_backend_nonzero_exit_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        return FakeProcess([], return_code=2, stderr=b"not logged in")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(ExecutionError) as excinfo:
        _collect(CommandBackend("codex"))
    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable is True
    assert "not logged in" in str(excinfo.value)


def test_command_backend_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(ExecutionProcessError) as excinfo:
        _collect(CommandBackend("claude", binary="missing-claude"))
    assert excinfo.value.retriable is False


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    assert _collect(backend) == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert event_names[-1] == "backend_fallback_success"


def test_resilient_backend_skips_retries_for_fatal_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    fallback = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(ExecutionError) as excinfo:
        _collect(backend)
    assert "All agent backends failed" in str(excinfo.value)
    assert "primary#1 fake: boom" in str(excinfo.value)
    assert excinfo.value.retriable is False
    assert (primary.calls, fallback.calls) == (1, 1)


class SlowBackend(AgentBackend):
    name = "slow"

    def __init__(self) -> None:
        self.calls = 0

    async def execute(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        self.calls += 1
        await asyncio.sleep(5)
        yield "too late"


def test_resilient_backend_times_out_slow_agent_and_falls_back() -> None:
    events: list[dict[str, Any]] = []
    slow = SlowBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=slow,
        fallback_name="fallback",
        fallback_backend=SuccessBackend([" rescued \n"]),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=0.01),
        event_hook=events.append,
    )

    assert _collect(backend) == "rescued"
    assert slow.calls == 2
    failures = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert [event["attempt"] for event in failures] == [0, 1]
    assert all("timed out after" in event["error"] for event in failures)
    assert all(event["retriable"] for event in failures)


def test_same_primary_and_fallback_runs_once() -> None:
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=primary,
        fallback_name="claude",
        fallback_backend=primary,
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(ExecutionError):
        _collect(backend)
    assert primary.calls == 3


def test_retry_policy_backoff_doubles() -> None:
    policy = RetryPolicy(max_retries=3, backoff_seconds=0.5)

    assert policy.attempts == 4
    assert [policy.delay_before(attempt) for attempt in range(4)] == [0.0, 0.5, 1.0, 2.0]


def test_collect_joins_and_strips_chunks() -> None:
    backend = SuccessBackend(["\n  first", " second  \n"])

    assert asyncio.run(backend.collect("system", "user")) == "first second"


def test_execution_error_describe_names_source() -> None:
    assert ExecutionError("bad", backend="codex", exit_code=2).describe() == "codex (exit 2): bad"
    assert ExecutionError("bad").describe() == "agent: bad"


def test_todo_executor_renders_context_and_rejects_empty_output() -> None:
    backend = SuccessBackend(["  Summary ready.  "])
    executor = TodoExecutor(backend)
    request = ExecutionRequest(
        instruction="summarise feedback",
        task_description="Collect survey results",
        discussion_history=["[ai-todo|running] summarise feedback", "use the CSV"],
        context_documents=[ContextDocument("survey.csv", "score\n5\n")],
    )

    assert asyncio.run(executor.run(request)) == "Summary ready."
    (system_prompt, user_prompt) = backend.prompts[0]
    assert system_prompt == TodoExecutor.system_prompt
    assert "--- Document: survey.csv ---" in user_prompt
    assert "Parent task: Collect survey results" in user_prompt
    assert "use the CSV" in user_prompt
    assert user_prompt.endswith("Execute this to-do now:\nsummarise feedback")

    with pytest.raises(ExecutionError):
        asyncio.run(TodoExecutor(SuccessBackend(["   "])).run(request))


def test_load_context_documents_skips_unreadable_files(tmp_path: Path) -> None:
    (tmp_path / "brief.md").write_text("# Brief\n", encoding="utf-8")

    documents = load_context_documents(["brief.md", "missing.md"], tmp_path)

    assert documents == [ContextDocument("brief.md", "# Brief\n")]
