from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from checkflow.backends.base import AgentBackend, ExecutionError, ExecutionTimeoutError

BackendEventHook = Callable[[dict[str, Any]], None]

MAX_REPORTED_FAILURES = 6


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def delay_before(self, attempt: int) -> float:
        """Backoff before ``attempt``; the first attempt starts at once."""
        if attempt == 0:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(frozen=True, slots=True)
class AttemptFailure:
    backend: str
    attempt: int
    error: ExecutionError

    def __str__(self) -> str:
        return f"{self.backend}#{self.attempt + 1} {self.error.describe()}"


class ResilientBackend(AgentBackend):
    """Runs a to-do on the primary agent, then on the fallback.

    Each agent gets ``retry_policy.attempts`` tries with exponential backoff
    and a per-try timeout. A non-retriable error moves straight on to the
    next agent. The answer is buffered, so a half-streamed failure never
    leaks partial text to the caller.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.chain: list[tuple[str, AgentBackend]] = [(primary_name, primary_backend)]
        if fallback_name != primary_name:
            self.chain.append((fallback_name, fallback_backend))
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    async def _attempt(self, backend: AgentBackend, system_prompt: str, user_prompt: str) -> str:
        timeout = self.retry_policy.timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                return await backend.collect(system_prompt, user_prompt)
        except TimeoutError as exc:
            raise ExecutionTimeoutError(timeout, backend=backend.name) from exc

    async def _run_on(
        self,
        name: str,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        failures: list[AttemptFailure],
    ) -> str | None:
        for attempt in range(self.retry_policy.attempts):
            delay = self.retry_policy.delay_before(attempt)
            if attempt:
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                return await self._attempt(backend, system_prompt, user_prompt)
            except ExecutionError as exc:
                failures.append(AttemptFailure(name, attempt, exc))
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    return None
        return None

    async def execute(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        failures: list[AttemptFailure] = []
        for position, (name, backend) in enumerate(self.chain):
            answer = await self._run_on(name, backend, system_prompt, user_prompt, failures)
            if answer is None:
                continue
            if position > 0:
                self._emit({"event": "backend_fallback_success", "backend": name})
            yield answer
            return
        summary = "; ".join(str(failure) for failure in failures[-MAX_REPORTED_FAILURES:])
        raise ExecutionError(f"All agent backends failed. {summary}", retriable=False)
