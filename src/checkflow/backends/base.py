from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator


class ExecutionError(RuntimeError):
    """An AI to-do could not be carried out by an agent.

    ``retriable`` tells the failover layer whether trying the same agent
    again can help; a missing binary or an empty answer cannot.
    """

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable

    def describe(self) -> str:
        source = self.backend or "agent"
        if self.exit_code is not None:
            source += f" (exit {self.exit_code})"
        return f"{source}: {self}"


class ExecutionTimeoutError(ExecutionError):
    def __init__(self, timeout_seconds: float, *, backend: str | None = None) -> None:
        super().__init__(
            f"Agent request timed out after {timeout_seconds:.1f}s",
            backend=backend,
            retriable=True,
        )
        self.timeout_seconds = timeout_seconds


class ExecutionProcessError(ExecutionError):
    """The agent process could not be started or read."""


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    def execute(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        """Run one prompt and stream textual chunks of the answer."""

    async def collect(self, system_prompt: str, user_prompt: str) -> str:
        """Run one prompt and return the whole answer, stripped."""
        parts = [chunk async for chunk in self.execute(system_prompt, user_prompt)]
        return "".join(parts).strip()
