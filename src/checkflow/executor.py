from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from checkflow.backends.base import AgentBackend, ExecutionError

logger = logging.getLogger(__name__)

DISCUSSION_SEPARATOR = "\n---\n"


@dataclass(frozen=True, slots=True)
class ContextDocument:
    file_name: str
    content: str


@dataclass(slots=True)
class ExecutionRequest:
    instruction: str
    task_description: str
    discussion_history: list[str] = field(default_factory=list)
    context_documents: list[ContextDocument] = field(default_factory=list)


ExecuteFn = Callable[[ExecutionRequest], Awaitable[str]]


def load_context_documents(paths: list[str], base_dir: Path) -> list[ContextDocument]:
    documents: list[ContextDocument] = []
    for raw_path in paths:
        path = Path(raw_path)
        if not path.is_absolute():
            path = base_dir / path
        try:
            documents.append(ContextDocument(path.name, path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Skipping context document %s: %s", path, exc)
    return documents


class TodoExecutor:
    """Turns an AI to-do into a single agent prompt and returns its answer."""

    system_prompt = """
You are an assistant working inside a shared project checklist.
Carry out the requested to-do using the task context and discussion provided.
Answer in Markdown and finish with a one-sentence summary of what you did.
""".strip()

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend

    def render_prompt(self, request: ExecutionRequest) -> str:
        parts: list[str] = []
        for document in request.context_documents:
            parts.append(
                f"--- Document: {document.file_name} ---\n{document.content}\n"
                f"--- End Document: {document.file_name} ---"
            )
        parts.append(f"Parent task: {request.task_description}")
        if request.discussion_history:
            parts.append(
                "Discussion history:\n" + DISCUSSION_SEPARATOR.join(request.discussion_history)
            )
        parts.append(f"Execute this to-do now:\n{request.instruction}")
        return "\n\n".join(parts)

    async def run(self, request: ExecutionRequest) -> str:
        content = await self.backend.collect(self.system_prompt, self.render_prompt(request))
        if not content:
            raise ExecutionError("Agent returned an empty result.", retriable=False)
        return content
