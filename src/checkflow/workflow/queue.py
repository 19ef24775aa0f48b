from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class QueueEntry:
    task_id: str
    remark_id: str


@dataclass(frozen=True, slots=True)
class ExecutionQueue:
    """FIFO of to-dos awaiting execution. Never persisted.

    The value is immutable: ``push`` and ``pop`` return a new queue, so a
    caller that keeps the previous value still holds any entry whose
    processing did not go through.
    """

    entries: tuple[QueueEntry, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(self.entries)

    def __contains__(self, entry: object) -> bool:
        return entry in self.entries

    @property
    def head(self) -> QueueEntry | None:
        return self.entries[0] if self.entries else None

    def push(self, entry: QueueEntry) -> ExecutionQueue:
        if entry in self.entries:
            return self
        return ExecutionQueue(self.entries + (entry,))

    def pop(self) -> tuple[QueueEntry, ExecutionQueue]:
        if not self.entries:
            raise IndexError("pop from an empty execution queue")
        return self.entries[0], ExecutionQueue(self.entries[1:])
