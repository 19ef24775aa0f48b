from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Literal
from uuid import uuid4

from checkflow.workflow.tags import WorkflowTag, decode_tag, encode_tag

TaskStatus = Literal["pending", "in-progress", "complete"]
TaskPriority = Literal["High", "Medium", "Low"]

STATUSES: tuple[str, ...] = ("pending", "in-progress", "complete")
PRIORITIES: tuple[str, ...] = ("High", "Medium", "Low")
UNASSIGNED = "Unassigned"


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class Remark:
    id: str
    text: str
    user_id: str
    timestamp: datetime
    parent_id: str | None = None
    tag: WorkflowTag | None = None
    tag_updated_at: datetime | None = None

    @classmethod
    def from_wire(
        cls,
        wire_text: str,
        *,
        user_id: str,
        timestamp: datetime,
        remark_id: str | None = None,
        parent_id: str | None = None,
    ) -> Remark:
        decoded = decode_tag(wire_text)
        if decoded is None:
            return cls(
                id=remark_id or new_id("rem"),
                text=wire_text,
                user_id=user_id,
                timestamp=timestamp,
                parent_id=parent_id,
            )
        return cls(
            id=remark_id or new_id("rem"),
            text=decoded.payload,
            user_id=user_id,
            timestamp=timestamp,
            parent_id=parent_id,
            tag=decoded.tag,
            tag_updated_at=timestamp,
        )

    @property
    def wire_text(self) -> str:
        if self.tag is None:
            return self.text
        return encode_tag(self.tag.family, self.tag.state, self.text)

    @property
    def state_changed_at(self) -> datetime:
        return self.tag_updated_at or self.timestamp

    def set_state(self, state: str, at: datetime) -> None:
        if self.tag is None:
            raise ValueError(f"Remark {self.id} carries no workflow tag.")
        self.tag = self.tag.with_state(state)
        self.tag_updated_at = at

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "text": self.wire_text,
            "user_id": self.user_id,
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.parent_id:
            payload["parent_id"] = self.parent_id
        if self.tag is not None and self.tag_updated_at is not None:
            payload["tag_updated_at"] = format_timestamp(self.tag_updated_at)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Remark:
        remark = cls.from_wire(
            str(payload.get("text", "")),
            user_id=str(payload.get("user_id") or "system"),
            timestamp=parse_timestamp(str(payload["timestamp"])),
            remark_id=str(payload["id"]),
            parent_id=payload.get("parent_id") or None,
        )
        tag_updated_at = payload.get("tag_updated_at")
        if remark.tag is not None and isinstance(tag_updated_at, str):
            remark.tag_updated_at = parse_timestamp(tag_updated_at)
        return remark


@dataclass(slots=True)
class Task:
    id: str
    description: str
    status: TaskStatus = "pending"
    priority: TaskPriority = "Medium"
    assignee: str | None = None
    due_date: date = field(default_factory=lambda: utcnow().date())
    remarks: list[Remark] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    def find_remark(self, remark_id: str) -> Remark | None:
        for remark in self.remarks:
            if remark.id == remark_id:
                return remark
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "assignee": self.assignee,
            "due_date": self.due_date.isoformat(),
            "remarks": [remark.to_dict() for remark in self.remarks],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        status = str(payload.get("status", "pending"))
        priority = str(payload.get("priority", "Medium"))
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description", "")),
            status=status if status in STATUSES else "pending",  # type: ignore[arg-type]
            priority=priority if priority in PRIORITIES else "Medium",  # type: ignore[arg-type]
            assignee=payload.get("assignee") or None,
            due_date=date.fromisoformat(str(payload["due_date"])),
            remarks=[Remark.from_dict(item) for item in payload.get("remarks", [])],
        )


@dataclass(slots=True)
class Checklist:
    id: str
    name: str
    tasks: list[Task] = field(default_factory=list)
    owner_id: str | None = None
    collaborator_ids: list[str] = field(default_factory=list)
    document_ids: list[str] = field(default_factory=list)

    def find_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def iter_remarks(self):
        for task in self.tasks:
            for remark in task.remarks:
                yield task, remark

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "collaborator_ids": list(self.collaborator_ids),
            "document_ids": list(self.document_ids),
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checklist:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            tasks=[Task.from_dict(item) for item in payload.get("tasks", [])],
            owner_id=payload.get("owner_id"),
            collaborator_ids=list(payload.get("collaborator_ids", [])),
            document_ids=list(payload.get("document_ids", [])),
        )
