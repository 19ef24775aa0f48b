"""Checklist <-> markdown transcription.

The markdown file is the checklist's human-editable backup and import format,
so the layout produced here is fixed: a ``# name`` title, ``## Incomplete
Tasks`` / ``## Completed Tasks`` sections, one checkbox line per task and one
quoted ``#YYYYMMDD`` line per remark, with workflow tags written verbatim.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, date, datetime

from checkflow.models import (
    PRIORITIES,
    UNASSIGNED,
    Checklist,
    Remark,
    Task,
    new_id,
    utcnow,
)
from checkflow.workflow.tags import decode_import

logger = logging.getLogger(__name__)

EMPTY_CHECKLIST_BODY = "This checklist has no tasks."
INCOMPLETE_HEADING = "## Incomplete Tasks"
COMPLETED_HEADING = "## Completed Tasks"
DEFAULT_REMARK_AUTHOR = "system"

TITLE_PATTERN = re.compile(r"^#\s+(.*)")
TASK_PATTERN = re.compile(r"^- \[( |x)\]\s+(.*)")
ASSIGNEE_PATTERN = re.compile(r"-\s*\*Assignee:\s*\[(.*?)\]\*")
DETAILS_PATTERN = re.compile(r"\(([^)]+)\)$")
REMARK_PATTERN = re.compile(r"^\s*(?:-\s*)?>\s*(.*)")
AUTHOR_PATTERN = re.compile(r"(.*)\s+\(by (.*)\)$", re.DOTALL)
DATE_MARKER_PATTERN = re.compile(r"^#(\d{8})\s*(.*)", re.DOTALL)
LINE_BREAK_PATTERN = re.compile(r"[ \t]*\r?\n\s*")

DUE_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d.%m.%Y", "%B %d %Y", "%b %d %Y")


class MalformedImportError(ValueError):
    """Raised when markdown text cannot be read as a checklist."""


def _format_task(task: Task) -> str:
    checkbox = "x" if task.is_complete else " "
    details = f"(Priority: {task.priority}, Due: {task.due_date.isoformat()})"
    assignee = f" - *Assignee: [{task.assignee or UNASSIGNED}]*"
    lines = [f"- [{checkbox}] **{task.description}** {details}{assignee}"]
    for remark in task.remarks:
        day = remark.timestamp.astimezone(UTC).strftime("%Y%m%d")
        # One quote line per remark; multi-line bodies are folded.
        text = LINE_BREAK_PATTERN.sub(" ", remark.wire_text)
        lines.append(f"  - > #{day} {text} (by {remark.user_id})")
    return "\n".join(lines)


def export_markdown(checklist: Checklist) -> str:
    incomplete = [task for task in checklist.tasks if not task.is_complete]
    completed = [task for task in checklist.tasks if task.is_complete]

    sections: list[str] = []
    if incomplete:
        sections.append(INCOMPLETE_HEADING + "\n\n" + "\n\n".join(map(_format_task, incomplete)))
    if completed:
        sections.append(COMPLETED_HEADING + "\n\n" + "\n\n".join(map(_format_task, completed)))
    body = "\n\n".join(sections) if sections else EMPTY_CHECKLIST_BODY
    return f"# {checklist.name}\n\n{body}\n"


def _parse_due_date(value: str) -> date | None:
    candidate = value.strip().replace(",", "")
    try:
        return date.fromisoformat(candidate)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(candidate.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in DUE_DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    return None


def _parse_task_line(
    checkbox: str,
    content: str,
    *,
    today: date,
    id_factory: Callable[[str], str],
) -> Task:
    description = content.strip()
    priority = "Medium"
    assignee: str | None = None
    due_date = today

    assignee_match = ASSIGNEE_PATTERN.search(description)
    if assignee_match:
        name = assignee_match.group(1).strip()
        assignee = None if not name or name == UNASSIGNED else name
        description = description[: assignee_match.start()].strip()

    details_match = DETAILS_PATTERN.search(description)
    if details_match:
        description = description[: details_match.start()].strip()
        for detail in details_match.group(1).split(","):
            key, _, value = detail.partition(":")
            key = key.strip().lower()
            value = value.strip()
            if key == "priority":
                normalized = value.capitalize()
                if normalized in PRIORITIES:
                    priority = normalized
            elif key == "due":
                parsed = _parse_due_date(value)
                if parsed is not None:
                    due_date = parsed

    description = description.replace("**", "").replace("*", "")
    return Task(
        id=id_factory("task"),
        description=description,
        status="complete" if checkbox == "x" else "pending",
        priority=priority,  # type: ignore[arg-type]
        assignee=assignee,
        due_date=due_date,
    )


def _parse_remark_line(
    content: str,
    *,
    now: datetime,
    id_factory: Callable[[str], str],
) -> Remark | None:
    text = content.strip()
    if not text:
        return None

    author = DEFAULT_REMARK_AUTHOR
    timestamp = now

    author_match = AUTHOR_PATTERN.match(text)
    if author_match:
        text = author_match.group(1).strip()
        author = author_match.group(2).strip()

    date_match = DATE_MARKER_PATTERN.match(text)
    if date_match:
        raw_day = date_match.group(1)
        text = date_match.group(2).strip()
        try:
            timestamp = datetime.strptime(raw_day, "%Y%m%d").replace(hour=12, tzinfo=UTC)
        except ValueError:
            logger.debug("Ignoring unparseable remark date marker #%s", raw_day)

    remark_id = id_factory("rem")
    decoded = decode_import(text)
    if decoded is None:
        return Remark(id=remark_id, text=text, user_id=author, timestamp=timestamp)
    return Remark(
        id=remark_id,
        text=decoded.payload,
        user_id=author,
        timestamp=timestamp,
        tag=decoded.tag,
        tag_updated_at=timestamp,
    )


def import_markdown(
    text: str,
    *,
    now: datetime | None = None,
    id_factory: Callable[[str], str] | None = None,
    checklist_id: str | None = None,
) -> Checklist:
    """Parse exported markdown back into a new, unsaved checklist.

    Raises ``MalformedImportError`` when the first line is not a ``# name``
    title; nothing is returned in that case.
    """
    reference_time = now or utcnow()
    make_id = id_factory or new_id
    lines = text.splitlines()
    title_match = TITLE_PATTERN.match(lines[0]) if lines else None
    if title_match is None or not title_match.group(1).strip():
        raise MalformedImportError(
            "Invalid format: checklist must start with a '# Checklist Name' title."
        )

    tasks: list[Task] = []
    current: Task | None = None
    dropped = 0
    for line in lines[1:]:
        task_match = TASK_PATTERN.match(line)
        if task_match:
            current = _parse_task_line(
                task_match.group(1),
                task_match.group(2),
                today=reference_time.date(),
                id_factory=make_id,
            )
            tasks.append(current)
            continue

        remark_match = REMARK_PATTERN.match(line)
        if remark_match is None:
            continue
        if current is None:
            dropped += 1
            continue
        remark = _parse_remark_line(remark_match.group(1), now=reference_time, id_factory=make_id)
        if remark is not None:
            current.remarks.append(remark)

    if dropped:
        logger.info("Dropped %d remark line(s) that appeared before any task.", dropped)
    return Checklist(
        id=checklist_id or make_id("cl"),
        name=title_match.group(1).strip(),
        tasks=tasks,
    )
