from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from checkflow.models import Remark


@dataclass(frozen=True, slots=True)
class FlatRemark:
    remark: Remark
    depth: int


def _sort_key(remark: Remark) -> tuple:
    return (remark.timestamp, remark.id)


def flatten_remarks(remarks: Iterable[Remark]) -> list[FlatRemark]:
    """Linearise a task's remark forest for display.

    Roots (no parent, or a parent id that does not resolve within the task)
    come first in timestamp order; every remark is followed by its whole
    subtree, siblings in timestamp order. Equal timestamps fall back to the
    remark id, so the stored list order never matters.
    """
    by_id: dict[str, Remark] = {}
    for remark in remarks:
        by_id[remark.id] = remark

    children: dict[str | None, list[Remark]] = {}
    for remark in by_id.values():
        parent_id = remark.parent_id if remark.parent_id in by_id else None
        if parent_id == remark.id:
            parent_id = None
        children.setdefault(parent_id, []).append(remark)
    for siblings in children.values():
        siblings.sort(key=_sort_key)

    flattened: list[FlatRemark] = []
    visited: set[str] = set()

    def _walk(root: Remark) -> None:
        stack: list[tuple[Remark, int]] = [(root, 0)]
        while stack:
            remark, depth = stack.pop()
            if remark.id in visited:
                continue
            visited.add(remark.id)
            flattened.append(FlatRemark(remark, depth))
            for child in reversed(children.get(remark.id, [])):
                stack.append((child, depth + 1))

    for root in children.get(None, []):
        _walk(root)

    # Parent cycles leave remarks unreachable from any root; surface them as roots.
    orphans = sorted(
        (remark for remark in by_id.values() if remark.id not in visited),
        key=_sort_key,
    )
    for remark in orphans:
        if remark.id not in visited:
            _walk(remark)
    return flattened


def discussion_history(remarks: Iterable[Remark]) -> list[str]:
    return [item.remark.wire_text for item in flatten_remarks(remarks)]
