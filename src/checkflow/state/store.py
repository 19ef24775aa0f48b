from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from checkflow.models import Checklist

logger = logging.getLogger(__name__)

CHECKLIST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
MAX_EVENTS = 200


class StoreError(RuntimeError):
    """Raised when reading or writing the checklist store fails."""


class ConcurrentUpdateError(StoreError):
    """Raised when a save was based on an outdated revision."""


class ChecklistStore:
    """Revisioned key-value storage of checklist documents.

    Each checklist lives in ``<root>/checklists/<id>.json`` inside an envelope
    carrying ``schema_version``, ``revision`` and ``updated_at``. Saves check the
    revision they were based on so a stale read-modify-write is rejected.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.checklist_dir = self.root / "checklists"
        self.checklist_dir.mkdir(parents=True, exist_ok=True)
        self.events_file = self.root / "events.json"
        self.lock_file = self.root / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _checklist_file(self, checklist_id: str) -> Path:
        if not CHECKLIST_ID_PATTERN.match(checklist_id):
            raise StoreError(f"Invalid checklist id: {checklist_id!r}")
        return self.checklist_dir / f"{checklist_id}.json"

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StoreError("Timed out waiting for store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt store file {path.name}: {exc}") from exc
        except OSError as exc:
            raise StoreError(f"Cannot read {path.name}: {exc}") from exc

    def _write_raw(self, path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(serialized + "\n", encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreError(f"Cannot write {path.name}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload["data"],
            }
        # Bare checklist payloads predate the envelope.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": self._utcnow_iso(),
            "data": raw_payload,
        }

    def get_envelope(self, checklist_id: str) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw(self._checklist_file(checklist_id)))

    def exists(self, checklist_id: str) -> bool:
        return self._checklist_file(checklist_id).exists()

    def load(self, checklist_id: str) -> tuple[Checklist, int]:
        """Return the checklist and the revision it was read at."""
        envelope = self.get_envelope(checklist_id)
        data = envelope["data"]
        if not isinstance(data, dict):
            raise StoreError(f"Checklist not found: {checklist_id}")
        try:
            checklist = Checklist.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Checklist {checklist_id} is unreadable: {exc}") from exc
        return checklist, int(envelope["revision"])

    def save(self, checklist: Checklist, expected_revision: int | None = None) -> int:
        path = self._checklist_file(checklist.id)
        with self._lock():
            current = self._normalize_envelope(self._read_raw(path))
            current_revision = int(current["revision"])
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentUpdateError(
                    f"Concurrent update detected for checklist '{checklist.id}'."
                )
            revision = current_revision + 1
            self._write_raw(
                path,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": revision,
                    "updated_at": self._utcnow_iso(),
                    "data": checklist.to_dict(),
                },
            )
        return revision

    def update(
        self,
        checklist_id: str,
        updater: Callable[[Checklist], Any],
        attempts: int = 4,
    ) -> Checklist:
        """Apply ``updater`` to the latest checklist and save it.

        Retries when another writer got in first; ``updater`` mutates the
        checklist in place and must be safe to call more than once.
        """
        last_error: StoreError | None = None
        for _ in range(attempts):
            checklist, revision = self.load(checklist_id)
            updater(checklist)
            try:
                self.save(checklist, expected_revision=revision)
                return checklist
            except ConcurrentUpdateError as exc:
                last_error = exc
                time.sleep(0.01)
        raise StoreError(str(last_error) if last_error else "Checklist update failed.")

    def delete(self, checklist_id: str) -> None:
        with self._lock():
            try:
                self._checklist_file(checklist_id).unlink()
            except FileNotFoundError as exc:
                raise StoreError(f"Checklist not found: {checklist_id}") from exc

    def list_checklists(self) -> list[dict[str, Any]]:
        summaries: list[dict[str, Any]] = []
        for path in sorted(self.checklist_dir.glob("*.json")):
            envelope = self._normalize_envelope(self._read_raw(path))
            data = envelope["data"]
            if not isinstance(data, dict):
                continue
            summaries.append(
                {
                    "id": data.get("id", path.stem),
                    "name": data.get("name", ""),
                    "tasks": len(data.get("tasks", [])),
                    "revision": envelope["revision"],
                    "updated_at": envelope["updated_at"],
                }
            )
        return summaries

    def find_by_name(self, name: str) -> str | None:
        for summary in self.list_checklists():
            if summary["name"] == name:
                return str(summary["id"])
        return None

    def record_event(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("at", self._utcnow_iso())
        with self._lock():
            events = self._read_raw(self.events_file)
            if not isinstance(events, list):
                events = []
            events.append(payload)
            self._write_raw(self.events_file, events[-MAX_EVENTS:])

    def get_events(self) -> list[dict[str, Any]]:
        events = self._read_raw(self.events_file)
        return events if isinstance(events, list) else []
