from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import MissingTaskIdentifier, NotFound
from .history import HistoryLog
from .locks import KeyedLock
from .models import HistoryEntry, TaskRecord
from .payloads import TASK_ID_FIELDS, extract_task_id, normalize_task_fields
from .storage import DocumentBackend, DualStore
from .utils import now as _now

logger = logging.getLogger(__name__)

COLLECTION = "tasks"

# Fields owned by this system; external data never writes them.
_PROTECTED_FIELDS = {"job_id", "internal_metadata", "created_at", "updated_at"}


def _shell(task_id: str, ts: float) -> Dict[str, Any]:
    return {"job_id": task_id, "created_at": ts, "updated_at": ts, "cod_amount": None, "cod_collected": False}


def overlay(existing: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Field-wise last-known-value-wins merge. Absent values never erase."""
    merged = dict(existing)
    for key, value in fields.items():
        if key in _PROTECTED_FIELDS or value is None or value == "":
            continue
        if key == "template_fields" and isinstance(value, dict):
            merged[key] = {**(existing.get(key) or {}), **value}
        else:
            merged[key] = value
    return merged


def _cod_state(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {"cod_amount": doc.get("cod_amount"), "cod_collected": bool(doc.get("cod_collected"))}


class TaskStore:
    def __init__(
        self,
        store: DualStore,
        history: HistoryLog,
        *,
        cod_amount_field: str = "cod_amount",
        cod_collected_field: str = "cod_collected",
        clock: Callable[[], float] = _now,
        locks: Optional[KeyedLock] = None,
    ):
        self._store = store
        self._history = history
        self._cod_amount_field = cod_amount_field
        self._cod_collected_field = cod_collected_field
        self._clock = clock
        self._locks = locks or KeyedLock()

    def get(self, task_id: str) -> Optional[TaskRecord]:
        doc = self._store.run("tasks.get", lambda b: b.get(COLLECTION, str(task_id)))
        return TaskRecord(**doc) if doc else None

    def list_tasks(self, *, fleet_id: Optional[str] = None, status: Any = None) -> List[TaskRecord]:
        filters: Dict[str, Any] = {}
        if fleet_id is not None:
            filters["fleet_id"] = str(fleet_id)
        if status is not None:
            filters["status"] = status
        docs = self._store.run("tasks.list", lambda b: b.query(COLLECTION, **filters))
        out = [TaskRecord(**d) for d in docs]
        out.sort(key=lambda t: (t.creation_datetime or "", t.created_at), reverse=True)
        return out

    def upsert(self, task_id: str, fields: Dict[str, Any]) -> TaskRecord:
        task_id = str(task_id)

        def op(b: DocumentBackend) -> TaskRecord:
            ts = self._clock()
            base = b.get(COLLECTION, task_id) or _shell(task_id, ts)
            merged = overlay(base, fields)
            merged["updated_at"] = ts
            record = TaskRecord(**merged)
            b.set(COLLECTION, task_id, record.model_dump(mode="json"))
            return record

        with self._locks.hold(task_id):
            return self._store.run("tasks.upsert", op)

    def merge_from_event(self, payload: Dict[str, Any]) -> TaskRecord:
        """Overlay one webhook payload onto its task and audit COD changes."""
        task_id = extract_task_id(payload)
        if not task_id:
            raise MissingTaskIdentifier(f"Webhook payload carries none of {', '.join(TASK_ID_FIELDS)}")

        fields = normalize_task_fields(
            payload,
            amount_field=self._cod_amount_field,
            collected_field=self._cod_collected_field,
        )

        def op(b: DocumentBackend) -> TaskRecord:
            ts = self._clock()
            base = b.get(COLLECTION, task_id) or _shell(task_id, ts)
            merged = overlay(base, fields)
            merged["webhook_received_at"] = ts
            merged["updated_at"] = ts
            record = TaskRecord(**merged)
            b.set(COLLECTION, task_id, record.model_dump(mode="json"))

            old_cod = _cod_state(base)
            new_cod = _cod_state(merged)
            if old_cod != new_cod:
                self._history.append(task_id, "cod", old_cod, new_cod, source="webhook", backend=b)
            return record

        with self._locks.hold(task_id):
            return self._store.run("tasks.merge_from_event", op)

    def set_metadata(self, task_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        task_id = str(task_id)

        def op(b: DocumentBackend) -> Dict[str, Any]:
            doc = b.get(COLLECTION, task_id)
            if doc is None:
                raise NotFound(f"Task {task_id} not found")
            ts = self._clock()
            metadata = {**(doc.get("internal_metadata") or {}), **dict(patch), "last_updated": ts}
            doc["internal_metadata"] = metadata
            doc["updated_at"] = ts
            b.set(COLLECTION, task_id, doc)
            return metadata

        with self._locks.hold(task_id):
            return self._store.run("tasks.set_metadata", op)

    def get_metadata(self, task_id: str) -> Dict[str, Any]:
        doc = self._store.run("tasks.get_metadata", lambda b: b.get(COLLECTION, str(task_id)))
        return dict((doc or {}).get("internal_metadata") or {})

    def get_history(self, task_id: Optional[str] = None, limit: Optional[int] = None) -> List[HistoryEntry]:
        return self._history.list(task_id=task_id, limit=limit)
