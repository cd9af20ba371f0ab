from __future__ import annotations

from typing import Any, Callable, List, Optional

from .models import HistoryEntry
from .storage import DocumentBackend, DualStore
from .utils import new_id, now as _now

COLLECTION = "task_history"


class HistoryLog:
    """Append-only audit trail of field-level task changes."""

    def __init__(self, store: DualStore, *, clock: Callable[[], float] = _now):
        self._store = store
        self._clock = clock

    def append(
        self,
        job_id: str,
        field: str,
        old_value: Any,
        new_value: Any,
        *,
        source: str = "webhook",
        backend: Optional[DocumentBackend] = None,
    ) -> HistoryEntry:
        """Record one change.

        ``backend`` lets the task merge path write the entry on the same
        backend that just stored the task.
        """
        ts = self._clock()
        entry = HistoryEntry(
            id=new_id("HIST", ts),
            job_id=str(job_id),
            field=field,
            old_value=old_value,
            new_value=new_value,
            changed_at=ts,
            source=source,
        )
        if backend is not None:
            backend.set(COLLECTION, entry.id, entry.model_dump(mode="json"))
            return entry

        self._store.run("history.append", lambda b: b.set(COLLECTION, entry.id, entry.model_dump(mode="json")))
        return entry

    def list(self, task_id: Optional[str] = None, limit: Optional[int] = None) -> List[HistoryEntry]:
        def op(b: DocumentBackend):
            if task_id is not None:
                return b.query(COLLECTION, job_id=str(task_id))
            return list(b.all(COLLECTION).values())

        rows = [HistoryEntry(**d) for d in self._store.run("history.list", op)]
        rows.sort(key=lambda e: (e.changed_at, e.id), reverse=True)
        if limit and limit > 0:
            rows = rows[: int(limit)]
        return rows
