from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFound
from .models import WebhookEvent, WebhookEventStatus
from .payloads import derive_event_type, extract_task_id
from .storage import DocumentBackend, DualStore
from .utils import new_id, now as _now

logger = logging.getLogger(__name__)

COLLECTION = "webhook_events"


def _oldest_first(events: List[WebhookEvent]) -> List[WebhookEvent]:
    return sorted(events, key=lambda e: (e.created_at, e.id))


class EventLog:
    """Durable record of every inbound webhook event and its processing state.

    Events appended during a primary outage live only in the file store. While
    the primary serves, reads also pick those rows up, and the next state
    change writes them into the primary. A row the primary already holds always
    wins over the file copy.
    """

    def __init__(self, store: DualStore, *, clock: Callable[[], float] = _now):
        self._store = store
        self._clock = clock

    def _serving_primary(self, b: DocumentBackend) -> bool:
        return self._store.primary is not None and b is self._store.primary

    def _outage_rows(self, b: DocumentBackend, **equals: Any) -> List[Dict[str, Any]]:
        """File-store rows unknown to the primary ``b``."""
        if not self._serving_primary(b):
            return []
        try:
            docs = self._store.fallback.query(COLLECTION, **equals)
        except (OSError, ValueError) as e:
            logger.warning("Could not scan %s backend for outage events: %s", self._store.fallback.name, e)
            return []
        return [d for d in docs if b.get(COLLECTION, str(d.get("id"))) is None]

    def _lookup(self, b: DocumentBackend, event_id: str) -> Optional[Dict[str, Any]]:
        doc = b.get(COLLECTION, str(event_id))
        if doc is None and self._serving_primary(b):
            try:
                doc = self._store.fallback.get(COLLECTION, str(event_id))
            except (OSError, ValueError) as e:
                logger.warning("Could not read event %s from %s backend: %s", event_id, self._store.fallback.name, e)
        return doc

    def _scan(self, b: DocumentBackend, *statuses: WebhookEventStatus) -> List[WebhookEvent]:
        by_id: Dict[str, Dict[str, Any]] = {}
        for status in statuses:
            for d in b.query(COLLECTION, status=status.value) + self._outage_rows(b, status=status.value):
                by_id.setdefault(str(d.get("id")), d)
        return [WebhookEvent(**d) for d in by_id.values()]

    def append(self, payload: Dict[str, Any], task_id: Optional[str] = None) -> WebhookEvent:
        payload = dict(payload or {})
        ts = self._clock()
        event = WebhookEvent(
            id=new_id("EVT", ts),
            event_type=derive_event_type(payload),
            task_id=str(task_id) if task_id else extract_task_id(payload),
            payload=payload,
            created_at=ts,
            updated_at=ts,
        )
        self._store.run("events.append", lambda b: b.set(COLLECTION, event.id, event.model_dump(mode="json")))
        return event

    def get(self, event_id: str) -> WebhookEvent:
        doc = self._store.run("events.get", lambda b: self._lookup(b, event_id))
        if doc is None:
            raise NotFound(f"Webhook event {event_id} not found")
        return WebhookEvent(**doc)

    def list_pending(self, max_retry: int = 3, limit: Optional[int] = None) -> List[WebhookEvent]:
        """Pending events plus failed ones still under the retry bound, oldest first."""
        events = self._store.run(
            "events.list_pending",
            lambda b: self._scan(b, WebhookEventStatus.PENDING, WebhookEventStatus.FAILED),
        )
        out = [e for e in events if e.status == WebhookEventStatus.PENDING or e.retry_count < int(max_retry)]
        out = _oldest_first(out)
        if limit and limit > 0:
            out = out[: int(limit)]
        return out

    def list_failed(self, limit: Optional[int] = 100) -> List[WebhookEvent]:
        events = self._store.run("events.list_failed", lambda b: self._scan(b, WebhookEventStatus.FAILED))
        out = sorted(events, key=lambda e: (e.created_at, e.id), reverse=True)
        if limit and limit > 0:
            out = out[: int(limit)]
        return out

    def _current(self, b: DocumentBackend, event_id: str, snapshot: Optional[WebhookEvent]) -> WebhookEvent:
        doc = self._lookup(b, event_id)
        if doc is not None:
            return WebhookEvent(**doc)
        if snapshot is not None:
            # Row lives on the other backend; carry the caller's copy over.
            return snapshot
        raise NotFound(f"Webhook event {event_id} not found")

    def mark_processed(self, event_id: str, *, snapshot: Optional[WebhookEvent] = None) -> WebhookEvent:
        def op(b: DocumentBackend) -> WebhookEvent:
            event = self._current(b, event_id, snapshot)
            # Idempotent: processed is terminal.
            if event.status == WebhookEventStatus.PROCESSED:
                if b.get(COLLECTION, event.id) is None:
                    b.set(COLLECTION, event.id, event.model_dump(mode="json"))
                return event
            ts = self._clock()
            event = event.model_copy(update={"status": WebhookEventStatus.PROCESSED, "processed_at": ts, "updated_at": ts})
            b.set(COLLECTION, event.id, event.model_dump(mode="json"))
            return event

        return self._store.run("events.mark_processed", op)

    def mark_failed(self, event_id: str, error_message: str, *, snapshot: Optional[WebhookEvent] = None) -> WebhookEvent:
        def op(b: DocumentBackend) -> WebhookEvent:
            event = self._current(b, event_id, snapshot)
            if event.status == WebhookEventStatus.PROCESSED:
                logger.warning("Ignoring failure report for already processed event %s", event.id)
                return event
            ts = self._clock()
            event = event.model_copy(
                update={
                    "status": WebhookEventStatus.FAILED,
                    "retry_count": event.retry_count + 1,
                    "last_retry_at": ts,
                    "error_message": str(error_message or "Processing failed"),
                    "updated_at": ts,
                }
            )
            b.set(COLLECTION, event.id, event.model_dump(mode="json"))
            return event

        return self._store.run("events.mark_failed", op)

    def reset_for_retry(self, event_id: str) -> WebhookEvent:
        """Operator action: put a failed event back in the queue. Retry count is kept."""

        def op(b: DocumentBackend) -> WebhookEvent:
            event = self._current(b, event_id, None)
            if event.status == WebhookEventStatus.PROCESSED:
                return event
            event = event.model_copy(update={"status": WebhookEventStatus.PENDING, "updated_at": self._clock()})
            b.set(COLLECTION, event.id, event.model_dump(mode="json"))
            return event

        return self._store.run("events.reset_for_retry", op)

    def stats(self) -> Dict[str, int]:
        def op(b: DocumentBackend) -> List[Dict[str, Any]]:
            docs = b.all(COLLECTION)
            if self._serving_primary(b):
                try:
                    outage = self._store.fallback.all(COLLECTION)
                except (OSError, ValueError) as e:
                    logger.warning("Could not read %s backend for stats: %s", self._store.fallback.name, e)
                    outage = {}
                docs = {**outage, **docs}
            return list(docs.values())

        out = {s.value: 0 for s in WebhookEventStatus}
        for d in self._store.run("events.stats", op):
            status = str(d.get("status") or "")
            if status in out:
                out[status] += 1
        return out
