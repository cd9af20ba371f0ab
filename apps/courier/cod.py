"""Per-driver FIFO ledger of cash-on-delivery obligations.

Entries are never deleted on the normal path; settlement flips PENDING to
COMPLETED exactly once. Only the maintenance purge removes settled entries,
and only from the file store.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, List, Optional

from .errors import InvalidAmount, NotFound, PersistenceUnavailable
from .locks import KeyedLock
from .models import CODEntry, CODStatus
from .storage import DocumentBackend, DualStore
from .utils import new_id, now as _now

logger = logging.getLogger(__name__)

COLLECTION = "cod_entries"

SETTLEMENT_TOLERANCE = 0.01


def _fifo(entries: List[CODEntry]) -> List[CODEntry]:
    return sorted(entries, key=lambda e: (e.created_at, e.cod_id))


def _validate_amount(amount: Any) -> float:
    if isinstance(amount, bool):
        raise InvalidAmount("COD amount must be a number")
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise InvalidAmount(f"COD amount must be a number, got {amount!r}")
    if not math.isfinite(value) or value < 0:
        raise InvalidAmount(f"COD amount must be non-negative, got {amount!r}")
    return round(value, 2)


class CODLedger:
    def __init__(
        self,
        store: DualStore,
        *,
        clock: Callable[[], float] = _now,
        locks: Optional[KeyedLock] = None,
    ):
        self._store = store
        self._clock = clock
        self._locks = locks or KeyedLock()

    def _driver_entries(self, b: DocumentBackend, driver_id: str) -> List[CODEntry]:
        return _fifo([CODEntry(**d) for d in b.query(COLLECTION, driver_id=driver_id)])

    def add_entry(
        self,
        driver_id: str,
        task_id: str,
        amount: Any,
        note: Optional[str] = None,
        *,
        merchant_vendor_id: Optional[str] = None,
    ) -> CODEntry:
        driver_id = str(driver_id)
        value = _validate_amount(amount)

        def op(b: DocumentBackend) -> CODEntry:
            ts = self._clock()
            entry = CODEntry(
                cod_id=new_id("COD", ts),
                driver_id=driver_id,
                task_id=str(task_id),
                amount=value,
                status=CODStatus.PENDING,
                created_at=ts,
                notes=note or "",
                merchant_vendor_id=merchant_vendor_id,
            )
            b.set(COLLECTION, entry.cod_id, entry.model_dump(mode="json"))
            return entry

        with self._locks.hold(driver_id):
            entry = self._store.run("cod.add_entry", op)
        logger.info("COD %s queued for driver %s (task %s, amount %.2f)", entry.cod_id, driver_id, entry.task_id, entry.amount)
        return entry

    def list_entries(self, driver_id: str) -> List[CODEntry]:
        """Whole queue for one driver, settled entries included, oldest first."""
        return self._store.run("cod.list_entries", lambda b: self._driver_entries(b, str(driver_id)))

    def list_pending(self, driver_id: str) -> List[CODEntry]:
        return [e for e in self.list_entries(driver_id) if e.status == CODStatus.PENDING]

    def oldest_pending(self, driver_id: str) -> Optional[CODEntry]:
        pending = self.list_pending(driver_id)
        return pending[0] if pending else None

    def pending_total(self, driver_id: str) -> float:
        return round(sum(e.amount for e in self.list_pending(driver_id)), 2)

    def _complete(self, b: DocumentBackend, entry: CODEntry, note: Optional[str], paid: Optional[float]) -> CODEntry:
        # No partial settlement: the payment must cover the entry to the cent.
        if paid is not None and abs(paid - entry.amount) > SETTLEMENT_TOLERANCE:
            raise InvalidAmount(
                f"Amount mismatch for COD {entry.cod_id}: expected {entry.amount:.2f}, paid {paid:.2f}. "
                "Partial settlement is not allowed."
            )
        update: Dict[str, Any] = {"status": CODStatus.COMPLETED, "settled_at": self._clock()}
        if note:
            update["notes"] = note
        entry = entry.model_copy(update=update)
        b.set(COLLECTION, entry.cod_id, entry.model_dump(mode="json"))
        return entry

    def settle(
        self,
        driver_id: str,
        entry_id: str,
        note: Optional[str] = None,
        *,
        paid_amount: Any = None,
    ) -> CODEntry:
        """Mark one PENDING entry COMPLETED. Re-settling raises NotFound."""
        driver_id = str(driver_id)
        paid = None if paid_amount is None else _validate_amount(paid_amount)

        def op(b: DocumentBackend) -> CODEntry:
            doc = b.get(COLLECTION, str(entry_id))
            if doc is None or str(doc.get("driver_id")) != driver_id:
                raise NotFound(f"COD entry {entry_id} not found for driver {driver_id}")
            entry = CODEntry(**doc)
            if entry.status != CODStatus.PENDING:
                raise NotFound(f"COD entry {entry_id} is already settled")
            return self._complete(b, entry, note, paid)

        with self._locks.hold(driver_id):
            entry = self._store.run("cod.settle", op)
        logger.info("COD %s settled for driver %s", entry.cod_id, driver_id)
        return entry

    def settle_oldest(self, driver_id: str, paid_amount: Any, note: Optional[str] = None) -> CODEntry:
        """Settle the driver's oldest PENDING entry with a payment of exactly its amount."""
        driver_id = str(driver_id)
        paid = _validate_amount(paid_amount)

        def op(b: DocumentBackend) -> CODEntry:
            pending = [e for e in self._driver_entries(b, driver_id) if e.status == CODStatus.PENDING]
            if not pending:
                raise NotFound(f"No pending COD for driver {driver_id}")
            return self._complete(b, pending[0], note, paid)

        with self._locks.hold(driver_id):
            entry = self._store.run("cod.settle_oldest", op)
        logger.info("COD %s settled for driver %s (oldest pending)", entry.cod_id, driver_id)
        return entry

    def list_all(self) -> Dict[str, List[CODEntry]]:
        docs = self._store.run("cod.list_all", lambda b: list(b.all(COLLECTION).values()))
        grouped: Dict[str, List[CODEntry]] = {}
        for d in docs:
            entry = CODEntry(**d)
            grouped.setdefault(entry.driver_id, []).append(entry)
        return {driver_id: _fifo(entries) for driver_id, entries in sorted(grouped.items())}

    def purge_settled(self, driver_id: Optional[str] = None) -> int:
        """Maintenance: drop COMPLETED entries from the file store only."""
        fallback = self._store.fallback
        try:
            docs = fallback.query(COLLECTION, status=CODStatus.COMPLETED.value)
            if driver_id is not None:
                docs = [d for d in docs if str(d.get("driver_id")) == str(driver_id)]
            removed = 0
            for d in docs:
                with self._locks.hold(str(d.get("driver_id"))):
                    if fallback.delete(COLLECTION, str(d.get("cod_id"))):
                        removed += 1
        except OSError as e:
            raise PersistenceUnavailable(f"cod.purge_settled: {e}") from e
        if removed:
            logger.info("Purged %d settled COD entries from the file store", removed)
        return removed
