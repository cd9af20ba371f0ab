from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Header

from typing import Any, Dict, List, Optional

from .errors import CourierError, NotFound, PersistenceUnavailable
from .models import (
    CODEntry,
    CODEntryCreateRequest,
    CODQueueResponse,
    CODSettleOldestRequest,
    CODSettleRequest,
    DrainSummary,
    HistoryListResponse,
    TaskRecord,
    WebhookEvent,
    WebhookEventListResponse,
)
from .services import Services, build_services


logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["Courier"])


_SERVICES: Optional[Services] = None


def get_services() -> Services:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services()
    return _SERVICES


def _http_error(e: CourierError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PersistenceUnavailable):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# ---------------------------------------------------------------------------
# Webhook ingestion and event log
# ---------------------------------------------------------------------------


@router.post("/webhooks/events", response_model=WebhookEvent)
async def webhook_ingest(
    payload: Dict[str, Any] = Body(...),
    x_webhook_secret: Optional[str] = Header(default=None),
    svc: Services = Depends(get_services),
):
    expected = svc.settings.WEBHOOK_SECRET
    if expected and not hmac.compare_digest((x_webhook_secret or "").encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        event = svc.events.append(payload)
    except CourierError as e:
        raise _http_error(e)

    # First attempt happens on receipt; the periodic processor only retries.
    # The event is already recorded, so the sender gets a success either way.
    try:
        return svc.retry.process(event)
    except Exception as e:
        logger.error("Immediate processing of webhook event %s failed: %s", event.id, e, exc_info=True)
        return event


@router.get("/webhooks/events/pending", response_model=WebhookEventListResponse)
async def webhook_events_pending(limit: int = 100, svc: Services = Depends(get_services)):
    try:
        items = svc.events.list_pending(svc.retry.max_retries, limit=limit)
    except CourierError as e:
        raise _http_error(e)
    return WebhookEventListResponse(events=items, total=len(items))


@router.get("/webhooks/events/failed", response_model=WebhookEventListResponse)
async def webhook_events_failed(limit: int = 100, svc: Services = Depends(get_services)):
    try:
        items = svc.events.list_failed(limit=limit)
    except CourierError as e:
        raise _http_error(e)
    return WebhookEventListResponse(events=items, total=len(items))


@router.get("/webhooks/events/stats")
async def webhook_events_stats(svc: Services = Depends(get_services)):
    try:
        return svc.events.stats()
    except CourierError as e:
        raise _http_error(e)


@router.post("/webhooks/events/drain", response_model=DrainSummary)
def webhook_events_drain(svc: Services = Depends(get_services)):
    return svc.retry.drain()


@router.post("/webhooks/events/{event_id}/retry", response_model=WebhookEvent)
async def webhook_event_retry(event_id: str, svc: Services = Depends(get_services)):
    try:
        return svc.events.reset_for_retry(event_id)
    except CourierError as e:
        raise _http_error(e)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}", response_model=TaskRecord)
async def task_get(task_id: str, svc: Services = Depends(get_services)):
    try:
        task = svc.tasks.get(task_id)
    except CourierError as e:
        raise _http_error(e)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.get("/tasks/{task_id}/metadata")
async def task_metadata_get(task_id: str, svc: Services = Depends(get_services)):
    try:
        return svc.tasks.get_metadata(task_id)
    except CourierError as e:
        raise _http_error(e)


@router.put("/tasks/{task_id}/metadata")
async def task_metadata_set(task_id: str, patch: Dict[str, Any] = Body(...), svc: Services = Depends(get_services)):
    try:
        return svc.tasks.set_metadata(task_id, patch)
    except CourierError as e:
        raise _http_error(e)


@router.get("/history", response_model=HistoryListResponse)
async def task_history(task_id: Optional[str] = None, limit: Optional[int] = None, svc: Services = Depends(get_services)):
    try:
        items = svc.tasks.get_history(task_id=task_id, limit=limit)
    except CourierError as e:
        raise _http_error(e)
    return HistoryListResponse(history=items, total=len(items))


# ---------------------------------------------------------------------------
# COD ledger
# ---------------------------------------------------------------------------


@router.get("/cod")
async def cod_all(svc: Services = Depends(get_services)) -> Dict[str, List[CODEntry]]:
    try:
        return svc.cod.list_all()
    except CourierError as e:
        raise _http_error(e)


@router.post("/cod/{driver_id}/entries", response_model=CODEntry)
async def cod_add(driver_id: str, req: CODEntryCreateRequest, svc: Services = Depends(get_services)):
    try:
        return svc.cod.add_entry(driver_id, req.task_id, req.amount, req.notes, merchant_vendor_id=req.merchant_vendor_id)
    except CourierError as e:
        raise _http_error(e)


@router.get("/cod/{driver_id}/entries", response_model=CODQueueResponse)
async def cod_entries(driver_id: str, svc: Services = Depends(get_services)):
    try:
        items = svc.cod.list_entries(driver_id)
    except CourierError as e:
        raise _http_error(e)
    return CODQueueResponse(driver_id=driver_id, entries=items, total=len(items))


@router.get("/cod/{driver_id}/pending", response_model=CODQueueResponse)
async def cod_pending(driver_id: str, svc: Services = Depends(get_services)):
    try:
        items = svc.cod.list_pending(driver_id)
    except CourierError as e:
        raise _http_error(e)
    return CODQueueResponse(driver_id=driver_id, entries=items, total=len(items))


@router.get("/cod/{driver_id}/oldest", response_model=Optional[CODEntry])
async def cod_oldest(driver_id: str, svc: Services = Depends(get_services)):
    try:
        return svc.cod.oldest_pending(driver_id)
    except CourierError as e:
        raise _http_error(e)


@router.post("/cod/{driver_id}/entries/{cod_id}/settle", response_model=CODEntry)
async def cod_settle(driver_id: str, cod_id: str, req: CODSettleRequest, svc: Services = Depends(get_services)):
    try:
        return svc.cod.settle(driver_id, cod_id, req.note, paid_amount=req.paid_amount)
    except CourierError as e:
        raise _http_error(e)


@router.post("/cod/{driver_id}/settle", response_model=CODEntry)
async def cod_settle_oldest(driver_id: str, req: CODSettleOldestRequest, svc: Services = Depends(get_services)):
    try:
        return svc.cod.settle_oldest(driver_id, req.paid_amount, req.note)
    except CourierError as e:
        raise _http_error(e)


# ---------------------------------------------------------------------------
# Storage audit
# ---------------------------------------------------------------------------


@router.get("/storage/divergence/{collection}")
async def storage_divergence(collection: str, svc: Services = Depends(get_services)):
    if collection not in {"tasks", "task_history", "cod_entries", "webhook_events"}:
        raise HTTPException(status_code=404, detail="Unknown collection")
    try:
        report = svc.store.divergence(collection)
    except CourierError as e:
        raise _http_error(e)
    return {
        "collection": report.collection,
        "diverged": report.diverged,
        "only_fallback": report.only_fallback,
        "mismatched": report.mismatched,
    }
