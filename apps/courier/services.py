from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .cod import CODLedger
from .database import build_store
from .events import EventLog
from .history import HistoryLog
from .models import WebhookEvent
from .retry import RetryScheduler
from .settings import Settings, settings as default_settings
from .storage import DualStore
from .tasks import TaskStore
from .utils import now as _now


@dataclass
class Services:
    settings: Settings
    store: DualStore
    events: EventLog
    history: HistoryLog
    tasks: TaskStore
    cod: CODLedger
    retry: RetryScheduler


def build_services(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[DualStore] = None,
    clock: Callable[[], float] = _now,
    sleep: Callable[[float], Any] = time.sleep,
    on_exhausted: Optional[Callable[[WebhookEvent], Any]] = None,
) -> Services:
    """Wire every component onto one store selected at startup."""
    cfg = cfg or default_settings
    store = store or build_store(cfg)

    events = EventLog(store, clock=clock)
    history = HistoryLog(store, clock=clock)
    tasks = TaskStore(
        store,
        history,
        cod_amount_field=cfg.COD_AMOUNT_FIELD,
        cod_collected_field=cfg.COD_COLLECTED_FIELD,
        clock=clock,
    )
    cod = CODLedger(store, clock=clock)
    retry = RetryScheduler(
        events,
        tasks,
        max_retries=cfg.WEBHOOK_MAX_RETRIES,
        base_delay=cfg.WEBHOOK_RETRY_BASE_DELAY_SECONDS,
        pause_seconds=cfg.WEBHOOK_EVENT_PAUSE_SECONDS,
        clock=clock,
        sleep=sleep,
        on_exhausted=on_exhausted,
    )
    return Services(settings=cfg, store=store, events=events, history=history, tasks=tasks, cod=cod, retry=retry)
