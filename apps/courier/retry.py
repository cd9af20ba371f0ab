"""Webhook event retry pipeline.

One ``drain()`` walks the current backlog once, oldest first, applying each
event to the task store. Repetition comes from the outside (APScheduler job or
cron running ``python -m apps.courier.retry``).

Events are applied strictly one at a time. Task merges are read-modify-write,
so running two drains concurrently needs the per-task locks in TaskStore.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from .errors import PersistenceUnavailable
from .events import EventLog
from .models import DrainSummary, TaskRecord, WebhookEvent, WebhookEventStatus
from .payloads import derive_event_type, extract_task_id, is_task_event
from .tasks import TaskStore
from .utils import now as _now

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY_BASE_SECONDS = 60.0
EVENT_PAUSE_SECONDS = 1.0


class RetryScheduler:
    def __init__(
        self,
        events: EventLog,
        tasks: TaskStore,
        *,
        max_retries: int = MAX_RETRIES,
        base_delay: float = RETRY_DELAY_BASE_SECONDS,
        pause_seconds: float = EVENT_PAUSE_SECONDS,
        clock: Callable[[], float] = _now,
        sleep: Callable[[float], Any] = time.sleep,
        on_exhausted: Optional[Callable[[WebhookEvent], Any]] = None,
    ):
        self._events = events
        self._tasks = tasks
        self.max_retries = int(max_retries)
        self.base_delay = float(base_delay)
        self.pause_seconds = float(pause_seconds)
        self._clock = clock
        self._sleep = sleep
        self._on_exhausted = on_exhausted
        self._run_lock = threading.Lock()

    def backoff_delay(self, retry_count: int) -> float:
        return self.base_delay * (2 ** int(retry_count or 0))

    def in_backoff(self, event: WebhookEvent, now: Optional[float] = None) -> bool:
        if event.last_retry_at is None:
            return False
        now = self._clock() if now is None else now
        return now - event.last_retry_at < self.backoff_delay(event.retry_count)

    def _apply(self, event: WebhookEvent) -> Optional[TaskRecord]:
        payload = dict(event.payload or {})
        task_id = event.task_id or extract_task_id(payload)
        event_type = event.event_type or derive_event_type(payload)

        if not is_task_event(event_type, task_id):
            logger.info("Event %s is not task-related (%s); nothing to apply", event.id, event_type)
            return None
        if not task_id:
            logger.info("Event %s carries no task id; nothing to apply", event.id)
            return None
        if not extract_task_id(payload):
            payload["job_id"] = task_id
        return self._tasks.merge_from_event(payload)

    def process(self, event: WebhookEvent) -> WebhookEvent:
        """Apply one event and record the outcome. Returns the updated event."""
        logger.info("Processing webhook event %s (retry %d)", event.id, event.retry_count)
        try:
            self._apply(event)
        except Exception as e:
            logger.error("Error processing webhook event %s: %s", event.id, e)
            failed = self._events.mark_failed(event.id, str(e) or type(e).__name__, snapshot=event)
            if failed.retry_count >= self.max_retries:
                self._exhausted(failed)
            return failed

        return self._events.mark_processed(event.id, snapshot=event)

    def _exhausted(self, event: WebhookEvent):
        logger.error(
            "Webhook event %s exceeded max retries (%d); manual intervention required. Last error: %s",
            event.id,
            self.max_retries,
            event.error_message,
        )
        if self._on_exhausted is None:
            return
        try:
            self._on_exhausted(event)
        except Exception:
            logger.exception("Exhausted-event hook failed for %s", event.id)

    def drain(self) -> DrainSummary:
        summary = DrainSummary()
        if not self._run_lock.acquire(blocking=False):
            logger.info("Webhook processor already running; skipping this run")
            summary.aborted = True
            return summary
        try:
            return self._drain(summary)
        finally:
            self._run_lock.release()

    def _drain(self, summary: DrainSummary) -> DrainSummary:
        try:
            pending = self._events.list_pending(self.max_retries)
        except PersistenceUnavailable as e:
            logger.error("Webhook processor aborted, event log unavailable: %s", e)
            summary.aborted = True
            return summary

        summary.scanned = len(pending)
        if not pending:
            logger.info("No pending webhook events to process")
            return summary
        logger.info("Found %d pending webhook event(s)", len(pending))

        applied_any = False
        for event in pending:
            if self.in_backoff(event):
                logger.debug("Event %s is in backoff period. Skipping.", event.id)
                summary.skipped += 1
                continue

            # Fixed pause between events to bound load on downstream systems.
            if applied_any and self.pause_seconds > 0:
                self._sleep(self.pause_seconds)
            applied_any = True

            try:
                outcome = self.process(event)
            except Exception as e:
                # Outcome not recorded; the event stays as it was and is picked up next run.
                logger.error("Could not record outcome of event %s: %s", event.id, e, exc_info=True)
                summary.failed += 1
                continue

            if outcome.status == WebhookEventStatus.PROCESSED:
                summary.processed += 1
            else:
                summary.failed += 1
                if outcome.retry_count >= self.max_retries:
                    summary.exhausted.append(outcome.id)

        logger.info(
            "Webhook processor run complete: processed=%d failed=%d skipped=%d",
            summary.processed,
            summary.failed,
            summary.skipped,
        )
        return summary


def init_event_scheduler(scheduler, retry: RetryScheduler, minutes: int = 5):
    # Every few minutes, best-effort; APScheduler never overlaps two runs (max_instances=1).
    scheduler.add_interval_job(retry.drain, minutes=minutes, id="webhook_event_processor")


def main() -> int:
    from .services import build_services
    from .settings import settings

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    services = build_services(settings)
    summary = services.retry.drain()
    return 1 if summary.aborted else 0


if __name__ == "__main__":
    raise SystemExit(main())
