import logging

from fastapi import Depends, FastAPI

from .retry import init_event_scheduler
from .router import get_services, router as courier_router
from .services import Services
from .scheduler import SchedulerWrapper
from .settings import settings

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


app = FastAPI(title="Courier Sync API")

# Scheduler is started/stopped via app events below.
scheduler = SchedulerWrapper()

app.include_router(courier_router)


@app.get("/health")
def health(svc: Services = Depends(get_services)):
    return {"status": "ok", "primary_backend": svc.store.has_primary, "jobs": scheduler.job_ids()}


@app.on_event("startup")
def startup_events():
    svc = get_services()
    scheduler.start()
    init_event_scheduler(scheduler, svc.retry, minutes=settings.WEBHOOK_PROCESSOR_INTERVAL_MINUTES)
    logger.info(
        "Webhook processor scheduled every %d min (primary backend configured=%s, data_dir=%s)",
        settings.WEBHOOK_PROCESSOR_INTERVAL_MINUTES,
        svc.store.has_primary,
        settings.DATA_DIR,
    )


@app.on_event("shutdown")
def shutdown_events():
    scheduler.shutdown()
