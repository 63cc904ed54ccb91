import logging
import os
from contextlib import asynccontextmanager
from datetime import date

import uvicorn
from fastapi import FastAPI, HTTPException

from app.db import SqlStore, create_db_engine
from pilltime import ReminderFlow, wall_clock
from services.push_gateway.outbound import WebPushTransport
from services.scheduler.engine import TriggerEngine
from shared.config import load_settings
from shared.contracts.models import (
    CleanupResult,
    DispatchResult,
    GenerationResult,
    OccurrenceDTO,
    SweepResult,
)

logger = logging.getLogger(__name__)

settings = load_settings()
store = SqlStore(create_db_engine(settings.database_url))
flow = ReminderFlow(
    store=store,
    transport=WebPushTransport(
        store=store,
        vapid=settings.vapid_credentials(),
        timeout=settings.push_timeout_seconds,
    ),
    clock=wall_clock(settings.scheduler_timezone),
    retention_days=settings.subscription_retention_days,
)
engine = TriggerEngine(flow, timezone=settings.scheduler_timezone)


@asynccontextmanager
async def lifespan(_: FastAPI):
    store.create_schema()
    if settings.enable_scheduler:
        engine.start()
    else:
        logger.info("Trigger engine disabled via settings (ENABLE_SCHEDULER=false)")
    try:
        yield
    finally:
        engine.shutdown(wait=True)


app = FastAPI(title="scheduler", lifespan=lifespan)


@app.get("/health")
def health() -> dict[str, str | bool]:
    return {
        "status": "ok",
        "service": "scheduler",
        "scheduler_running": engine.running,
        "push_enabled": flow.dispatcher.transport.enabled,
    }


@app.post("/jobs/generate")
def generate() -> GenerationResult:
    return GenerationResult(created=flow.generate_horizon(), dates=flow.horizon())


@app.post("/jobs/sweep-missed")
def sweep_missed() -> SweepResult:
    now = flow.clock()
    return SweepResult(transitioned=flow.detector.sweep(now), swept_at=now)


@app.post("/jobs/tick")
def tick() -> DispatchResult:
    summary = flow.dispatch_due()
    return DispatchResult(
        enabled=summary.enabled,
        occurrences=summary.occurrences,
        sent=summary.sent,
        failed=summary.failed,
    )


@app.post("/jobs/cleanup-subscriptions")
def cleanup_subscriptions() -> CleanupResult:
    return CleanupResult(removed=flow.cleanup_subscriptions())


def _require_medication(medication_id: int) -> None:
    if flow.store.get_medication(medication_id) is None:
        raise HTTPException(status_code=404, detail="medication not found")


@app.post("/hooks/medications/{medication_id}/created")
def medication_created(medication_id: int) -> GenerationResult:
    _require_medication(medication_id)
    return GenerationResult(
        created=flow.on_medication_created_or_reactivated(medication_id),
        dates=flow.horizon(),
    )


@app.post("/hooks/medications/{medication_id}/schedule-changed")
def medication_schedule_changed(medication_id: int) -> GenerationResult:
    _require_medication(medication_id)
    return GenerationResult(
        created=flow.on_medication_times_or_dates_changed(medication_id),
        dates=flow.horizon(),
    )


@app.get("/occurrences")
def occurrences(day: str) -> list[OccurrenceDTO]:
    try:
        target = date.fromisoformat(day)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="day must be YYYY-MM-DD") from exc

    return [
        OccurrenceDTO(
            occurrence_id=occ.id,
            medication_id=med.id,
            medication_name=med.name,
            dosage=med.dosage,
            scheduled_time=occ.scheduled_time,
            status=occ.status,
            taken_time=occ.taken_time,
            notes=occ.notes,
        )
        for occ, med in flow.store.list_occurrences_on(target)
    ]


def run() -> None:
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8002")), log_level="info")


if __name__ == "__main__":
    run()
