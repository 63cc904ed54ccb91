import os
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Header, HTTPException

from app.db import SqlStore, create_db_engine
from pilltime import wall_clock
from services.push_gateway.outbound import WebPushTransport
from shared.config import load_settings
from shared.contracts.models import NotificationPayload, SubscriptionIn, UnsubscribeIn

settings = load_settings()
store = SqlStore(create_db_engine(settings.database_url))
transport = WebPushTransport(
    store=store,
    vapid=settings.vapid_credentials(),
    timeout=settings.push_timeout_seconds,
)
clock = wall_clock(settings.scheduler_timezone)


@asynccontextmanager
async def lifespan(_: FastAPI):
    store.create_schema()
    yield


app = FastAPI(title="push_gateway", lifespan=lifespan)


@app.get("/health")
def health() -> dict[str, str | bool]:
    return {"status": "ok", "service": "push_gateway", "push_enabled": transport.enabled}


@app.get("/vapid-key")
def vapid_key() -> dict[str, str]:
    if transport.vapid is None:
        raise HTTPException(status_code=503, detail="VAPID keys not configured")
    return {"public_key": transport.vapid.public_key}


@app.post("/subscribe")
def subscribe(subscription: SubscriptionIn, user_agent: str | None = Header(default=None)) -> dict[str, Any]:
    saved = store.save_subscriber(
        endpoint=subscription.endpoint,
        keys=subscription.keys.model_dump(),
        created_at=clock(),
        user_agent=user_agent,
    )
    return {"subscribed": True, "endpoint": saved.endpoint}


@app.post("/unsubscribe")
def unsubscribe(payload: UnsubscribeIn) -> dict[str, Any]:
    removed = store.delete_subscriber(payload.endpoint)
    return {"unsubscribed": removed, "endpoint": payload.endpoint}


@app.post("/test")
def send_test_notification() -> dict[str, Any]:
    if not transport.enabled:
        raise HTTPException(status_code=503, detail="VAPID keys not configured")
    if not store.list_subscribers():
        raise HTTPException(status_code=404, detail="no subscriptions found")

    report = transport.send_to_all(
        NotificationPayload(
            title="PillTime Test Notification",
            body="This is a test notification from PillTime!",
            badge="/icons/badge-72x72.png",
        )
    )
    return {
        "sent": report.sent,
        "failed": report.failed,
        "removed": report.removed,
        "results": [
            {"endpoint": endpoint, "outcome": outcome.value} for endpoint, outcome in report.outcomes
        ],
    }


def run() -> None:
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8001")), log_level="info")


if __name__ == "__main__":
    run()
