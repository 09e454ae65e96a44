"""Notification service lifecycle and the caller's notification feed."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from civicpay.common.auth import CurrentUser, require_user
from civicpay.common.config import settings
from civicpay.common.db import SessionLocal
from civicpay.common.errors import register_error_handlers
from civicpay.common.http import install_request_middleware
from civicpay.common.logging import configure_logging
from civicpay.common.metrics import metrics_response
from civicpay.common.startup import log_startup_config
from civicpay.common.tracing import instrument_app, setup_tracing
from civicpay.services.notification.service import NotificationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings, ["postgres_dsn", "kafka_bootstrap_servers", "jwt_algorithm"])
service = NotificationService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loop with FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="CivicPay Notification Service", lifespan=lifespan)
instrument_app(app)
install_request_middleware(app, settings.service_name)
register_error_handlers(app)


@app.get("/notifications")
def list_notifications(user: CurrentUser = Depends(require_user)):
    """Latest in-app notifications for the caller."""

    return {
        "notifications": [
            {
                "notificationId": n.notification_id,
                "type": n.notification_type,
                "title": n.title,
                "message": n.message,
                "priority": n.priority,
                "relatedEntityType": n.related_entity_type,
                "relatedEntityId": n.related_entity_id,
                "isRead": n.is_read,
                "createdAt": n.created_at.isoformat() if n.created_at else None,
            }
            for n in service.list_for_user(user.user_id)
        ]
    }


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
