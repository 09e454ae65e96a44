"""Audit trail and notification outbox writes.

Both run inside the caller's transaction. Audit rows are diagnostic: a failed
insert is rolled back to its savepoint and logged so the financial change still
commits. Notifications go through the outbox so they commit (or roll back)
together with the state change they announce.
"""

from sqlalchemy.exc import SQLAlchemyError

from civicpay.common.events import NOTIFICATIONS_TOPIC
from civicpay.common.logging import logger, trace_id_ctx
from civicpay.common.outbox import add_outbox_event
from civicpay.services.payments.models import AuditLog, OutboxEvent


def record_audit(db, entity_type: str, entity_id: str, action: str, actor: str | None) -> None:
    try:
        with db.begin_nested():
            db.add(
                AuditLog(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    performed_by=actor or "system",
                )
            )
    except SQLAlchemyError as exc:
        logger.warning(
            "audit_write_failed entity_type=%s entity_id=%s action=%s error=%s",
            entity_type,
            entity_id,
            action,
            exc,
        )


def enqueue_notification(
    db,
    *,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    priority: str,
    related_entity_type: str,
    related_entity_id: str,
    channels: list[str],
) -> None:
    """Append a `notifications.requested` envelope for the notification service."""

    add_outbox_event(
        db,
        OutboxEvent,
        aggregate_type=related_entity_type,
        aggregate_id=related_entity_id,
        event_type=f"notification.{notification_type}",
        topic=NOTIFICATIONS_TOPIC,
        trace_id=trace_id_ctx.get(),
        payload={
            "user_id": user_id,
            "notification_type": notification_type,
            "title": title,
            "message": message,
            "priority": priority,
            "related_entity_type": related_entity_type,
            "related_entity_id": related_entity_id,
            "delivery_channels": channels,
        },
    )
