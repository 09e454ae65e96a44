"""Persistence and deduplication of inbound gateway webhook deliveries."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from civicpay.common.logging import logger
from civicpay.services.payments.models import WebhookEvent


# Columns that may change after the first sighting of an event key.
MUTABLE_FIELDS = frozenset({"verified", "error_message", "processed", "processed_at"})


def webhook_entity(inner: Any, entity_name: str) -> dict[str, Any]:
    """`inner[entity_name]["entity"]`, or `{}` when any level is not an object."""

    if not isinstance(inner, dict):
        return {}
    wrapper = inner.get(entity_name)
    if not isinstance(wrapper, dict):
        return {}
    entity = wrapper.get("entity")
    return entity if isinstance(entity, dict) else {}


def derive_event_key(payload: dict[str, Any]) -> str:
    """Identity of a delivery: event type, entity id and gateway creation time.

    The gateway does not send a stable event id, so retries of one delivery
    share this key while distinct events on the same entity do not.
    """

    inner = payload.get("payload")
    entity_id = None
    for entity_name in ("payment", "refund", "order"):
        entity = webhook_entity(inner, entity_name)
        if entity.get("id"):
            entity_id = entity["id"]
            break
    return f"{payload.get('event')}-{entity_id}-{payload.get('created_at')}"


class WebhookEventStore:
    """Upsert/lookup helpers over `webhook_events`; payload and raw body are write-once."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def get(self, db, event_key: str) -> WebhookEvent | None:
        return db.execute(select(WebhookEvent).where(WebhookEvent.event_key == event_key)).scalar_one_or_none()

    def is_duplicate(self, db, event_key: str) -> bool:
        existing = self.get(db, event_key)
        return existing is not None and existing.processed

    def upsert_event(self, db, event_key: str, attrs: dict[str, Any]) -> WebhookEvent:
        """Insert on first sighting; afterwards only `MUTABLE_FIELDS` are updated
        and `verified` never goes from true back to false.

        A concurrent insert of the same key surfaces as an `IntegrityError`
        inside the savepoint and falls through to the update path.
        """

        existing = self.get(db, event_key)
        if existing is None:
            try:
                with db.begin_nested():
                    event = WebhookEvent(event_key=event_key, processed=False, **attrs)
                    db.add(event)
                return event
            except IntegrityError:
                logger.info("webhook event inserted concurrently event_key=%s", event_key)
                existing = self.get(db, event_key)
                if existing is None:
                    raise

        for field, value in attrs.items():
            if field not in MUTABLE_FIELDS:
                continue
            # Once a delivery has verified, a forged copy of it cannot unverify the row.
            if field == "verified" and existing.verified and not value:
                continue
            setattr(existing, field, value)
        db.flush()
        return existing

    def mark_processed(self, db, event: WebhookEvent) -> None:
        event.processed = True
        event.processed_at = datetime.now(timezone.utc)
        event.error_message = None

    def record_error(self, event_key: str, message: str) -> None:
        """Store a processing error in its own transaction so a later delivery can retry."""

        with self.session_factory() as db:
            db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_key == event_key)
                .values(error_message=message[:2000], processed=False)
            )
            db.commit()

    def list_unprocessed(self, db, limit: int) -> list[WebhookEvent]:
        """Verified deliveries whose processing failed, oldest first."""

        return list(
            db.execute(
                select(WebhookEvent)
                .where(WebhookEvent.verified.is_(True), WebhookEvent.processed.is_(False))
                .order_by(WebhookEvent.created_at)
                .limit(limit)
            ).scalars()
        )
