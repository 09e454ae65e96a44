"""Delivery side of payment notifications.

Requests arrive at-least-once from the payments outbox. The inbox row and the
notification row commit together, and the inbox primary key
`(event_id, consumed_by_service)` makes a redelivered envelope a no-op even
when two consumers race on it.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from civicpay.common.events import NOTIFICATIONS_TOPIC, EnvelopeConsumer, EventEnvelope
from civicpay.common.logging import logger
from civicpay.common.metrics import duplicate_events_skipped_total
from civicpay.services.notification.models import InboxEvent, Notification


IN_APP = "in_app"


class NotificationService:
    def __init__(self, session_factory, service_name: str = "notification") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _claim_event(self, db, event_id: str) -> bool:
        """Record the envelope in the inbox; False when this consumer already has it."""

        if db.get(InboxEvent, (event_id, self.service_name)) is not None:
            return False
        try:
            with db.begin_nested():
                db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))
        except IntegrityError:
            return False
        return True

    async def handle_request(self, event: EventEnvelope) -> None:
        request = event.payload
        channels = list(request.get("delivery_channels") or [IN_APP])
        with self.session_factory() as db:
            if not self._claim_event(db, event.event_id):
                duplicate_events_skipped_total.labels(service=self.service_name, topic=NOTIFICATIONS_TOPIC).inc()
                logger.info("notification request already handled event_id=%s", event.event_id)
                return
            if IN_APP in channels:
                db.add(
                    Notification(
                        user_id=request["user_id"],
                        notification_type=request["notification_type"],
                        title=request["title"],
                        message=request["message"],
                        priority=request.get("priority", "normal"),
                        related_entity_type=request.get("related_entity_type"),
                        related_entity_id=request.get("related_entity_id"),
                        delivery_channels=channels,
                    )
                )
            db.commit()

        # TODO: hand e-mail requests to the mailer queue once it exists; they are only logged today.
        for channel in channels:
            if channel != IN_APP:
                logger.info(
                    "notification channel not delivered channel=%s type=%s user_id=%s",
                    channel,
                    request["notification_type"],
                    request["user_id"],
                )

    def list_for_user(self, user_id: str, limit: int = 50) -> list[Notification]:
        with self.session_factory() as db:
            stmt = (
                select(Notification)
                .where(Notification.user_id == user_id)
                .order_by(Notification.created_at.desc())
                .limit(limit)
            )
            return list(db.execute(stmt).scalars())

    async def start_consumers(self) -> None:
        consumer = EnvelopeConsumer(
            NOTIFICATIONS_TOPIC, "notification-requests", self.handle_request, self.service_name
        )
        await consumer.run_forever()
