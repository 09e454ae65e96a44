"""Transactional outbox for effects that must survive a crash after commit.

`add_outbox_event` appends an envelope in the caller's transaction, so the
notification exists exactly when the state change it announces does.
`OutboxPublisher` drains the table to Kafka at-least-once: rows are claimed
with `SKIP LOCKED`, marked `SENT` after the broker acks, and returned to
`PENDING` when publishing fails. A row stuck in `PROCESSING` (publisher died
mid-batch) becomes claimable again after `claim_timeout`.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select, update

from civicpay.common.events import EventEnvelope
from civicpay.common.logging import logger
from civicpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def add_outbox_event(
    db,
    outbox_model,
    *,
    aggregate_type: str,
    aggregate_id: str,
    event_type: str,
    topic: str,
    trace_id: str,
    payload: dict,
):
    envelope = EventEnvelope(event_type=event_type, aggregate_id=aggregate_id, trace_id=trace_id, payload=payload)
    row = outbox_model(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=event_type,
        topic=topic,
        payload=envelope.model_dump(),
        status=PENDING,
    )
    db.add(row)
    return row


class OutboxPublisher:
    """Moves one service's outbox rows onto the bus."""

    def __init__(
        self,
        session_factory,
        outbox_model,
        bus,
        service_name: str,
        batch_size: int = 100,
        claim_timeout: timedelta = timedelta(seconds=30),
    ) -> None:
        self.session_factory = session_factory
        self.model = outbox_model
        self.bus = bus
        self.service_name = service_name
        self.batch_size = batch_size
        self.claim_timeout = claim_timeout

    def claim(self, db) -> list[tuple[str, str, dict]]:
        """Flip a batch of pending or abandoned rows to `PROCESSING` and return them."""

        model = self.model
        now = datetime.now(timezone.utc)
        claimable = (
            select(model.id)
            .where(
                or_(
                    model.status == PENDING,
                    and_(model.status == PROCESSING, model.sent_at < now - self.claim_timeout),
                )
            )
            .order_by(model.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        rows = db.execute(
            update(model)
            .where(model.id.in_(claimable))
            .values(status=PROCESSING, sent_at=now)
            .returning(model.id, model.topic, model.payload)
            .execution_options(synchronize_session=False)
        ).all()
        return [(row.id, row.topic, row.payload) for row in rows]

    def settle(self, row_id: str, delivered: bool) -> None:
        """Mark a claimed row `SENT`, or release it for another attempt."""

        if delivered:
            values = {"status": SENT, "sent_at": datetime.now(timezone.utc)}
        else:
            values = {"status": PENDING, "sent_at": None}
        with self.session_factory() as db:
            db.execute(
                update(self.model)
                .where(self.model.id == row_id, self.model.status == PROCESSING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.refresh_backlog(db)
            db.commit()

    def refresh_backlog(self, db) -> None:
        model = self.model
        unsent = model.status.in_((PENDING, PROCESSING))
        count, oldest = db.execute(select(func.count(), func.min(model.created_at)).where(unsent)).one()
        age = 0.0
        if oldest is not None:
            if oldest.tzinfo is None:
                oldest = oldest.replace(tzinfo=timezone.utc)
            age = max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age)

    async def publish_pending(self) -> int:
        """One claim-and-publish pass; returns how many rows were delivered."""

        with self.session_factory() as db:
            claimed = self.claim(db)
            self.refresh_backlog(db)
            db.commit()

        delivered = 0
        for row_id, topic, payload in claimed:
            try:
                await self.bus.publish(topic, EventEnvelope(**payload))
            except Exception as exc:
                logger.error("outbox_publish_failed service=%s row_id=%s error=%s", self.service_name, row_id, exc)
                self.settle(row_id, delivered=False)
                continue
            self.settle(row_id, delivered=True)
            delivered += 1
        return delivered

    async def run_forever(self, poll_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("outbox_pass_failed service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(poll_seconds)
