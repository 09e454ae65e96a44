"""Kafka transport for notification requests.

Payments publishes `EventEnvelope`s drained from its outbox; the notification
service reads them back with `EnvelopeConsumer`. Delivery is at-least-once, so
consumers dedupe on `event_id`.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from civicpay.common.config import settings
from civicpay.common.logging import logger, order_id_ctx, trace_id_ctx
from civicpay.common.metrics import event_queue_delay_seconds


NOTIFICATIONS_TOPIC = "notifications.requested"


class EventEnvelope(BaseModel):
    """Wire shape of every message; `aggregate_id` is also the partition key."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]

    def encode(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    def queue_delay_seconds(self) -> float:
        occurred_at = datetime.fromisoformat(self.occurred_at.replace("Z", "+00:00"))
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        return max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())


def parse_envelope(raw: bytes) -> EventEnvelope:
    return EventEnvelope.model_validate_json(raw)


class KafkaBus:
    """Producer started on first publish and reused for the process lifetime."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks="all")
            await self._producer.start()
        await self._producer.send_and_wait(topic, event.encode(), key=event.aggregate_id.encode("utf-8"))

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None


EnvelopeHandler = Callable[[EventEnvelope], Awaitable[None]]


class EnvelopeConsumer:
    """Reads one topic in batches and hands each envelope to `handler`.

    A message that fails to parse or handle is logged and skipped; offsets are
    committed after each batch. Broker failures recreate the consumer.
    """

    def __init__(self, topic: str, group_id: str, handler: EnvelopeHandler, service_name: str | None = None) -> None:
        self.topic = topic
        self.group_id = group_id
        self.handler = handler
        self.service_name = service_name or settings.service_name

    async def dispatch(self, raw: bytes, offset: int | None = None) -> bool:
        """Handle one raw message value; returns False when it was skipped."""

        try:
            event = parse_envelope(raw)
        except ValueError as exc:
            logger.error("envelope_rejected topic=%s offset=%s error=%s", self.topic, offset, exc)
            return False

        event_queue_delay_seconds.labels(service=self.service_name, topic=self.topic).observe(
            event.queue_delay_seconds()
        )
        trace_token = trace_id_ctx.set(event.trace_id)
        order_token = order_id_ctx.set(event.aggregate_id)
        try:
            logger.info("event_received topic=%s event_type=%s event_id=%s", self.topic, event.event_type, event.event_id)
            await self.handler(event)
            return True
        except Exception as exc:
            logger.error(
                "handler_error topic=%s group=%s offset=%s event_id=%s error=%s",
                self.topic,
                self.group_id,
                offset,
                event.event_id,
                exc,
            )
            return False
        finally:
            trace_id_ctx.reset(trace_token)
            order_id_ctx.reset(order_token)

    async def run_forever(self) -> None:
        while True:
            consumer = AIOKafkaConsumer(
                self.topic,
                bootstrap_servers=settings.kafka_bootstrap_servers,
                group_id=self.group_id,
                auto_offset_reset="earliest",
                enable_auto_commit=False,
            )
            try:
                await consumer.start()
                while True:
                    batches = await consumer.getmany(timeout_ms=500, max_records=50)
                    for messages in batches.values():
                        for msg in messages:
                            await self.dispatch(msg.value, msg.offset)
                    if batches:
                        await consumer.commit()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("consumer_loop_error topic=%s group=%s error=%s", self.topic, self.group_id, exc)
                await asyncio.sleep(2)
            finally:
                await consumer.stop()
