"""Payment reconciliation engine.

Two entry points converge on one capture transition: the client-submitted
checkout verification and the gateway webhook. Either may run first, both may
run concurrently, and webhooks may be redelivered any number of times. The
transition is guarded by the order-row lock, the paid short-circuit, an
optimistic `(status, state_version)` update and the unique
`payments.transaction_id`, so all paths end at one paid order, one Payment per
transaction and one notification.
"""

import json
import secrets as pysecrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload

from civicpay.common.errors import (
    ConcurrencyConflict,
    Forbidden,
    InvalidSignature,
    NotFound,
    RefundNotImplemented,
    ValidationError,
)
from civicpay.common.events import KafkaBus
from civicpay.common.logging import event_key_ctx, logger, order_id_ctx
from civicpay.common.metrics import (
    duplicate_capture_total,
    duplicate_events_skipped_total,
    payment_amount_mismatch_total,
    payment_captured_total,
    payment_failure_total,
    payment_verifications_total,
    retries_total,
    webhook_events_total,
)
from civicpay.common.outbox import OutboxPublisher
from civicpay.common.state_machine import FAILED, PAID, validate_transition
from civicpay.services.payments.audit import enqueue_notification, record_audit
from civicpay.services.payments.gateway import GatewaySecrets, to_minor_units
from civicpay.services.payments.models import (
    Bill,
    OutboxEvent,
    Payment,
    PaymentOrder,
    ServiceRequest,
)
from civicpay.services.payments.orders import CreatedOrder, OrderLedger
from civicpay.services.payments.payment_details import extract_payment_details
from civicpay.services.payments.schemas import CreateOrderRequest, WebhookResult
from civicpay.services.payments.signatures import verify_payment_signature, verify_webhook_signature
from civicpay.services.payments.webhook_store import WebhookEventStore, derive_event_key, webhook_entity


_RECEIPT_ALPHABET = string.digits + string.ascii_uppercase

# Payment reads carry the order's purpose and customer fields and the bill number.
_PAYMENT_READ_OPTIONS = (joinedload(Payment.order), joinedload(Payment.bill))


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_RECEIPT_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def generate_receipt_number() -> str:
    """`RCP-<base36 epoch ms>-<4 random chars>`; uniqueness is enforced by the column."""

    suffix = "".join(pysecrets.choice(_RECEIPT_ALPHABET) for _ in range(4))
    return f"RCP-{_base36(int(time.time() * 1000))}-{suffix}"


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    message: str
    order_id: str
    payment_id: str | None
    receipt_number: str | None


@dataclass(frozen=True)
class CaptureOutcome:
    order_id: str
    payment_id: str | None
    receipt_number: str | None
    already_paid: bool


class PaymentService:
    """Owns the payment-order state machine and both reconciliation paths."""

    def __init__(
        self,
        session_factory,
        gateway,
        secrets: GatewaySecrets,
        currency: str = "INR",
        service_name: str = "payments",
        max_attempts: int = 3,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.secrets = secrets
        self.service_name = service_name
        self.max_attempts = max_attempts
        self.ledger = OrderLedger(session_factory, gateway, secrets, currency=currency, service_name=service_name)
        self.events = WebhookEventStore(session_factory)
        self.kafka = KafkaBus()
        self.outbox = OutboxPublisher(session_factory, OutboxEvent, self.kafka, service_name)

    def create_order(self, req: CreateOrderRequest, user_id: str | None) -> CreatedOrder:
        return self.ledger.create_order(req, user_id)

    # ------------------------------------------------------------------
    # Path A: client-submitted checkout verification
    # ------------------------------------------------------------------

    def verify_payment(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        user_id: str | None = None,
    ) -> VerificationResult:
        """Verify a checkout callback and apply the capture.

        A paid order answers success without calling the gateway again.
        """

        if not verify_payment_signature(gateway_order_id, gateway_payment_id, signature, self.secrets.key_secret):
            payment_verifications_total.labels(service=self.service_name, outcome="invalid_signature").inc()
            logger.warning("payment signature invalid gateway_order_id=%s", gateway_order_id)
            raise InvalidSignature("Invalid payment signature. Verification failed.")

        with self.session_factory() as db:
            order = self._find_order(db, gateway_order_id)
            if order is None:
                raise NotFound("Order not found")
            order_id_ctx.set(order.order_id)
            if order.status == PAID:
                existing = self._payment_by_transaction(db, order.gateway_payment_id or gateway_payment_id)
                payment_verifications_total.labels(service=self.service_name, outcome="already_paid").inc()
                return VerificationResult(
                    success=True,
                    message="Payment already verified",
                    order_id=order.order_id,
                    payment_id=existing.payment_id if existing else None,
                    receipt_number=existing.receipt_number if existing else None,
                )

        payment = self.gateway.fetch_payment(gateway_payment_id)
        if payment.get("status") == "failed":
            payment_verifications_total.labels(service=self.service_name, outcome="not_captured").inc()
            raise ValidationError("Payment was not completed at the gateway")
        if payment.get("order_id") and payment["order_id"] != gateway_order_id:
            raise ValidationError("Payment does not belong to this order")
        payment = {**payment, "id": gateway_payment_id}

        outcome = self._with_retries(
            self._capture_once,
            gateway_order_id,
            payment,
            actor=user_id,
            signature=signature,
            source="verify",
            audit_action="PAYMENT_VERIFIED",
        )
        if outcome is None:
            raise NotFound("Order not found")
        payment_verifications_total.labels(service=self.service_name, outcome="verified").inc()
        return VerificationResult(
            success=True,
            message="Payment already verified" if outcome.already_paid else "Payment verified successfully",
            order_id=outcome.order_id,
            payment_id=outcome.payment_id,
            receipt_number=outcome.receipt_number,
        )

    # ------------------------------------------------------------------
    # Path B: gateway webhook delivery
    # ------------------------------------------------------------------

    def handle_webhook(
        self,
        raw_body: bytes,
        signature: str | None,
        headers: dict[str, str] | None = None,
        source_ip: str | None = None,
    ) -> WebhookResult:
        """Record, verify and apply one delivery; never raises.

        The caller always acknowledges with HTTP 200: gateway redelivery is the
        recovery path for anything that failed here.
        """

        try:
            payload = json.loads(raw_body)
            if not isinstance(payload, dict):
                raise ValueError("webhook body is not a JSON object")
            if not isinstance(payload.get("payload") or {}, dict):
                raise ValueError("webhook payload is not a JSON object")
            event_key = derive_event_key(payload)
        except ValueError as exc:
            logger.warning("webhook body rejected error=%s", exc)
            webhook_events_total.labels(service=self.service_name, event_type="unknown", status="ignored").inc()
            return WebhookResult(status="ignored", ignored=True, reason="malformed_payload")

        event_type = str(payload.get("event") or "unknown")
        token = event_key_ctx.set(event_key)
        try:
            result = self._process_webhook(raw_body, payload, event_type, event_key, signature, headers, source_ip)
        finally:
            event_key_ctx.reset(token)
        webhook_events_total.labels(service=self.service_name, event_type=event_type, status=result.status).inc()
        return result

    def _process_webhook(
        self,
        raw_body: bytes,
        payload: dict[str, Any],
        event_type: str,
        event_key: str,
        signature: str | None,
        headers: dict[str, str] | None,
        source_ip: str | None,
    ) -> WebhookResult:
        verified = verify_webhook_signature(raw_body, signature, self.secrets.webhook_secret)
        try:
            with self.session_factory() as db:
                if self.events.is_duplicate(db, event_key):
                    duplicate_events_skipped_total.labels(service=self.service_name, topic=event_type).inc()
                    logger.info("duplicate webhook ignored event_type=%s", event_type)
                    return WebhookResult(status="duplicate", ignored=True)

                event = self.events.upsert_event(
                    db,
                    event_key,
                    {
                        "event_type": event_type,
                        "payload": payload.get("payload") or {},
                        "raw_body": raw_body.decode("utf-8", errors="replace"),
                        "verified": verified,
                        "ip_address": source_ip,
                        "headers": headers or {},
                    },
                )
                if not verified:
                    if not event.verified:
                        event.error_message = "Invalid signature"
                    db.commit()
                    logger.warning("webhook signature invalid event_type=%s source_ip=%s", event_type, source_ip)
                    return WebhookResult(status="ignored", ignored=True, reason="invalid_signature")
                db.commit()

            self._dispatch(event_type, payload.get("payload") or {})

            with self.session_factory() as db:
                self.events.mark_processed(db, self.events.get(db, event_key))
                db.commit()
            return WebhookResult(status="ok")
        except RefundNotImplemented as exc:
            logger.warning("webhook event not implemented event_type=%s", event_type)
            self._record_event_error(event_key, exc.message)
            return WebhookResult(status="unimplemented", message=exc.message)
        except Exception as exc:
            logger.exception("webhook processing failed event_type=%s error=%s", event_type, exc)
            self._record_event_error(event_key, str(exc) or exc.__class__.__name__)
            return WebhookResult(status="error", message=str(exc) or exc.__class__.__name__)

    def _record_event_error(self, event_key: str, message: str) -> None:
        try:
            self.events.record_error(event_key, message)
        except Exception as exc:
            logger.error("webhook error note not stored event_key=%s error=%s", event_key, exc)

    def _dispatch(self, event_type: str, inner: dict[str, Any]) -> None:
        if event_type == "payment.captured":
            self._handle_captured(inner)
        elif event_type == "payment.failed":
            self._handle_failed(inner)
        elif event_type == "refund.processed":
            raise RefundNotImplemented("refund.processed handling is not implemented")
        else:
            logger.info("unhandled webhook event type=%s", event_type)

    def _handle_captured(self, inner: dict[str, Any]) -> None:
        payment = webhook_entity(inner, "payment")
        if not payment.get("id"):
            raise ValidationError("No payment entity in webhook payload")
        outcome = self._with_retries(
            self._capture_once,
            payment.get("order_id"),
            payment,
            actor=None,
            signature=None,
            source="webhook",
            audit_action="PAYMENT_CAPTURED",
        )
        if outcome is None:
            logger.warning(
                "payment order not found for capture gateway_order_id=%s transaction_id=%s",
                payment.get("order_id"),
                payment["id"],
            )

    def _handle_failed(self, inner: dict[str, Any]) -> None:
        payment = webhook_entity(inner, "payment")
        if not payment:
            raise ValidationError("No payment entity in webhook payload")
        self._with_retries(self._fail_once, payment.get("order_id"), payment)

    def replay_unprocessed_events(self, limit: int = 100) -> dict[str, int]:
        """Re-dispatch stored verified deliveries whose processing failed.

        Each row's raw body is re-verified against its stored signature header
        before dispatch, so only bytes the gateway signed are acted on.
        """

        with self.session_factory() as db:
            pending = [
                (event.event_key, event.event_type, event.raw_body, (event.headers or {}).get("x-razorpay-signature"))
                for event in self.events.list_unprocessed(db, limit)
            ]
        counts = {"replayed": 0, "skipped": 0, "failed": 0}
        for event_key, event_type, raw_body, signature in pending:
            body = raw_body.encode("utf-8")
            if not verify_webhook_signature(body, signature, self.secrets.webhook_secret):
                logger.warning("replay skipped, stored body does not verify event_key=%s", event_key)
                counts["skipped"] += 1
                continue
            token = event_key_ctx.set(event_key)
            try:
                self._dispatch(event_type, json.loads(body).get("payload") or {})
                with self.session_factory() as db:
                    self.events.mark_processed(db, self.events.get(db, event_key))
                    db.commit()
                counts["replayed"] += 1
            except Exception as exc:
                logger.error("replay failed event_key=%s error=%s", event_key, exc)
                self._record_event_error(event_key, str(exc) or exc.__class__.__name__)
                counts["failed"] += 1
            finally:
                event_key_ctx.reset(token)
        return counts

    # ------------------------------------------------------------------
    # Shared transitions
    # ------------------------------------------------------------------

    def _with_retries(self, fn, *args, **kwargs):
        """Run one transactional step, retrying lost races.

        Every attempt opens a fresh session and re-reads the order, so an order
        that became paid meanwhile takes the short-circuit.
        """

        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn(*args, **kwargs)
            except (ConcurrencyConflict, IntegrityError) as exc:
                retries_total.labels(service=self.service_name, dependency="database").inc()
                logger.warning("transition conflict attempt=%s/%s error=%s", attempt, self.max_attempts, exc)
                if attempt == self.max_attempts:
                    raise

    def _find_order(self, db, gateway_order_id: str | None, lock: bool = False) -> PaymentOrder | None:
        if not gateway_order_id:
            return None
        stmt = select(PaymentOrder).where(PaymentOrder.gateway_order_id == gateway_order_id)
        if lock:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    def _payment_by_transaction(self, db, transaction_id: str | None) -> Payment | None:
        if not transaction_id:
            return None
        return db.execute(select(Payment).where(Payment.transaction_id == transaction_id)).scalar_one_or_none()

    def _transition(self, db, order: PaymentOrder, new_status: str, **values) -> None:
        """Apply one validated transition guarded by `(order_id, status, state_version)`."""

        validate_transition(order.status, new_status)
        from_status = order.status
        current_version = order.state_version
        changes = {getattr(PaymentOrder, name): value for name, value in values.items()}
        changes[PaymentOrder.status] = new_status
        changes[PaymentOrder.state_version] = current_version + 1
        changes[PaymentOrder.updated_at] = datetime.now(timezone.utc)
        result = db.execute(
            update(PaymentOrder)
            .where(
                PaymentOrder.order_id == order.order_id,
                PaymentOrder.status == from_status,
                PaymentOrder.state_version == current_version,
            )
            .values(changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"order {order.order_id} changed concurrently (expected {from_status} v{current_version})"
            )
        db.refresh(order)
        record_audit(db, "PaymentOrder", order.order_id, f"STATUS_{from_status.upper()}_TO_{new_status.upper()}", None)

    def _amount_mismatch(self, order: PaymentOrder, payment: dict[str, Any]) -> dict[str, int] | None:
        confirmed = payment.get("amount")
        if confirmed is None:
            return None
        expected = to_minor_units(order.amount)
        if int(confirmed) == expected:
            return None
        payment_amount_mismatch_total.labels(service=self.service_name).inc()
        logger.warning(
            "captured amount differs from order amount expected_minor=%s confirmed_minor=%s transaction_id=%s",
            expected,
            confirmed,
            payment.get("id"),
        )
        return {"expectedMinor": expected, "confirmedMinor": int(confirmed)}

    def _capture_once(
        self,
        gateway_order_id: str | None,
        payment: dict[str, Any],
        *,
        actor: str | None,
        signature: str | None,
        source: str,
        audit_action: str,
    ) -> CaptureOutcome | None:
        """One atomic capture: order → paid, Payment upsert, bill/request update, notification."""

        transaction_id = payment["id"]
        with self.session_factory() as db:
            order = self._find_order(db, gateway_order_id, lock=True)
            if order is None:
                return None
            order_id_ctx.set(order.order_id)

            if order.status == PAID:
                if order.gateway_payment_id and order.gateway_payment_id != transaction_id:
                    duplicate_capture_total.labels(service=self.service_name).inc()
                    logger.error(
                        "second capture on paid order needs manual refund paid_transaction_id=%s transaction_id=%s",
                        order.gateway_payment_id,
                        transaction_id,
                    )
                existing = self._payment_by_transaction(db, order.gateway_payment_id or transaction_id)
                logger.info("order already paid source=%s transaction_id=%s", source, transaction_id)
                return CaptureOutcome(
                    order_id=order.order_id,
                    payment_id=existing.payment_id if existing else None,
                    receipt_number=existing.receipt_number if existing else None,
                    already_paid=True,
                )

            now = datetime.now(timezone.utc)
            payer_id = order.user_id or (payment.get("notes") or {}).get("userId") or actor
            metadata = dict(order.order_metadata or {})
            mismatch = self._amount_mismatch(order, payment)
            if mismatch:
                metadata["amountMismatch"] = mismatch
            values = {
                "gateway_payment_id": transaction_id,
                "paid_at": now,
                "customer_email": order.customer_email or payment.get("email"),
                "customer_mobile": order.customer_mobile or payment.get("contact"),
                "order_metadata": metadata or None,
            }
            if signature:
                values["gateway_signature"] = signature
            self._transition(db, order, PAID, **values)

            record = self._upsert_payment(db, order, transaction_id, payment, payer_id, now)
            if order.bill_id:
                db.execute(update(Bill).where(Bill.bill_id == order.bill_id).values(bill_status="paid"))
            if order.service_request_id:
                db.execute(
                    update(ServiceRequest)
                    .where(ServiceRequest.request_id == order.service_request_id)
                    .values(status="payment_received")
                )
            record_audit(db, "Payment", record.payment_id, audit_action, actor or payer_id)
            if mismatch:
                record_audit(db, "PaymentOrder", order.order_id, "AMOUNT_MISMATCH", None)
            if payer_id:
                enqueue_notification(
                    db,
                    user_id=payer_id,
                    notification_type="payment_success",
                    title="Payment Successful",
                    message=f"Your payment of ₹{order.amount} has been received. Receipt: {record.receipt_number}",
                    priority="normal",
                    related_entity_type="Payment",
                    related_entity_id=transaction_id,
                    channels=["in_app", "email"],
                )
            else:
                logger.warning("captured payment has no payer, notification skipped transaction_id=%s", transaction_id)
            db.commit()

        payment_captured_total.labels(service=self.service_name, source=source).inc()
        logger.info("payment captured source=%s transaction_id=%s", source, transaction_id)
        return CaptureOutcome(
            order_id=order.order_id,
            payment_id=record.payment_id,
            receipt_number=record.receipt_number,
            already_paid=False,
        )

    def _upsert_payment(
        self,
        db,
        order: PaymentOrder,
        transaction_id: str,
        payment: dict[str, Any],
        payer_id: str | None,
        now: datetime,
    ) -> Payment:
        """Insert the Payment for `transaction_id` or update the row another path wrote."""

        details = extract_payment_details(payment).model_dump()
        existing = self._payment_by_transaction(db, transaction_id)
        if existing is None:
            try:
                with db.begin_nested():
                    record = Payment(
                        payment_order_id=order.order_id,
                        bill_id=order.bill_id,
                        user_id=payer_id,
                        transaction_id=transaction_id,
                        payment_method=payment.get("method"),
                        payment_gateway="razorpay",
                        amount=order.amount,
                        payment_status="success",
                        gateway_response=details,
                        payment_date=now,
                        receipt_number=generate_receipt_number(),
                    )
                    db.add(record)
                return record
            except IntegrityError:
                existing = self._payment_by_transaction(db, transaction_id)
                if existing is None:
                    raise
        existing.payment_status = "success"
        existing.gateway_response = details
        db.flush()
        return existing

    def _fail_once(self, gateway_order_id: str | None, payment: dict[str, Any]) -> None:
        """Record a failed attempt; a paid order is never touched."""

        with self.session_factory() as db:
            order = self._find_order(db, gateway_order_id, lock=True)
            if order is None:
                logger.warning("payment order not found for failure gateway_order_id=%s", gateway_order_id)
                return
            order_id_ctx.set(order.order_id)
            if order.status == PAID:
                logger.warning(
                    "payment.failed ignored for paid order failed_payment_id=%s paid_transaction_id=%s",
                    payment.get("id"),
                    order.gateway_payment_id,
                )
                return

            metadata = {
                **(order.order_metadata or {}),
                "failureReason": payment.get("error_description"),
                "failureCode": payment.get("error_code"),
                "failedPaymentId": payment.get("id"),
            }
            if order.status == FAILED:
                order.order_metadata = metadata
                db.commit()
                return

            self._transition(db, order, FAILED, order_metadata=metadata)
            if order.user_id:
                enqueue_notification(
                    db,
                    user_id=order.user_id,
                    notification_type="payment_failed",
                    title="Payment Failed",
                    message=(
                        f"Your payment of ₹{order.amount} failed. "
                        f"{payment.get('error_description') or 'Please try again.'}"
                    ),
                    priority="high",
                    related_entity_type="PaymentOrder",
                    related_entity_id=order.order_id,
                    channels=["in_app"],
                )
            db.commit()
        payment_failure_total.labels(service=self.service_name).inc()

    # ------------------------------------------------------------------
    # Reads and background work
    # ------------------------------------------------------------------

    def list_payments(self, user_id: str) -> list[Payment]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment)
                    .options(*_PAYMENT_READ_OPTIONS)
                    .where(Payment.user_id == user_id)
                    .order_by(Payment.created_at.desc())
                ).scalars()
            )

    def get_payment(self, payment_id: str, user_id: str, is_admin: bool = False) -> Payment:
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id, options=_PAYMENT_READ_OPTIONS)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.user_id != user_id and not is_admin:
            raise Forbidden("Access denied")
        return payment

    async def outbox_publisher(self) -> None:
        """Deliver notification outbox rows to Kafka (at-least-once)."""

        await self.outbox.run_forever()
