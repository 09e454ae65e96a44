"""Gateway webhook path: verification, dedupe and out-of-order delivery."""

import json

import pytest
from sqlalchemy import func, select

from civicpay.services.payments.models import AuditLog, Bill, OutboxEvent, Payment, PaymentOrder, WebhookEvent
from civicpay.services.payments.signatures import sign_webhook

from conftest import WEBHOOK_SECRET, deliver, gateway_payment, order_request, webhook_body


@pytest.fixture()
def created(service, bill):
    return service.create_order(order_request(bill.bill_id), "user-1")


def _count(session_factory, model, *criteria):
    with session_factory() as session:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return session.execute(stmt).scalar_one()


def _order(session_factory, order_id):
    with session_factory() as session:
        return session.get(PaymentOrder, order_id)


def _event(session_factory):
    with session_factory() as session:
        return session.execute(select(WebhookEvent)).scalar_one()


def test_captured_webhook_marks_order_paid(service, created, bill, session_factory):
    result = deliver(service, webhook_body("payment.captured", gateway_payment(created.gateway_order_id)))

    assert result.status == "ok"
    order = _order(session_factory, created.order_id)
    assert order.status == "paid"
    assert order.gateway_payment_id == "pay_0001"
    assert order.gateway_signature is None
    with session_factory() as session:
        assert session.get(Bill, bill.bill_id).bill_status == "paid"
        payment = session.execute(select(Payment)).scalar_one()
    assert payment.transaction_id == "pay_0001"
    assert payment.user_id == "user-1"
    event = _event(session_factory)
    assert event.verified and event.processed
    assert event.processed_at is not None
    assert event.error_message is None
    assert event.event_key == "payment.captured-pay_0001-1760000000"
    assert event.ip_address == "10.0.0.1"


def test_redelivered_webhook_is_applied_once(service, created, session_factory):
    body = webhook_body("payment.captured", gateway_payment(created.gateway_order_id))

    results = [deliver(service, body) for _ in range(4)]

    assert [r.status for r in results] == ["ok", "duplicate", "duplicate", "duplicate"]
    assert all(r.ignored for r in results[1:])
    assert _count(session_factory, Payment) == 1
    assert _count(session_factory, WebhookEvent) == 1
    assert _count(session_factory, OutboxEvent) == 1
    assert _count(session_factory, AuditLog, AuditLog.action == "PAYMENT_CAPTURED") == 1
    assert _order(session_factory, created.order_id).state_version == 1


def test_tampered_body_is_stored_unverified(service, created, session_factory):
    body = webhook_body("payment.captured", gateway_payment(created.gateway_order_id))
    signature = sign_webhook(body, WEBHOOK_SECRET)
    tampered = body.replace(b"50000", b"50001")

    result = deliver(service, tampered, signature)

    assert result.status == "ignored"
    assert result.reason == "invalid_signature"
    event = _event(session_factory)
    assert not event.verified
    assert not event.processed
    assert event.error_message == "Invalid signature"
    assert event.raw_body == tampered.decode()
    assert _order(session_factory, created.order_id).status == "created"
    assert _count(session_factory, Payment) == 0


def test_genuine_delivery_after_forged_one_is_applied(service, created, session_factory):
    body = webhook_body("payment.captured", gateway_payment(created.gateway_order_id))
    deliver(service, body, signature="f" * 64)

    result = deliver(service, body)

    assert result.status == "ok"
    event = _event(session_factory)
    assert event.verified and event.processed
    assert event.error_message is None
    assert _order(session_factory, created.order_id).status == "paid"


def test_missing_signature_header(service, created, session_factory):
    body = webhook_body("payment.captured", gateway_payment(created.gateway_order_id))

    result = service.handle_webhook(body, None)

    assert result.reason == "invalid_signature"
    assert _count(session_factory, Payment) == 0


def test_malformed_body_is_ignored(service, session_factory):
    body = b"not json"

    result = service.handle_webhook(body, sign_webhook(body, WEBHOOK_SECRET))

    assert result.status == "ignored"
    assert result.reason == "malformed_payload"
    assert _count(session_factory, WebhookEvent) == 0


def test_failed_after_paid_does_not_revert(service, created, session_factory):
    deliver(service, webhook_body("payment.captured", gateway_payment(created.gateway_order_id)))

    failure = gateway_payment(
        created.gateway_order_id,
        payment_id="pay_0002",
        status="failed",
        error_code="BAD_REQUEST_ERROR",
        error_description="Payment declined",
    )
    result = deliver(service, webhook_body("payment.failed", failure, created_at=1760000100))

    assert result.status == "ok"
    order = _order(session_factory, created.order_id)
    assert order.status == "paid"
    assert order.gateway_payment_id == "pay_0001"
    assert "failureReason" not in (order.order_metadata or {})
    assert _count(session_factory, Payment) == 1


def test_failure_then_capture_ends_paid(service, created, session_factory):
    failure = gateway_payment(
        created.gateway_order_id,
        payment_id="pay_0001",
        status="failed",
        error_code="BAD_REQUEST_ERROR",
        error_description="Payment declined",
    )
    deliver(service, webhook_body("payment.failed", failure, created_at=1760000000))

    order = _order(session_factory, created.order_id)
    assert order.status == "failed"
    assert order.order_metadata["failureReason"] == "Payment declined"
    assert order.order_metadata["failedPaymentId"] == "pay_0001"
    with session_factory() as session:
        queued = session.execute(select(OutboxEvent.event_type)).scalars().all()
    assert queued == ["notification.payment_failed"]

    retry = gateway_payment(created.gateway_order_id, payment_id="pay_0002")
    assert deliver(service, webhook_body("payment.captured", retry, created_at=1760000300)).status == "ok"

    order = _order(session_factory, created.order_id)
    assert order.status == "paid"
    assert order.gateway_payment_id == "pay_0002"
    assert order.state_version == 2
    assert _count(session_factory, AuditLog, AuditLog.action == "STATUS_FAILED_TO_PAID") == 1


def test_repeated_failure_only_updates_metadata(service, created, session_factory):
    for n, reason in enumerate(["Declined", "Insufficient funds"]):
        failure = gateway_payment(
            created.gateway_order_id, payment_id=f"pay_f{n}", status="failed", error_description=reason
        )
        deliver(service, webhook_body("payment.failed", failure, created_at=1760000000 + n))

    order = _order(session_factory, created.order_id)
    assert order.status == "failed"
    assert order.state_version == 1
    assert order.order_metadata["failureReason"] == "Insufficient funds"
    assert _count(session_factory, OutboxEvent) == 1


def test_amount_mismatch_is_flagged_not_blocked(service, created, session_factory):
    short = gateway_payment(created.gateway_order_id, amount=40000)

    assert deliver(service, webhook_body("payment.captured", short)).status == "ok"

    order = _order(session_factory, created.order_id)
    assert order.status == "paid"
    assert order.order_metadata["amountMismatch"] == {"expectedMinor": 50000, "confirmedMinor": 40000}
    assert _count(session_factory, AuditLog, AuditLog.action == "AMOUNT_MISMATCH") == 1


def test_capture_for_unknown_order_is_acknowledged(service, session_factory):
    result = deliver(service, webhook_body("payment.captured", gateway_payment("order_unknown")))

    assert result.status == "ok"
    assert _count(session_factory, Payment) == 0


def test_refund_is_reported_unimplemented(service, session_factory):
    refund = {"id": "rfnd_0001", "payment_id": "pay_0001", "amount": 50000}
    body = webhook_body("refund.processed", refund, entity_name="refund")

    result = deliver(service, body)

    assert result.status == "unimplemented"
    event = _event(session_factory)
    assert event.event_key == "refund.processed-rfnd_0001-1760000000"
    assert event.verified
    assert not event.processed
    assert "not implemented" in event.error_message


def test_unhandled_event_type_is_marked_processed(service, session_factory):
    body = webhook_body("order.paid", {"id": "order_0001", "status": "paid"}, entity_name="order")

    assert deliver(service, body).status == "ok"
    assert _event(session_factory).processed


def test_processing_error_is_recorded_and_replayed(service, created, session_factory, monkeypatch):
    body = webhook_body("payment.captured", gateway_payment(created.gateway_order_id))

    def boom(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(service, "_capture_once", boom)
    result = deliver(service, body)
    assert result.status == "error"
    assert result.message == "database unavailable"
    event = _event(session_factory)
    assert not event.processed
    assert event.error_message == "database unavailable"

    monkeypatch.undo()
    assert service.replay_unprocessed_events() == {"replayed": 1, "skipped": 0, "failed": 0}

    assert _event(session_factory).processed
    assert _order(session_factory, created.order_id).status == "paid"
    assert _count(session_factory, Payment) == 1
    assert service.replay_unprocessed_events() == {"replayed": 0, "skipped": 0, "failed": 0}


def test_replay_skips_rows_whose_body_no_longer_verifies(service, created, session_factory):
    body = webhook_body("refund.processed", {"id": "rfnd_0001"}, entity_name="refund")
    deliver(service, body)
    with session_factory() as session:
        session.execute(select(WebhookEvent)).scalar_one().headers = {"x-razorpay-signature": "0" * 64}
        session.commit()

    assert service.replay_unprocessed_events() == {"replayed": 0, "skipped": 1, "failed": 0}


def test_stored_payload_is_inner_payload(service, created, session_factory):
    entity = gateway_payment(created.gateway_order_id)
    deliver(service, webhook_body("payment.captured", entity))

    assert _event(session_factory).payload == json.loads(webhook_body("payment.captured", entity))["payload"]


def test_non_object_inner_payload_is_ignored(service, session_factory):
    body = json.dumps({"event": "payment.captured", "created_at": 1, "payload": ["x"]}).encode("utf-8")

    result = deliver(service, body)

    assert result.status == "ignored"
    assert result.reason == "malformed_payload"
    assert _count(session_factory, WebhookEvent) == 0


def test_non_object_entity_is_recorded_as_error(service, created, session_factory):
    body = json.dumps({"event": "payment.captured", "created_at": 1, "payload": {"payment": "oops"}}).encode("utf-8")

    result = deliver(service, body)

    assert result.status == "error"
    event = _event(session_factory)
    assert event.event_key == "payment.captured-None-1"
    assert not event.processed
    assert event.error_message == "No payment entity in webhook payload"
    assert _order(session_factory, created.order_id).status == "created"


def test_failed_event_without_payment_entity_is_recorded_as_error(service, created, session_factory):
    body = webhook_body("payment.failed", {}, created_at=1760000200)

    result = deliver(service, body)

    assert result.status == "error"
    event = _event(session_factory)
    assert event.verified
    assert not event.processed
    assert event.error_message == "No payment entity in webhook payload"
    assert _order(session_factory, created.order_id).status == "created"


def test_forged_copy_does_not_unverify_stored_delivery(service, created, session_factory, monkeypatch):
    body = webhook_body("payment.captured", gateway_payment(created.gateway_order_id))

    def boom(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(service, "_capture_once", boom)
    assert deliver(service, body).status == "error"
    monkeypatch.undo()

    result = deliver(service, body, signature="f" * 64)

    assert result.reason == "invalid_signature"
    event = _event(session_factory)
    assert event.verified
    assert event.error_message == "database unavailable"
    assert service.replay_unprocessed_events() == {"replayed": 1, "skipped": 0, "failed": 0}
    assert _order(session_factory, created.order_id).status == "paid"
