"""Order creation: target checks, gateway-first ordering and minor units."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pydantic
import pytest
from sqlalchemy import func, select

from civicpay.common.errors import Conflict, GatewayError, NotFound
from civicpay.services.payments.models import AuditLog, Bill, PaymentOrder
from civicpay.services.payments.schemas import CreateOrderRequest

from conftest import order_request


def test_rupees_are_sent_to_gateway_in_paisa(service, gateway, bill, db):
    created = service.create_order(order_request(bill.bill_id), "user-1")

    assert gateway.created[0]["amount"] == 50000
    assert gateway.created[0]["notes"]["billId"] == bill.bill_id
    assert created.amount == 50000
    assert created.key_id == "rzp_test_key"

    order = db.get(PaymentOrder, created.order_id)
    assert order.gateway_order_id == created.gateway_order_id
    assert order.amount == Decimal("500.00")
    assert order.status == "created"
    assert order.state_version == 0
    assert order.user_id == "user-1"


def test_order_expires_after_thirty_minutes(service, bill):
    before = datetime.now(timezone.utc)
    created = service.create_order(order_request(bill.bill_id), "user-1")

    assert before + timedelta(minutes=29) < created.expires_at <= datetime.now(timezone.utc) + timedelta(minutes=30)


def test_creation_is_audited(service, bill, db):
    created = service.create_order(order_request(bill.bill_id), "user-1")

    actions = db.execute(select(AuditLog.action).where(AuditLog.entity_id == created.order_id)).scalars().all()
    assert actions == ["CREATE"]


def test_gateway_failure_writes_no_order(service, gateway, bill, db):
    gateway.fail_create = True

    with pytest.raises(GatewayError):
        service.create_order(order_request(bill.bill_id), "user-1")

    assert db.execute(select(func.count()).select_from(PaymentOrder)).scalar_one() == 0


def test_unknown_bill_is_rejected_before_gateway_call(service, gateway):
    with pytest.raises(NotFound):
        service.create_order(order_request("missing-bill"), "user-1")

    assert gateway.created == []


def test_paid_bill_is_rejected(service, gateway, bill, session_factory):
    with session_factory() as session:
        session.get(Bill, bill.bill_id).bill_status = "paid"
        session.commit()

    with pytest.raises(Conflict):
        service.create_order(order_request(bill.bill_id), "user-1")
    assert gateway.created == []


def test_new_connection_needs_existing_service_request(service, service_request):
    req = CreateOrderRequest(amount="1500", paymentFor="new_connection", serviceRequestId=service_request.request_id)
    assert service.create_order(req, "user-1").amount == 150000

    with pytest.raises(NotFound):
        service.create_order(
            CreateOrderRequest(amount="1500", paymentFor="new_connection", serviceRequestId="nope"), "user-1"
        )


def test_purpose_without_reference_is_allowed(service, gateway):
    req = CreateOrderRequest(amount="250.50", paymentFor="reconnection_fee", customerMobile="9876543210")

    service.create_order(req, "user-1")

    assert gateway.created[0]["amount"] == 25050


@pytest.mark.parametrize(
    "body",
    [
        {"amount": "0", "paymentFor": "miscellaneous"},
        {"amount": "-5", "paymentFor": "miscellaneous"},
        {"amount": "10000000.01", "paymentFor": "miscellaneous"},
        {"amount": "10.001", "paymentFor": "miscellaneous"},
        {"amount": "10", "paymentFor": "donation"},
        {"amount": "10", "paymentFor": "bill_payment"},
        {"amount": "10", "paymentFor": "new_connection"},
        {"amount": "10", "paymentFor": "miscellaneous", "customerMobile": "1234567890"},
        {"amount": "10", "paymentFor": "miscellaneous", "customerEmail": "not-an-email"},
    ],
)
def test_invalid_requests_are_rejected(body):
    with pytest.raises(pydantic.ValidationError):
        CreateOrderRequest(**body)
