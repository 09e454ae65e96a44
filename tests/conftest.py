import json
import os

# Settings are loaded at import time; required secrets must exist before any
# civicpay module is imported.
os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test-key-secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")
os.environ.setdefault("SERVICE_NAME", "payments-test")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _patch_jsonb_for_sqlite():
    """Make JSONB compile as JSON for SQLite dialect."""
    from sqlalchemy.dialects.sqlite.base import SQLiteTypeCompiler

    if not hasattr(SQLiteTypeCompiler, "visit_JSONB"):

        def visit_JSONB(self, type_, **kw):
            return self.visit_JSON(type_, **kw)

        SQLiteTypeCompiler.visit_JSONB = visit_JSONB


_patch_jsonb_for_sqlite()

from civicpay.common.db import Base
from civicpay.common.errors import GatewayError
from civicpay.services.notification import models as notification_models  # noqa: F401
from civicpay.services.payments.gateway import GatewayOrder, GatewaySecrets
from civicpay.services.payments.models import Bill, ServiceRequest
from civicpay.services.payments.service import PaymentService
from civicpay.services.payments.signatures import sign_payment, sign_webhook


KEY_SECRET = os.environ["RAZORPAY_KEY_SECRET"]
WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]


class FakeGateway:
    """In-memory stand-in for the gateway client."""

    def __init__(self):
        self.created = []
        self.payments = {}
        self.fetched = []
        self.fail_create = False

    def create_order(self, amount_minor, currency, notes):
        if self.fail_create:
            raise GatewayError("gateway create_order failed with status 502")
        order = GatewayOrder(id=f"order_{len(self.created) + 1:04d}", amount=amount_minor, currency=currency)
        self.created.append({"id": order.id, "amount": amount_minor, "currency": currency, "notes": notes})
        return order

    def fetch_payment(self, payment_id):
        self.fetched.append(payment_id)
        return dict(self.payments[payment_id])

    def close(self):
        pass


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT support.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def secrets():
    return GatewaySecrets(key_id="rzp_test_key", key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture()
def service(session_factory, gateway, secrets):
    return PaymentService(session_factory, gateway, secrets, currency="INR", service_name="payments-test")


@pytest.fixture()
def bill(session_factory):
    with session_factory() as session:
        row = Bill(bill_number="BILL-2026-0001", user_id="user-1", total_amount=Decimal("500.00"))
        session.add(row)
        session.commit()
    return row


@pytest.fixture()
def service_request(session_factory):
    with session_factory() as session:
        row = ServiceRequest(user_id="user-1")
        session.add(row)
        session.commit()
    return row


def order_request(bill_id, amount="500.00", **extra):
    from civicpay.services.payments.schemas import CreateOrderRequest

    body = {"amount": amount, "paymentFor": "bill_payment", "billId": bill_id}
    body.update(extra)
    return CreateOrderRequest(**body)


def gateway_payment(gateway_order_id, payment_id="pay_0001", amount=50000, status="captured", **extra):
    payment = {
        "id": payment_id,
        "entity": "payment",
        "order_id": gateway_order_id,
        "amount": amount,
        "currency": "INR",
        "status": status,
        "method": "upi",
        "vpa": "citizen@okaxis",
        "email": "citizen@example.com",
        "contact": "+919876543210",
        "notes": {"userId": "user-1"},
    }
    payment.update(extra)
    return payment


def webhook_body(event, entity, created_at=1760000000, entity_name="payment"):
    return json.dumps(
        {
            "entity": "event",
            "event": event,
            "created_at": created_at,
            "payload": {entity_name: {"entity": entity}},
        }
    ).encode("utf-8")


def deliver(service, body, signature=None):
    signature = sign_webhook(body, WEBHOOK_SECRET) if signature is None else signature
    return service.handle_webhook(body, signature, headers={"x-razorpay-signature": signature}, source_ip="10.0.0.1")


def checkout_signature(gateway_order_id, payment_id):
    return sign_payment(gateway_order_id, payment_id, KEY_SECRET)
