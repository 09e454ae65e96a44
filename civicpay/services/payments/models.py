"""Payments database models.

This DB is the source of truth for payment orders, captured payments, inbound
webhook deliveries, the audit trail and the service-local outbox. `bills` and
`service_requests` are owned by the billing/connection services; only the
columns the reconciliation engine reads or flips are mapped here.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from civicpay.common.db import Base


PAYMENT_PURPOSES = (
    "bill_payment",
    "new_connection",
    "security_deposit",
    "reconnection_fee",
    "miscellaneous",
)


class Bill(Base):
    """Utility bill, updated to `paid` when its order is captured."""

    __tablename__ = "bills"

    bill_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    bill_number: Mapped[str] = mapped_column(String, unique=True)
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    bill_status: Mapped[str] = mapped_column(String, default="unpaid", index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ServiceRequest(Base):
    """New-connection request, advanced to `payment_received` on capture."""

    __tablename__ = "service_requests"

    request_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String, default="submitted")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PaymentOrder(Base):
    """One checkout attempt; holds amount/purpose/expiry before money moves."""

    __tablename__ = "payment_orders"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_payment_orders_amount_positive"),)

    order_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    gateway_order_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_for: Mapped[str] = mapped_column(String)
    bill_id: Mapped[str | None] = mapped_column(ForeignKey("bills.bill_id"), index=True, nullable=True)
    service_request_id: Mapped[str | None] = mapped_column(
        ForeignKey("service_requests.request_id"), index=True, nullable=True
    )
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_mobile: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    status: Mapped[str] = mapped_column(String, default="created", index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # `metadata` is reserved on declarative classes.
    order_metadata: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Payment(Base):
    """One captured gateway transaction; `transaction_id` is the dedupe key across paths."""

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_order_id: Mapped[str] = mapped_column(ForeignKey("payment_orders.order_id"), index=True)
    bill_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    transaction_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_gateway: Mapped[str] = mapped_column(String, default="razorpay")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    payment_status: Mapped[str] = mapped_column(String, index=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    receipt_number: Mapped[str] = mapped_column(String, unique=True)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    order = relationship("PaymentOrder")
    # `payments.bill_id` carries no foreign key.
    bill = relationship("Bill", primaryjoin="foreign(Payment.bill_id) == Bill.bill_id", viewonly=True)


class WebhookEvent(Base):
    """One distinct inbound gateway delivery; `payload`/`raw_body` are write-once."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    event_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JSONB)
    raw_body: Mapped[str] = mapped_column(Text)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    headers: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditLog(Base):
    """Append-only diagnostic trail of state-changing actions."""

    __tablename__ = "audit_logs"

    audit_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    entity_type: Mapped[str] = mapped_column(String, index=True)
    entity_id: Mapped[str] = mapped_column(String, index=True)
    action: Mapped[str] = mapped_column(String)
    performed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Effects (notifications) waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONB)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
