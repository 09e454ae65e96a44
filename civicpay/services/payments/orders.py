"""Order ledger: one gateway order plus one `payment_orders` row per checkout attempt."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from civicpay.common.errors import Conflict, NotFound
from civicpay.common.logging import logger, order_id_ctx
from civicpay.common.metrics import orders_created_total
from civicpay.services.payments.audit import record_audit
from civicpay.services.payments.gateway import GatewaySecrets, to_minor_units
from civicpay.services.payments.models import Bill, PaymentOrder, ServiceRequest
from civicpay.services.payments.schemas import CreateOrderRequest


ORDER_EXPIRY = timedelta(minutes=30)


@dataclass(frozen=True)
class CreatedOrder:
    order_id: str
    gateway_order_id: str
    amount: int
    currency: str
    key_id: str
    expires_at: datetime


class OrderLedger:
    """Validates the checkout target, creates the gateway order, then persists it."""

    def __init__(
        self,
        session_factory,
        gateway,
        secrets: GatewaySecrets,
        currency: str = "INR",
        service_name: str = "payments",
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.secrets = secrets
        self.currency = currency
        self.service_name = service_name

    def _check_target(self, db, req: CreateOrderRequest) -> None:
        if req.payment_for == "bill_payment" and req.bill_id:
            bill = db.get(Bill, req.bill_id)
            if bill is None:
                raise NotFound("Bill not found")
            if bill.bill_status == "paid":
                raise Conflict("Bill is already paid")
        if req.payment_for == "new_connection" and req.service_request_id:
            if db.get(ServiceRequest, req.service_request_id) is None:
                raise NotFound("Service request not found")

    def create_order(self, req: CreateOrderRequest, user_id: str | None) -> CreatedOrder:
        """Create the gateway order first; the row is only written once it exists.

        A gateway failure raises `GatewayError` before anything is persisted.
        """

        with self.session_factory() as db:
            self._check_target(db, req)

        notes = {
            "userId": user_id or "",
            "paymentFor": req.payment_for,
            "billId": req.bill_id or "",
            "serviceRequestId": req.service_request_id or "",
            "customerEmail": req.customer_email or "",
            "customerName": req.customer_name or "",
        }
        gateway_order = self.gateway.create_order(to_minor_units(req.amount), self.currency, notes)
        expires_at = datetime.now(timezone.utc) + ORDER_EXPIRY

        with self.session_factory() as db:
            order = PaymentOrder(
                gateway_order_id=gateway_order.id,
                payment_for=req.payment_for,
                bill_id=req.bill_id,
                service_request_id=req.service_request_id,
                user_id=user_id,
                customer_name=req.customer_name,
                customer_email=req.customer_email,
                customer_mobile=req.customer_mobile,
                amount=req.amount,
                currency=self.currency,
                status="created",
                state_version=0,
                expires_at=expires_at,
                order_metadata=req.metadata,
            )
            db.add(order)
            db.flush()
            record_audit(db, "PaymentOrder", order.order_id, "CREATE", user_id)
            db.commit()

        order_id_ctx.set(order.order_id)
        orders_created_total.labels(service=self.service_name, purpose=req.payment_for).inc()
        logger.info(
            "payment_order_created gateway_order_id=%s amount=%s purpose=%s",
            gateway_order.id,
            req.amount,
            req.payment_for,
        )
        return CreatedOrder(
            order_id=order.order_id,
            gateway_order_id=gateway_order.id,
            amount=gateway_order.amount,
            currency=gateway_order.currency,
            key_id=self.secrets.key_id,
            expires_at=expires_at,
        )
