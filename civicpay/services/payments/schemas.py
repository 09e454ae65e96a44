"""API request/response schemas for payment endpoints.

Wire names are camelCase to match the citizen app; Python attributes stay
snake_case.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


PaymentPurpose = Literal[
    "bill_payment",
    "new_connection",
    "security_deposit",
    "reconnection_fee",
    "miscellaneous",
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateOrderRequest(_CamelModel):
    """Checkout request accepted by `POST /payments/orders`."""

    amount: Decimal = Field(gt=0, le=10_000_000, decimal_places=2)
    payment_for: PaymentPurpose = Field(alias="paymentFor")
    bill_id: str | None = Field(default=None, alias="billId", min_length=1)
    service_request_id: str | None = Field(default=None, alias="serviceRequestId", min_length=1)
    customer_name: str | None = Field(default=None, alias="customerName", min_length=1, max_length=100)
    customer_email: str | None = Field(
        default=None, alias="customerEmail", pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
    )
    customer_mobile: str | None = Field(default=None, alias="customerMobile", pattern=r"^[6-9]\d{9}$")
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _require_reference(self) -> "CreateOrderRequest":
        if self.payment_for == "bill_payment" and not self.bill_id:
            raise ValueError("billId is required for bill payments")
        if self.payment_for == "new_connection" and not self.service_request_id:
            raise ValueError("serviceRequestId is required for new connections")
        return self


class CreateOrderResponse(_CamelModel):
    order_id: str = Field(serialization_alias="orderId")
    gateway_order_id: str = Field(serialization_alias="gatewayOrderId")
    amount: int
    currency: str
    key_id: str = Field(serialization_alias="keyId")
    expires_at: datetime = Field(serialization_alias="expiresAt")


class VerifyPaymentRequest(_CamelModel):
    gateway_order_id: str = Field(alias="gatewayOrderId", min_length=1)
    gateway_payment_id: str = Field(alias="gatewayPaymentId", min_length=1)
    signature: str = Field(min_length=1)


class VerifyPaymentResponse(_CamelModel):
    success: bool
    message: str
    order_id: str = Field(serialization_alias="orderId")
    payment_id: str | None = Field(default=None, serialization_alias="paymentId")
    receipt_number: str | None = Field(default=None, serialization_alias="receiptNumber")


class PaymentOrderSummary(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    order_id: str = Field(serialization_alias="orderId")
    payment_for: str = Field(serialization_alias="paymentFor")
    customer_name: str | None = Field(default=None, serialization_alias="customerName")
    customer_email: str | None = Field(default=None, serialization_alias="customerEmail")
    customer_mobile: str | None = Field(default=None, serialization_alias="customerMobile")


class BillSummary(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    bill_id: str = Field(serialization_alias="billId")
    bill_number: str = Field(serialization_alias="billNumber")


class PaymentView(_CamelModel):
    """A captured payment with its order summary and, for bill payments, the bill number."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    payment_id: str = Field(serialization_alias="paymentId")
    payment_order_id: str = Field(serialization_alias="paymentOrderId")
    bill_id: str | None = Field(default=None, serialization_alias="billId")
    user_id: str | None = Field(default=None, serialization_alias="userId")
    transaction_id: str = Field(serialization_alias="transactionId")
    payment_method: str | None = Field(default=None, serialization_alias="paymentMethod")
    payment_gateway: str = Field(serialization_alias="paymentGateway")
    amount: Decimal
    payment_status: str = Field(serialization_alias="paymentStatus")
    gateway_response: dict[str, Any] | None = Field(default=None, serialization_alias="gatewayResponse")
    receipt_number: str = Field(serialization_alias="receiptNumber")
    payment_date: datetime = Field(serialization_alias="paymentDate")
    payment_order: PaymentOrderSummary | None = Field(
        default=None, validation_alias="order", serialization_alias="paymentOrder"
    )
    bill: BillSummary | None = None


class WebhookResult(BaseModel):
    """Body of every webhook response; the HTTP status is always 200."""

    status: Literal["ok", "duplicate", "ignored", "unimplemented", "error"]
    ignored: bool | None = None
    reason: str | None = None
    message: str | None = None
