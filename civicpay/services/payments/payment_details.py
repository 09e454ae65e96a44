"""Normalized payment-method details extracted from gateway payment entities.

The gateway payment shape depends on `method`; each supported method maps to
one detail record, stored as `payments.gateway_response`.
"""

from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel


class PaymentMethod(str, Enum):
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"


class _BaseDetails(BaseModel):
    payment_id_short: str | None = None


class UpiDetails(_BaseDetails):
    method: Literal["upi"] = "upi"
    upi_id: str | None = None
    vpa: str | None = None
    bank_name: str | None = None
    utr: str | None = None


class CardDetails(_BaseDetails):
    method: Literal["card"] = "card"
    card_last4: str | None = None
    card_type: str | None = None
    card_network: str | None = None
    bank_name: str | None = None


class NetbankingDetails(_BaseDetails):
    method: Literal["netbanking"] = "netbanking"
    bank_name: str | None = None


class WalletDetails(_BaseDetails):
    method: Literal["wallet"] = "wallet"
    wallet_name: str | None = None


class OtherDetails(_BaseDetails):
    """Methods without dedicated fields (emi, bank_transfer, unknown)."""

    method: str | None = None


PaymentDetails = Union[UpiDetails, CardDetails, NetbankingDetails, WalletDetails, OtherDetails]


def _short_id(payment_id: Any) -> str | None:
    if not payment_id:
        return None
    return str(payment_id)[-8:]


def extract_payment_details(payment: dict[str, Any]) -> PaymentDetails:
    """Map one raw gateway payment entity to its method-specific detail record."""

    method = payment.get("method")
    short_id = _short_id(payment.get("id"))
    try:
        kind = PaymentMethod(method)
    except ValueError:
        return OtherDetails(method=method, payment_id_short=short_id)

    if kind is PaymentMethod.UPI:
        acquirer = payment.get("acquirer_data") or {}
        return UpiDetails(
            payment_id_short=short_id,
            upi_id=payment.get("vpa"),
            vpa=payment.get("vpa"),
            bank_name=payment.get("bank"),
            utr=acquirer.get("rrn"),
        )
    if kind is PaymentMethod.CARD:
        card = payment.get("card") or {}
        return CardDetails(
            payment_id_short=short_id,
            card_last4=card.get("last4"),
            card_type=card.get("type"),
            card_network=card.get("network"),
            bank_name=payment.get("bank"),
        )
    if kind is PaymentMethod.NETBANKING:
        return NetbankingDetails(payment_id_short=short_id, bank_name=payment.get("bank"))
    return WalletDetails(payment_id_short=short_id, wallet_name=payment.get("wallet"))
