"""Razorpay REST client used for order creation and payment lookup."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from civicpay.common.errors import GatewayError
from civicpay.common.logging import logger
from civicpay.common.metrics import gateway_errors_total, gateway_latency_seconds
from civicpay.common.tracing import gateway_span


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: int
    currency: str


@dataclass(frozen=True)
class GatewaySecrets:
    """Credentials injected into the ledger and engine at construction."""

    key_id: str
    key_secret: str
    webhook_secret: str


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (rupees) to gateway minor units (paisa)."""

    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RazorpayClient:
    """Thin synchronous wrapper over the gateway's orders and payments endpoints."""

    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        timeout: float = 10.0,
        service_name: str = "payments",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.service_name = service_name
        self._client = httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    def _request(self, operation: str, method: str, path: str, **kwargs) -> dict[str, Any]:
        with gateway_span(operation, path=path):
            with gateway_latency_seconds.labels(service=self.service_name, operation=operation).time():
                try:
                    resp = self._client.request(method, path, **kwargs)
                    resp.raise_for_status()
                    return resp.json()
                except httpx.HTTPStatusError as exc:
                    gateway_errors_total.labels(service=self.service_name, operation=operation).inc()
                    logger.error(
                        "gateway_rejected operation=%s status=%s body=%s",
                        operation,
                        exc.response.status_code,
                        exc.response.text[:500],
                    )
                    raise GatewayError(f"gateway {operation} failed with status {exc.response.status_code}") from exc
                except (httpx.HTTPError, ValueError) as exc:
                    gateway_errors_total.labels(service=self.service_name, operation=operation).inc()
                    logger.error("gateway_unreachable operation=%s error=%s", operation, exc)
                    raise GatewayError(f"gateway {operation} failed: {exc}") from exc

    def create_order(self, amount_minor: int, currency: str, notes: dict[str, str]) -> GatewayOrder:
        body = self._request(
            "create_order",
            "POST",
            "/orders",
            json={"amount": amount_minor, "currency": currency, "payment_capture": 1, "notes": notes},
        )
        try:
            return GatewayOrder(id=body["id"], amount=int(body["amount"]), currency=body["currency"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GatewayError(f"gateway create_order returned an unexpected body: {exc}") from exc

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return self._request("fetch_payment", "GET", f"/payments/{payment_id}")

    def close(self) -> None:
        self._client.close()
