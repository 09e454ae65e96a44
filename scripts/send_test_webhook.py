"""Sign and POST a gateway-style webhook to a running payments service.

Useful for manual duplicate-delivery and out-of-order testing against a local
stack: send the same body several times, or a `payment.failed` after a
`payment.captured` for the same order.
"""

import argparse
import json
import time
from pathlib import Path

import httpx

from civicpay.services.payments.signatures import sign_webhook


def build_event(event: str, gateway_order_id: str, payment_id: str, amount_minor: int, created_at: int) -> dict:
    """Minimal payload shaped like the gateway's payment events."""

    entity = {
        "id": payment_id,
        "order_id": gateway_order_id,
        "amount": amount_minor,
        "currency": "INR",
        "status": "captured" if event == "payment.captured" else "failed",
        "method": "upi",
        "vpa": "citizen@okaxis",
    }
    if event == "payment.failed":
        entity["error_code"] = "BAD_REQUEST_ERROR"
        entity["error_description"] = "Payment declined by the bank"
    return {
        "entity": "event",
        "event": event,
        "created_at": created_at,
        "payload": {"payment": {"entity": entity}},
    }


def main() -> None:
    """Parse CLI args, sign one body and deliver it `--repeat` times."""

    parser = argparse.ArgumentParser(description="Send a signed test webhook to the payments service.")
    parser.add_argument("--url", default="http://localhost:8000/payments/webhook")
    parser.add_argument("--secret", required=True, help="Webhook signing secret")
    parser.add_argument("--event", default="payment.captured", choices=["payment.captured", "payment.failed"])
    parser.add_argument("--order-id", default=None, help="Gateway order id")
    parser.add_argument("--payment-id", default="pay_test_0001")
    parser.add_argument("--amount-minor", type=int, default=50000)
    parser.add_argument("--file", dest="json_file", default=None, help="Send this JSON body instead")
    parser.add_argument("--repeat", type=int, default=1)
    args = parser.parse_args()

    if args.json_file:
        body = Path(args.json_file).read_bytes()
    else:
        if not args.order_id:
            raise SystemExit("Provide --order-id or --file")
        event = build_event(args.event, args.order_id, args.payment_id, args.amount_minor, int(time.time()))
        body = json.dumps(event).encode("utf-8")

    headers = {"Content-Type": "application/json", "X-Razorpay-Signature": sign_webhook(body, args.secret)}
    with httpx.Client(timeout=10.0) as client:
        for attempt in range(1, args.repeat + 1):
            resp = client.post(args.url, content=body, headers=headers)
            print(f"delivery={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
