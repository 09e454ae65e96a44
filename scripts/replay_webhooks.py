"""Re-dispatch stored webhook deliveries whose processing failed.

Only rows that were signature-verified on arrival are considered, and each raw
body is verified again before it is applied, so replay never acts on bytes the
gateway did not sign. Captures stay idempotent on `transaction_id`.
"""

import argparse
import json

from civicpay.common.config import settings
from civicpay.common.db import SessionLocal
from civicpay.common.logging import configure_logging
from civicpay.services.payments.gateway import GatewaySecrets, RazorpayClient
from civicpay.services.payments.service import PaymentService
from civicpay.services.payments.webhook_store import WebhookEventStore


def list_pending(limit: int) -> list[dict]:
    """Describe the verified-but-unprocessed rows without touching them."""

    store = WebhookEventStore(SessionLocal)
    with SessionLocal() as db:
        return [
            {
                "event_key": event.event_key,
                "event_type": event.event_type,
                "error_message": event.error_message,
            }
            for event in store.list_unprocessed(db, limit)
        ]


def main() -> None:
    """CLI entrypoint for operator-driven webhook recovery."""

    parser = argparse.ArgumentParser(description="Replay verified, unprocessed gateway webhooks.")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    configure_logging()
    if args.dry_run:
        pending = list_pending(args.limit)
        print(json.dumps(pending, indent=2))
        print(f"{len(pending)} event(s) would be replayed; dry run only.")
        return

    gateway = RazorpayClient(
        settings.razorpay_base_url,
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        timeout=settings.gateway_timeout_seconds,
        service_name=settings.service_name,
    )
    service = PaymentService(
        SessionLocal,
        gateway,
        GatewaySecrets(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
        ),
        currency=settings.payment_currency,
        service_name=settings.service_name,
    )
    try:
        counts = service.replay_unprocessed_events(limit=args.limit)
    finally:
        gateway.close()
    print(json.dumps(counts))
    raise SystemExit(1 if counts["failed"] else 0)


if __name__ == "__main__":
    main()
