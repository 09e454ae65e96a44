"""HTTP surface for payment orders, checkout verification and gateway webhooks."""

import asyncio
from contextlib import asynccontextmanager

import redis
from fastapi import Depends, FastAPI, Header, Request
from starlette.concurrency import run_in_threadpool

from civicpay.common.auth import CurrentUser, require_user
from civicpay.common.config import settings
from civicpay.common.db import SessionLocal
from civicpay.common.errors import register_error_handlers
from civicpay.common.http import install_request_middleware
from civicpay.common.logging import configure_logging
from civicpay.common.metrics import metrics_response
from civicpay.common.ratelimit import TokenBucketLimiter
from civicpay.common.startup import log_startup_config
from civicpay.common.tracing import instrument_app, setup_tracing
from civicpay.services.payments.gateway import GatewaySecrets, RazorpayClient
from civicpay.services.payments.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    PaymentView,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResult,
)
from civicpay.services.payments.service import PaymentService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "razorpay_base_url",
        "razorpay_key_id",
        "razorpay_webhook_secret",
        "payment_currency",
        "rate_limit_per_minute",
    ],
)
secrets = GatewaySecrets(
    key_id=settings.razorpay_key_id,
    key_secret=settings.razorpay_key_secret,
    webhook_secret=settings.razorpay_webhook_secret,
)
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
    secrets,
    currency=settings.payment_currency,
    service_name=settings.service_name,
)
limiter = TokenBucketLimiter(
    redis.Redis.from_url(settings.redis_url, decode_responses=True),
    settings.rate_limit_per_minute,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the notification outbox publisher with the app lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    yield
    publisher_task.cancel()
    await service.kafka.close()
    gateway.close()


app = FastAPI(title="CivicPay Payments", lifespan=lifespan)
instrument_app(app)
install_request_middleware(app, settings.service_name)
register_error_handlers(app)


def get_service() -> PaymentService:
    return service


def rate_limited_user(user: CurrentUser = Depends(require_user)) -> CurrentUser:
    """Authenticated caller, charged one token from their bucket."""

    limiter.enforce(f"payments:{user.user_id}")
    return user


@app.post("/payments/orders", response_model=CreateOrderResponse, status_code=201)
def create_order(
    req: CreateOrderRequest,
    user: CurrentUser = Depends(rate_limited_user),
    svc: PaymentService = Depends(get_service),
):
    """Create a gateway order and its `created` PaymentOrder row."""

    created = svc.create_order(req, user.user_id)
    return CreateOrderResponse(
        order_id=created.order_id,
        gateway_order_id=created.gateway_order_id,
        amount=created.amount,
        currency=created.currency,
        key_id=created.key_id,
        expires_at=created.expires_at,
    )


@app.post("/payments/verify", response_model=VerifyPaymentResponse)
def verify_payment(
    req: VerifyPaymentRequest,
    user: CurrentUser = Depends(rate_limited_user),
    svc: PaymentService = Depends(get_service),
):
    """Verify the checkout callback signature and record the payment."""

    result = svc.verify_payment(req.gateway_order_id, req.gateway_payment_id, req.signature, user.user_id)
    return VerifyPaymentResponse(
        success=result.success,
        message=result.message,
        order_id=result.order_id,
        payment_id=result.payment_id,
        receipt_number=result.receipt_number,
    )


@app.post("/payments/webhook")
async def webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    svc: PaymentService = Depends(get_service),
):
    """Gateway webhook; trust comes from the signature over the raw body. Always 200."""

    raw_body = await request.body()
    forwarded = request.headers.get("x-forwarded-for")
    source_ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    result: WebhookResult = await run_in_threadpool(
        svc.handle_webhook,
        raw_body,
        x_razorpay_signature,
        dict(request.headers),
        source_ip,
    )
    return result.model_dump(exclude_none=True)


@app.get("/payments")
def list_payments(user: CurrentUser = Depends(require_user), svc: PaymentService = Depends(get_service)):
    """Payments made by the caller, newest first."""

    payments = svc.list_payments(user.user_id)
    return {
        "payments": [
            PaymentView.model_validate(p).model_dump(by_alias=True, mode="json") for p in payments
        ]
    }


@app.get("/payments/{payment_id}")
def get_payment(
    payment_id: str,
    user: CurrentUser = Depends(require_user),
    svc: PaymentService = Depends(get_service),
):
    """One payment; only its payer or an admin may read it."""

    payment = svc.get_payment(payment_id, user.user_id, user.is_admin)
    return {"payment": PaymentView.model_validate(payment).model_dump(by_alias=True, mode="json")}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
