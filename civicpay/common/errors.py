"""Error taxonomy for payment operations and its HTTP translation.

Business-rule failures are raised where they are detected; each service's
FastAPI app translates them to structured JSON at the boundary.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from civicpay.common.logging import logger


class PaymentError(Exception):
    """Base class; `status_code` and `code` drive the wire-level response."""

    status_code = 400
    code = "payment_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PaymentError):
    code = "validation_error"


class NotFound(PaymentError):
    status_code = 404
    code = "not_found"


class Forbidden(PaymentError):
    status_code = 403
    code = "forbidden"


class InvalidSignature(PaymentError):
    code = "invalid_signature"


class Conflict(PaymentError):
    status_code = 409
    code = "conflict"


class GatewayError(PaymentError):
    status_code = 502
    code = "gateway_error"


class ConcurrencyConflict(PaymentError):
    """Guarded update lost a race; callers re-read state and retry."""

    status_code = 409
    code = "concurrency_conflict"


class RefundNotImplemented(PaymentError):
    status_code = 501
    code = "refund_not_implemented"


def _error_body(code: str, message: str) -> dict:
    return {"success": False, "code": code, "message": message}


def register_error_handlers(app: FastAPI) -> None:
    """Map `PaymentError` subclasses and unexpected exceptions to JSON responses."""

    @app.exception_handler(PaymentError)
    async def _payment_error(request: Request, exc: PaymentError):
        logger.info("request_rejected path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message))

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s error=%s", request.url.path, exc)
        return JSONResponse(status_code=500, content=_error_body("internal_error", "Internal server error"))
