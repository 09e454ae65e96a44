"""JSON logs carrying the correlation ids of the request or delivery in flight.

`trace_id` follows an HTTP request (or a consumed envelope), `event_key` a
webhook delivery and `order_id` the payment order being reconciled. Each is a
`ContextVar`, so values set in one request never leak into another.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from civicpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_key_ctx: ContextVar[str] = ContextVar("event_key", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")

_CONTEXT = {"trace_id": trace_id_ctx, "event_key": event_key_ctx, "order_id": order_id_ctx}

# Client libraries that log every reconnect at INFO.
_NOISY_LOGGERS = ("aiokafka", "kafka", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in _CONTEXT.items():
            setattr(record, field, var.get())
        return True


def configure_logging(level: str | None = None) -> None:
    """Replace root handlers with one stdout JSON handler; call once at startup."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_key)s %(order_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("civicpay")
