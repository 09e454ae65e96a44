"""Startup-time config snapshot with secrets masked."""

from pydantic_settings import BaseSettings

from civicpay.common.logging import logger


_SECRET_MARKERS = ("secret", "password", "token", "dsn")


def _masked(field: str, value) -> str:
    if value in (None, ""):
        return "<unset>"
    if any(marker in field for marker in _SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(config: BaseSettings, fields: list[str]) -> None:
    """Log the named settings fields so a misconfigured deploy is visible in the first log line."""

    snapshot = {field: _masked(field, getattr(config, field, None)) for field in fields}
    logger.info("startup_config service=%s config=%s", getattr(config, "service_name", "unknown"), snapshot)
