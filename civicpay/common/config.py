"""Central environment-driven settings shared by the payments and notification services.

Each service process loads this once at startup. Gateway and token secrets have
no defaults, so a missing value fails the process at import time rather than on
the first request (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    razorpay_key_id: str
    razorpay_key_secret: str
    razorpay_webhook_secret: str
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 10.0

    jwt_secret: str
    jwt_algorithm: str = "HS256"

    payment_currency: str = "INR"
    rate_limit_per_minute: int = 30
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
