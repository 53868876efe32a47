"""
Orderflow Configuration Module

Loads environment variables for the order lifecycle and payment
reconciliation backend.
"""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - Webhook signing secrets are environment-based, one per gateway
    - Retry and wait budgets are small; gateways redeliver anything
      answered with a non-2xx status
    """

    # Demo Configuration
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Gateway webhook secrets
    stripe_webhook_secret: str = "whsec_demo_only_change_me"
    paypal_webhook_secret: str = "paypal_secret_demo_only_change_me"
    paypal_webhook_id: str = "WH-DEMO-0001"
    webhook_tolerance_seconds: int = 300

    # Checkout sessions
    checkout_session_ttl_minutes: int = 30
    session_sweep_interval_seconds: int = 60

    # Reconciliation
    max_transition_attempts: int = 3

    # Idempotency ledger
    idempotency_wait_seconds: float = 5.0
    idempotency_poll_interval_seconds: float = 0.05
    idempotency_reservation_ttl_seconds: int = 60
    idempotency_retention_days: int = 30
    idempotency_reap_interval_minutes: int = 60

    # Broadcast
    subscriber_queue_size: int = 100
    stream_heartbeat_seconds: float = 15.0

    # Database
    database_path: str = "./orderflow.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
