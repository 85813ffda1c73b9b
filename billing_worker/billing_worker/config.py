"""Worker-layer configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from billing_engine.retry import RetryPolicy


class WorkerSettings(BaseSettings):
    """Settings for the sweeps and their outbound collaborators.

    All values can be overridden via environment variables prefixed with
    ``WORKER_`` (e.g. ``WORKER_EXECUTION_SERVICE_URL=https://...``) or
    through a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Delegated-transfer execution service.
    execution_service_url: str = "http://localhost:8081"
    execution_api_key: SecretStr | None = None
    execution_timeout: float = Field(default=30.0, gt=0.0)
    execution_connect_retries: int = Field(default=2, ge=0)

    # Notification service.
    notification_service_url: str = "http://localhost:8082"
    notification_api_key: SecretStr | None = None
    notification_timeout: float = Field(default=10.0, gt=0.0)
    notification_retries: int = Field(default=2, ge=0)
    notification_retry_base_delay: float = Field(default=0.5, gt=0.0)

    # Phase-2 invoices younger than this are left to the settlement that
    # created the payment.
    invoice_grace_minutes: int = Field(default=15, ge=0)

    def execution_connect_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.execution_connect_retries)

    def notification_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.notification_retries,
            base_delay=self.notification_retry_base_delay,
        )


def load_worker_settings(**overrides: object) -> WorkerSettings:
    """Load worker settings from environment, with optional overrides for testing."""
    return WorkerSettings(**overrides)  # type: ignore[arg-type]
