"""Caixinha Governance — Application configuration via environment variables."""

from __future__ import annotations

from decimal import Decimal

from pydantic_settings import BaseSettings


class GovernanceSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (record store) ──────────────────────────────
    postgres_user: str = "caixinha"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "caixinha_governance"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: str = ""

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Record store ───────────────────────────────────────────
    store_timeout_seconds: float = 5.0
    optimistic_max_attempts: int = 5
    optimistic_backoff_seconds: float = 0.01

    # ── Permission resolver ────────────────────────────────────
    permission_cache_ttl_seconds: float = 30.0
    permission_cache_max_entries: int = 10_000

    # ── Bank validation ────────────────────────────────────────
    bank_validation_ttl_hours: int = 24

    # ── Disputes ───────────────────────────────────────────────
    dispute_window_days: int = 7
    default_quorum_threshold: Decimal = Decimal("0.51")

    # ── Loans ──────────────────────────────────────────────────
    loan_max_installments: int = 60

    # ── Notifications ──────────────────────────────────────────
    notification_webhook_url: str = ""
    notification_timeout_seconds: float = 5.0

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = GovernanceSettings()
