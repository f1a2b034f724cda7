"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Allow extra env vars without failing
    )

    # App
    app_name: str = "NDR Resolution Engine"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    # Secret key MUST be provided via environment (e.g. SECRET_KEY in .env)
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # API
    api_prefix: str = "/api/v1"
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Database
    database_url: str = "sqlite+aiosqlite:///./ndr.db"
    db_ssl_mode: str = "disable"  # "require" for production
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Multi-tenancy
    default_tenant_id: str = "default"

    # Classification provider
    llm_provider: str = "gemini"  # gemini | on-prem | disabled
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    onprem_llm_url: str = "http://localhost:11434"
    onprem_llm_model: str = "llama3"
    classifier_timeout_seconds: float = 3.0
    classifier_max_retries: int = 1

    # Detection
    ndr_failure_statuses: list[str] = [
        "undelivered",
        "ndr",
        "delivery_failed",
        "failed_attempt",
        "refused",
        "customer_refused",
        "unreachable",
        "customer_unavailable",
        "consignee_unavailable",
        "address_issue",
    ]
    resolution_window_hours: int = 48
    duplicate_window_hours: int = 24

    # Address update magic links
    address_token_ttl_hours: int = 48
    address_update_base_url: str = "https://track.example.com/public/update-address"
    address_response_window_hours: int = 24

    # Action execution
    executor_max_retries: int = 3
    executor_backoff_seconds: int = 60
    channel_timeout_seconds: float = 10.0

    # Deadline sweeper
    sweeper_enabled: bool = True
    sweeper_interval_seconds: int = 15 * 60
    sweeper_batch_size: int = 100

    # Job workers
    job_workers_enabled: bool = True
    job_worker_count: int = 4
    job_poll_interval_seconds: float = 5.0
    job_batch_size: int = 10
    job_claim_lease_seconds: int = 300

    # RTO
    rto_booking_max_attempts: int = 5
    rto_booking_backoff_seconds: int = 300
    rto_expected_return_days: int = 7

    # Workflow defaults (YAML). Empty means the packaged defaults.
    workflow_defaults_path: Optional[str] = None

    @field_validator("classifier_timeout_seconds")
    @classmethod
    def _cap_classifier_timeout(cls, value: float) -> float:
        # Classification sits on the detection path and must stay short
        return min(value, 3.0)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
