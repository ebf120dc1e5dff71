"""
Application Settings

Environment-driven configuration for the lead ingestion service.
Values are read from the process environment (and an optional .env file)
and cached for the lifetime of the process via get_settings().
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Lead ingestion service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Runtime
    environment: str = "production"
    log_level: str = "INFO"
    use_json_logging: bool = False

    # Storage
    database_url: str = "sqlite:///./lead_ingestion.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Scheduler trigger
    cron_secret: Optional[str] = None

    # Meta platform
    meta_app_secret: Optional[str] = None
    meta_webhook_verify_token: Optional[str] = None
    meta_graph_api_version: str = "v19.0"
    meta_graph_timeout_seconds: float = 10.0

    # Lead processing
    lead_batch_size: int = Field(default=100, gt=0)
    lead_max_retries: int = Field(default=5, ge=0)
    lead_stale_processing_seconds: int = Field(default=300, gt=0)
    lead_processing_timeout_seconds: int = Field(default=60, gt=0)
    lead_processor_max_workers: int = Field(default=4, gt=0)
    lead_batch_time_budget_seconds: int = Field(default=240, gt=0)  # No new claims after this
    lead_task_soft_time_limit_seconds: int = Field(default=480, gt=0)
    lead_retry_backoff_seconds: int = Field(default=30, ge=0)
    lead_retry_backoff_max_seconds: int = Field(default=3600, ge=0)
    lead_processing_interval_seconds: int = Field(default=60, gt=0)
    lead_recent_errors_limit: int = Field(default=20, ge=0)
    lead_default_phone_country_code: str = "31"
    lead_apply_default_field_mappings: bool = True

    # Celery / Redis
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None
    celery_result_backend: Optional[str] = None

    @model_validator(mode="after")
    def _check_processing_limits(self) -> "Settings":
        # Leads are claimed right before they are worked on, so a lead within
        # its timeout never looks stale to recovery
        if self.lead_stale_processing_seconds <= self.lead_processing_timeout_seconds:
            raise ValueError(
                "LEAD_STALE_PROCESSING_SECONDS must be greater than "
                "LEAD_PROCESSING_TIMEOUT_SECONDS"
            )
        # The last claim of a pass plus its timeout must end before Celery interrupts the task
        if self.lead_batch_time_budget_seconds + self.lead_processing_timeout_seconds >= self.lead_task_soft_time_limit_seconds:
            raise ValueError(
                "LEAD_BATCH_TIME_BUDGET_SECONDS plus LEAD_PROCESSING_TIMEOUT_SECONDS must be "
                "less than LEAD_TASK_SOFT_TIME_LIMIT_SECONDS"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    def get_celery_broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    def get_celery_result_backend(self) -> str:
        return self.celery_result_backend or self.redis_url


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings"""
    return Settings()
