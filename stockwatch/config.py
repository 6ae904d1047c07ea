"""
Configuration settings for stockwatch.

Uses Pydantic Settings to load environment variables for the source database,
the downstream API, sync pacing, load thresholds, alerting and the in-memory
metrics store. Values can also be provided through a local `.env` file.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("busy", alias="DB_NAME")
    db_statement_timeout_ms: int = Field(30_000, ge=0, alias="DB_STATEMENT_TIMEOUT_MS")
    db_connect_timeout_s: int = Field(10, ge=1, alias="DB_CONNECT_TIMEOUT_S")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Downstream API
    api_endpoint: str = Field("http://localhost:8000/api/sync/busy", alias="API_ENDPOINT")
    api_timeout_seconds: float = Field(30.0, gt=0, alias="API_TIMEOUT_SECONDS")
    api_auth_header_name: Optional[str] = Field(None, alias="API_AUTH_HEADER_NAME")
    api_auth_header_value: Optional[str] = Field(None, alias="API_AUTH_HEADER_VALUE")

    # Sync loop
    polling_interval_seconds: float = Field(30.0, gt=0, alias="POLLING_INTERVAL_SECONDS")
    batch_size: int = Field(200, ge=1, alias="BATCH_SIZE")
    batch_pause_ms: int = Field(100, ge=0, alias="BATCH_PAUSE_MS")
    max_retries: int = Field(3, ge=0, alias="MAX_RETRIES")
    retry_base_delay_seconds: float = Field(1.0, ge=0, alias="RETRY_BASE_DELAY_SECONDS")
    compression_enabled: bool = Field(True, alias="COMPRESSION_ENABLED")
    compression_threshold_records: int = Field(50, ge=0, alias="COMPRESSION_THRESHOLD_RECORDS")
    change_tracking_enabled: bool = Field(True, alias="CHANGE_TRACKING_ENABLED")
    change_tracking_ack_on_delivery: bool = Field(True, alias="CHANGE_TRACKING_ACK_ON_DELIVERY")
    lookup_chunk_size: int = Field(2000, ge=1, alias="LOOKUP_CHUNK_SIZE")
    schema_retry_attempts: int = Field(3, ge=1, alias="SCHEMA_RETRY_ATTEMPTS")

    # Business hours gate (local time, end hour exclusive)
    business_hours_enabled: bool = Field(False, alias="BUSINESS_HOURS_ENABLED")
    business_hours_start: int = Field(9, ge=0, le=23, alias="BUSINESS_HOURS_START")
    business_hours_end: int = Field(18, ge=0, le=24, alias="BUSINESS_HOURS_END")

    # Load-adaptive pacing
    adaptive_interval_enabled: bool = Field(True, alias="ADAPTIVE_INTERVAL_ENABLED")
    cpu_threshold_percent: float = Field(70.0, gt=0, alias="CPU_THRESHOLD_PERCENT")
    memory_threshold_mb: float = Field(1000.0, gt=0, alias="MEMORY_THRESHOLD_MB")
    min_delay_seconds: float = Field(10.0, gt=0, alias="MIN_DELAY_SECONDS")
    max_delay_seconds: float = Field(300.0, gt=0, alias="MAX_DELAY_SECONDS")
    max_query_time_ms: float = Field(5000.0, gt=0, alias="MAX_QUERY_TIME_MS")

    # Alerting
    alert_cooldown_minutes: float = Field(10.0, ge=0, alias="ALERT_COOLDOWN_MINUTES")
    alert_sync_duration_ms: float = Field(30_000.0, alias="ALERT_SYNC_DURATION_MS")
    alert_data_retrieval_ms: float = Field(10_000.0, alias="ALERT_DATA_RETRIEVAL_MS")
    alert_transmission_ms: float = Field(15_000.0, alias="ALERT_TRANSMISSION_MS")
    alert_failed_batches: float = Field(1.0, alias="ALERT_FAILED_BATCHES")
    alert_cpu_percent: float = Field(90.0, alias="ALERT_CPU_PERCENT")
    alert_memory_mb: float = Field(2000.0, alias="ALERT_MEMORY_MB")
    alert_pending_changes: float = Field(5000.0, alias="ALERT_PENDING_CHANGES")
    alert_metric_window: int = Field(20, ge=1, alias="ALERT_METRIC_WINDOW")

    # Metrics store
    metrics_retention_hours: float = Field(24.0, gt=0, alias="METRICS_RETENTION_HOURS")
    metrics_max_samples: int = Field(10_000, ge=1, alias="METRICS_MAX_SAMPLES")
    metrics_cleanup_minutes: float = Field(30.0, gt=0, alias="METRICS_CLEANUP_MINUTES")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "Settings":
        if self.min_delay_seconds > self.max_delay_seconds:
            raise ValueError("MIN_DELAY_SECONDS must not exceed MAX_DELAY_SECONDS")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
