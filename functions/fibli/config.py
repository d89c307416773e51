"""
Configuration and settings for the story backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service and worker."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Database (Postgres expected)
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")

    # S3-compatible object storage for images
    s3_endpoint: Optional[str] = Field(default=None, env="S3_ENDPOINT")
    s3_region: Optional[str] = Field(default=None, env="S3_REGION")
    s3_bucket: Optional[str] = Field(default=None, env="S3_BUCKET")
    s3_public_base_url: Optional[str] = Field(
        default=None, env="S3_PUBLIC_BASE_URL"
    )
    aws_access_key_id: Optional[str] = Field(
        default=None, env="AWS_ACCESS_KEY_ID"
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, env="AWS_SECRET_ACCESS_KEY"
    )

    # Image generation (DeepAI text2img)
    deepai_api_key: Optional[str] = Field(default=None, env="DEEPAI_API_KEY")
    deepai_endpoint: str = Field(
        default="https://api.deepai.org/api/text2img", env="DEEPAI_ENDPOINT"
    )

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )

    # Queue and entitlement counters (Redis)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_queue_key: str = Field(default="fibli:image_jobs", env="REDIS_QUEUE_KEY")
    redis_ledger_prefix: str = Field(
        default="fibli:ledger", env="REDIS_LEDGER_PREFIX"
    )

    # Image persistence
    image_fetch_timeout_seconds: float = Field(
        default=30.0, env="IMAGE_FETCH_TIMEOUT_SECONDS"
    )
    image_max_retries: int = Field(default=3, env="IMAGE_MAX_RETRIES")
    image_retry_base_delay_seconds: float = Field(
        default=1.0, env="IMAGE_RETRY_BASE_DELAY_SECONDS"
    )
    image_retry_jitter_seconds: float = Field(
        default=0.0, env="IMAGE_RETRY_JITTER_SECONDS"
    )
    image_job_lock_timeout_seconds: float = Field(
        default=900.0, env="IMAGE_JOB_LOCK_TIMEOUT_SECONDS"
    )

    # Entitlements
    free_generation_limit: int = Field(default=1, env="FREE_GENERATION_LIMIT")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
