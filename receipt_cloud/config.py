"""
Configuration and settings for the receipt backend layer.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the service and its gateways."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Managed backend project (e.g. https://xyz.supabase.co)
    project_url: Optional[str] = Field(default=None)

    # Table storage (Postgres expected)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible object storage
    storage_endpoint: Optional[str] = Field(default=None)
    storage_region: Optional[str] = Field(default=None)
    storage_bucket: str = Field(default="receipts")
    storage_public_base_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    # Set false for stores that answer 403 rather than 404 for missing keys
    storage_check_existing: bool = Field(default=True)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Session persistence: redis wins over a file, memory otherwise.
    # Each login gets its own slot, "{session_key}:{token}".
    redis_url: Optional[str] = Field(default=None)
    session_file: Optional[str] = Field(default=None)
    session_key: str = Field(default="current_user")

    # Serial issuance
    serial_conflict_policy: Literal["fallback", "retry"] = Field(default="fallback")
    serial_max_attempts: int = Field(default=3, ge=1)

    # Receipt status changes
    strict_status_transitions: bool = Field(default=False)

    def resolved_storage_endpoint(self) -> Optional[str]:
        if self.storage_endpoint:
            return self.storage_endpoint
        if self.project_url:
            return f"{self.project_url.rstrip('/')}/storage/v1/s3"
        return None

    def resolved_public_base_url(self) -> str:
        if self.storage_public_base_url:
            return self.storage_public_base_url.rstrip("/")
        if self.project_url:
            return f"{self.project_url.rstrip('/')}/storage/v1/object/public"
        return "https://example.test/storage/v1/object/public"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
