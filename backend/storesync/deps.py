"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"

    # Shared secret the storefront platform signs webhook payloads with
    WEBHOOK_SHARED_SECRET: str = ""
    STORE_API_VERSION: str = "2024-07"

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    # Outbound request budget per tenant (platform allows ~2 req/s sustained)
    RATE_LIMIT_REQUESTS: int = 40
    RATE_LIMIT_WINDOW_SECONDS: float = 20.0

    # Backoff for throttling and transient failures
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0
    RETRY_JITTER: float = 0.25
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Polling
    POLL_PAGE_SIZE: int = 50
    POLL_MAX_PAGES: int = 200  # safety cap per resource run
    POLL_CONCURRENCY: int = 10  # tenants synced in parallel per cycle
    FULL_SYNC_LOOKBACK_DAYS: Optional[int] = None  # None = everything the platform returns

    # Webhook delivery bookkeeping
    WEBHOOK_DEDUP_RETENTION_HOURS: int = 72
    WEBHOOK_REPROCESS_AFTER_MINUTES: int = 10
    WEBHOOK_REPROCESS_BATCH_SIZE: int = 200

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard operator endpoints (sync status, manual sync) with the admin key.

    Token issuance lives outside this service; operators call these endpoints
    with the shared admin key.
    """
    if not x_admin_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    if not hmac.compare_digest(x_admin_key.encode("utf-8"), settings.ADMIN_SECRET_KEY.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
