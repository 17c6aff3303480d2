"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .telemetry import set_tenant_context


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis Configuration (arq background jobs)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Error tracking
    SENTRY_DSN: Optional[str] = None

    # Attribution runs
    ATTRIBUTION_MAX_WORKERS: int = 1           # Per-run conversion worker pool size
    ATTRIBUTION_DEFAULT_WINDOW_HOURS: int = 72  # Used when a run config omits the window
    ATTRIBUTION_MAX_ERROR_SUMMARIES: int = 20   # Error messages kept on the run row
    ATTRIBUTION_RUN_LEASE_SECONDS: int = 900    # A running run not renewed for this long can be taken over

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-ID")) -> int:
    """Resolve the tenant for the current request.

    Authentication middleware sets X-Tenant-ID after validating the caller;
    this dependency only parses it.
    """
    if not x_tenant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing tenant")
    try:
        tenant_id = int(x_tenant_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid tenant ID")
    if tenant_id <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid tenant ID")
    set_tenant_context(tenant_id)
    return tenant_id
