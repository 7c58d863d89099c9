"""Dependency providers and settings management."""

from functools import lru_cache
from uuid import UUID

from fastapi import Depends, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import Tenant


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis Configuration (ARQ queue)
    REDIS_URL: str = "redis://localhost:6379/0"
    ARQ_QUEUE_NAME: str = "arq:attribution"

    # Run controller
    ATTRIBUTION_MAX_WORKERS: int = 4
    ATTRIBUTION_STALE_PROCESSING_MINUTES: int = 30
    ATTRIBUTION_MAX_RETRIES: int = 3
    ATTRIBUTION_RETRY_BASE_SECONDS: float = 0.5
    # Lookback used by the hourly run when a tenant has no completed run yet
    ATTRIBUTION_DEFAULT_LOOKBACK_HOURS: int = 24
    ATTRIBUTION_RECENT_DAYS: int = 3
    ATTRIBUTION_UNATTRIBUTED_MAX_AGE_HOURS: int = 72
    ATTRIBUTION_UNATTRIBUTED_BATCH_SIZE: int = 50

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_tenant(tenant_id: UUID, db: Session = Depends(get_db)) -> Tenant:
    """Resolve the path tenant or 404.

    Every attribution endpoint is tenant-scoped; nothing is readable without
    an existing tenant row.
    """
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant
