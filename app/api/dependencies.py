"""Shared FastAPI dependencies for admin access and the sync engine."""

import hashlib
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.services.sync_service import SyncService

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def hash_api_key(key: str) -> str:
    """Hash an API key with the configured pepper."""
    return hashlib.sha256(f"{settings.API_KEY_PEPPER}:{key}".encode()).hexdigest()


def require_admin(x_api_key: str | None = Depends(api_key_header)) -> None:
    """Validate the admin API key sent in X-API-Key."""
    if not settings.ADMIN_API_KEY_HASH:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured",
        )
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
        )
    if not secrets.compare_digest(hash_api_key(x_api_key), settings.ADMIN_API_KEY_HASH):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


def get_sync_service(request: Request) -> SyncService:
    """Return the sync engine built at startup."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not started",
        )
    return service
