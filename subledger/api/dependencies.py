"""
FastAPI Dependencies - Caller identity, admin key and shared services.

NO DICTIONARIES - All dependencies return typed objects.

User identity is established upstream; the identity middleware forwards the
authenticated user id as X-User-Id. Admin endpoints require X-Admin-Key.
"""

import secrets
from uuid import UUID

from fastapi import Header, HTTPException, Request, status
from structlog import get_logger

from subledger.config import settings
from subledger.exceptions import AuthenticationError
from subledger.services.billing_client import StoreClients
from subledger.services.normalizer import Normalizers
from subledger.workers.registry import Workers

logger = get_logger(__name__)


# ============================================================================
# Caller identity
# ============================================================================


def parse_user_id(x_user_id: str | None) -> UUID:
    """
    Parse the forwarded user id.

    Raises:
        AuthenticationError: Missing or not a UUID
    """
    if not x_user_id:
        raise AuthenticationError("Missing X-User-Id header")
    try:
        return UUID(x_user_id)
    except ValueError as exc:
        raise AuthenticationError("Invalid X-User-Id header") from exc


async def get_current_user_id(
    x_user_id: str | None = Header(None, description="Authenticated user id"),
) -> UUID:
    """
    FastAPI dependency for the authenticated user.

    Usage:
        @router.get("/v1/subscriptions")
        async def list_subscriptions(user_id: UUID = Depends(get_current_user_id)):
            ...

    Raises:
        HTTPException 401 if the header is missing or invalid
    """
    try:
        return parse_user_id(x_user_id)
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
        ) from exc


# ============================================================================
# Admin key
# ============================================================================


async def require_admin_key(
    x_admin_key: str | None = Header(None, description="Admin API key"),
) -> None:
    """
    FastAPI dependency guarding admin endpoints.

    Raises:
        HTTPException 503 if no admin key is configured
        HTTPException 401 if the key is missing or wrong
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API not configured",
        )
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        logger.warning("admin_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# ============================================================================
# Process-wide services (built in the lifespan)
# ============================================================================


def get_store_clients(request: Request) -> StoreClients:
    clients: StoreClients = request.app.state.store_clients
    return clients


def get_normalizers(request: Request) -> Normalizers:
    normalizers: Normalizers = request.app.state.normalizers
    return normalizers


def get_workers(request: Request) -> Workers:
    workers: Workers | None = getattr(request.app.state, "workers", None)
    if workers is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workers not available",
        )
    return workers
