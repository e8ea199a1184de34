"""
Internal Service Authentication

API key authentication for the payout and relay workers that flip the
processed flag on withdrawals and bridges.

Settings:
    INTERNAL_API_KEY: Accepted key. When unset, internal auth is disabled
        (development only; validate_production_config flags it).

Usage:
    @router.post("/withdrawals/{record_id}/processed")
    async def mark_withdrawal_processed(
        record_id: str,
        service: InternalService = Depends(require_internal_service)
    ):
        ...

Headers:
    X-Internal-Api-Key: <api_key>
    X-Service-Name: <service_name> (optional, for logging)
"""

import secrets
import logging
from typing import Optional
from dataclasses import dataclass

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import APIKeyHeader

from config import get_settings

logger = logging.getLogger(__name__)

# Header names
API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"


@dataclass
class InternalService:
    """Represents an authenticated internal service"""
    name: str
    api_key_hash: str  # Last 8 chars of key for logging
    is_authenticated: bool = True


def validate_internal_key(api_key: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison against the configured key."""
    if not api_key or not expected:
        return False
    return secrets.compare_digest(api_key, expected)


# FastAPI dependency for API key header
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def get_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> InternalService:
    """
    FastAPI dependency to authenticate internal service requests.

    Raises:
        HTTPException: 401 if a key is configured and the header is missing or wrong
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER, "unknown")
    settings = getattr(request.app.state, "settings", None) or get_settings()
    expected = settings.INTERNAL_API_KEY

    if not expected:
        return InternalService(name=service_name, api_key_hash="", is_authenticated=False)

    if not api_key:
        logger.warning(f"Missing API key from service: {service_name}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not validate_internal_key(api_key, expected):
        logger.warning(f"Invalid API key from service: {service_name}, key ending: ...{api_key[-8:]}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    logger.info(f"Internal service authenticated: {service_name}")

    return InternalService(
        name=service_name,
        api_key_hash=f"...{api_key[-8:]}"
    )


# Convenience alias - use directly as dependency
require_internal_service = get_internal_service
