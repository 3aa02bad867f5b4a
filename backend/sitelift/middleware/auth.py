"""API key authentication for operator endpoints.

Operators authenticate with the admin API key in the ``x-api-key`` header.
Keys are compared as SHA256 digests in constant time.
"""
import hashlib
import hmac
from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader
from typing import Optional

from sitelift.config import get_settings

# API key header
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


def hash_api_key(api_key: str) -> str:
    """
    Hash an API key using SHA256.

    Args:
        api_key: Plain text API key

    Returns:
        SHA256 hex digest of the API key
    """
    return hashlib.sha256(api_key.encode()).hexdigest()


def verify_api_key(api_key: str, expected_key: str) -> bool:
    """Constant-time comparison of a presented key against the configured one."""
    return hmac.compare_digest(hash_api_key(api_key), hash_api_key(expected_key))


async def require_admin_key(
    api_key: Optional[str] = Security(api_key_header)
) -> str:
    """
    Dependency guarding operator routes.

    Usage:
        @router.post("/optimizer/{restaurant_id}/toggle")
        def toggle(..., _: str = Depends(require_admin_key)):
            ...

    Raises:
        HTTPException: 401 if the API key is missing or wrong
    """
    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not verify_api_key(api_key, get_settings().admin_api_key):
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    return api_key
