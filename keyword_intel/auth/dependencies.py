"""
Owner resolution for the keyword endpoints.

Every request is attributed to one owner: the ``sub`` of its Supabase
bearer token, or the configured dev owner when auth is disabled.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import get_auth_config
from .jwt import JWTError, verify_supabase_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Owner:
    """Tenant an analysis, website and quota belong to."""
    id: str
    email: Optional[str] = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Owner:
    """
    Raises:
        HTTPException 401: Missing or invalid bearer token
    """
    config = get_auth_config()
    if not config.auth_enabled:
        return Owner(id=config.dev_owner_id, email="dev@localhost")

    if credentials is None:
        raise _unauthorized("Not authenticated")

    try:
        claims = verify_supabase_token(credentials.credentials)
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise _unauthorized(str(e))

    return Owner(id=claims["sub"], email=claims.get("email"))
