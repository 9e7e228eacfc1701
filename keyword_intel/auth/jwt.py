"""
Supabase access token verification.

Symmetric tokens (HS256/384/512) are checked against SUPABASE_JWT_SECRET.
Asymmetric ones are checked against the signing key published in the
project's JWKS, fetched once and cached by PyJWKClient.
"""

import logging
from functools import lru_cache
from typing import Any, Dict

import jwt
from jwt import PyJWKClient, PyJWTError

from .config import AuthConfig, get_auth_config

logger = logging.getLogger(__name__)

SYMMETRIC_ALGORITHMS = {"HS256", "HS384", "HS512"}

# PyJWT error -> message returned with the 401
DECODE_ERRORS = (
    (jwt.ExpiredSignatureError, "Token has expired"),
    (jwt.InvalidAudienceError, "Invalid token audience"),
    (jwt.InvalidSignatureError, "Invalid token signature"),
)


class JWTError(Exception):
    """The bearer token cannot identify an owner."""
    pass


@lru_cache(maxsize=4)
def get_jwks_client(jwks_url: str) -> PyJWKClient:
    return PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)


def get_verification_key(token: str, config: AuthConfig) -> Any:
    if config.jwt_algorithm in SYMMETRIC_ALGORITHMS:
        if not config.supabase_jwt_secret:
            raise JWTError("SUPABASE_JWT_SECRET is required for HMAC tokens")
        return config.supabase_jwt_secret

    if not config.jwks_url:
        raise JWTError(f"SUPABASE_URL is required for {config.jwt_algorithm} tokens")
    try:
        return get_jwks_client(config.jwks_url).get_signing_key_from_jwt(token).key
    except PyJWTError as e:
        raise JWTError(f"Could not resolve signing key: {e}") from e


def verify_supabase_token(token: str) -> Dict[str, Any]:
    """
    Decode a Supabase access token.

    The ``sub`` claim of the returned payload is the owner id every
    analysis is scoped to.

    Raises:
        JWTError: Bad signature, wrong audience, expired, or no ``sub``
    """
    config = get_auth_config()
    key = get_verification_key(token, config)

    try:
        claims = jwt.decode(token, key, algorithms=[config.jwt_algorithm], audience=config.jwt_audience)
    except PyJWTError as e:
        for error_type, message in DECODE_ERRORS:
            if isinstance(e, error_type):
                raise JWTError(message) from e
        raise JWTError(f"Malformed token: {e}") from e

    if not claims.get("sub"):
        raise JWTError("Token has no 'sub' claim")
    return claims
