"""
Authentication and quota.

- Supabase JWT validation and the get_current_owner dependency
- Monthly analysis quota
"""

from .config import AuthConfig, get_auth_config
from .dependencies import Owner, get_current_owner
from .jwt import JWTError, verify_supabase_token
from .quota import QuotaGate, QuotaSnapshot, UNLIMITED

__all__ = [
    "AuthConfig",
    "get_auth_config",
    "Owner",
    "get_current_owner",
    "JWTError",
    "verify_supabase_token",
    "QuotaGate",
    "QuotaSnapshot",
    "UNLIMITED",
]
