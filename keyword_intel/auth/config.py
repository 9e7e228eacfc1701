"""
Auth settings.

Read from the environment (SUPABASE_URL, SUPABASE_JWT_SECRET,
JWT_ALGORITHM, JWT_AUDIENCE, AUTH_ENABLED, DEV_OWNER_ID).
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings

# Owner of every request when AUTH_ENABLED=false
DEV_OWNER_ID = "00000000-0000-0000-0000-000000000001"


class AuthConfig(BaseSettings):
    """How bearer tokens are verified, or whether they are at all."""

    supabase_url: str = ""
    supabase_jwt_secret: str = ""

    # HS* tokens use the shared secret, ES*/RS* tokens the project JWKS
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "authenticated"

    auth_enabled: bool = True
    dev_owner_id: str = DEV_OWNER_ID

    class Config:
        env_file = ".env"
        extra = "ignore"
        case_sensitive = False

    @property
    def jwks_url(self) -> Optional[str]:
        if not self.supabase_url:
            return None
        return f"{self.supabase_url.rstrip('/')}/auth/v1/.well-known/jwks.json"


@lru_cache
def get_auth_config() -> AuthConfig:
    return AuthConfig()
