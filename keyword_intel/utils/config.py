"""
Service settings.

Environment variables override the .env file, which overrides the
defaults below. Names are matched case-insensitively.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Provider credentials, analysis limits, quota and timeouts."""

    # DataForSEO
    DATAFORSEO_LOGIN: str = ""
    DATAFORSEO_PASSWORD: str = ""

    # Runtime
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Market used when a request names none
    DEFAULT_COUNTRY: str = "FR"
    DEFAULT_LANGUAGE: str = "fr"

    # Limits
    RANKED_KEYWORDS_LIMIT: int = 900
    SUGGESTIONS_LIMIT: int = 100
    SEED_KEYWORD_CAP: int = 200
    MAX_CONCURRENT_JOBS: int = 4

    # Quota
    DEFAULT_MONTHLY_ANALYSES: int = 3
    STRICT_QUOTA: bool = False

    # Timeouts
    API_TIMEOUT: int = 60
    JOB_TIMEOUT: int = 600
    STALE_JOB_MINUTES: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()
