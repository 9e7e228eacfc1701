"""
Keyword Intelligence Errors

Every error the pipeline raises derives from KeywordIntelError so the API
layer can map the whole family to HTTP responses in one place.
"""

from typing import Optional


class KeywordIntelError(Exception):
    """Base class for all keyword intelligence errors."""
    pass


# =============================================================================
# ADMISSION ERRORS (no record is created)
# =============================================================================

class ValidationError(KeywordIntelError):
    """Malformed input parameters (bad URL, unsupported country code)."""
    pass


class QuotaExceeded(KeywordIntelError):
    """Monthly analysis allowance is used up."""

    def __init__(self, used: int, limit: int):
        super().__init__(
            f"Monthly analysis limit reached ({used}/{limit}). "
            "Upgrade your plan or wait for the next period."
        )
        self.used = used
        self.limit = limit


class SubjectNotFound(KeywordIntelError):
    """Website does not exist or belongs to another owner."""
    pass


# =============================================================================
# RECORD ERRORS
# =============================================================================

class AnalysisNotFound(KeywordIntelError):
    """Analysis does not exist or belongs to another owner."""
    pass


class NotCancellable(KeywordIntelError):
    """Analysis already reached completed or failed."""
    pass


class AnalysisNotActive(KeywordIntelError):
    """A job write was refused because the record is no longer active."""
    pass


class PersistenceError(KeywordIntelError):
    """The store could not complete a read or write."""
    pass


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(KeywordIntelError):
    """Upstream provider returned a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class ProviderTimeout(ProviderError):
    """No response from the provider within the configured timeout."""
    pass


class MalformedProviderItem(KeywordIntelError):
    """A single provider item that cannot be normalized. Never escapes the normalizer."""
    pass
