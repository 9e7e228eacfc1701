"""
Keyword Intelligence - Data Collection Package

- client: DataForSEO API (page HTML, ranked keywords, keyword ideas)
- locations: country to DataForSEO market resolution
- normalizer: provider items to one keyword shape, seed derivation
- orchestrator: the staged analysis job
"""

from .client import DataForSEOClient, RetryConfig, calculate_labs_cost
from .locations import resolve_market, normalize_country
from .normalizer import NormalizedKeyword, normalize, extract_seed_keywords
from .orchestrator import AnalysisJob, KeywordProvider, extract_domain

__all__ = [
    # Client
    "DataForSEOClient",
    "RetryConfig",
    "calculate_labs_cost",

    # Markets
    "resolve_market",
    "normalize_country",

    # Normalization
    "NormalizedKeyword",
    "normalize",
    "extract_seed_keywords",

    # Job
    "AnalysisJob",
    "KeywordProvider",
    "extract_domain",
]
