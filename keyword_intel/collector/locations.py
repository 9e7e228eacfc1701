"""
Market Resolution

Maps ISO country codes to DataForSEO location codes and picks the
language code the provider expects for that market.
"""

from typing import Dict, Optional, Tuple

from keyword_intel.exceptions import ValidationError

LOCATION_CODES: Dict[str, int] = {
    "CA": 2124,  # Canada
    "US": 2840,  # United States
    "FR": 2250,  # France
    "BE": 2056,  # Belgium
    "CH": 2756,  # Switzerland
    "GB": 2826,  # United Kingdom
    "DE": 2276,  # Germany
    "ES": 2724,  # Spain
    "IT": 2380,  # Italy
    "NL": 2528,  # Netherlands
}

COUNTRY_ALIASES = {"UK": "GB"}

# Single-language markets
DEFAULT_LANGUAGES: Dict[str, str] = {
    "US": "en",
    "FR": "fr",
    "GB": "en",
    "DE": "de",
    "ES": "es",
    "IT": "it",
    "NL": "nl",
}

# Bilingual markets: requested language if supported, else the fallback
BILINGUAL_MARKETS: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "CA": (("fr", "en"), "en"),
    "BE": (("fr", "nl"), "nl"),
    "CH": (("fr", "de"), "de"),
}


def normalize_country(country: str) -> str:
    """Upper-case and resolve aliases. Raises ValidationError for unsupported markets."""
    code = (country or "").strip().upper()
    code = COUNTRY_ALIASES.get(code, code)
    if code not in LOCATION_CODES:
        supported = ", ".join(sorted(LOCATION_CODES))
        raise ValidationError(f"Unsupported country code '{country}'. Supported: {supported}")
    return code


def resolve_market(country: str, language: Optional[str] = None) -> Tuple[int, str]:
    """
    Resolve a country (and optional requested language) to provider codes.

    Returns:
        (location_code, language_code)
    """
    code = normalize_country(country)
    requested = (language or "").strip().lower()

    if code in BILINGUAL_MARKETS:
        supported, fallback = BILINGUAL_MARKETS[code]
        language_code = requested if requested in supported else fallback
    else:
        language_code = DEFAULT_LANGUAGES[code]

    return LOCATION_CODES[code], language_code
