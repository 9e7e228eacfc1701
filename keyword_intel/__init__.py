"""
Keyword Intelligence Engine

Background pipeline that collects ranked keywords and suggestions for a
website from DataForSEO, normalizes them and exposes progress to polling
clients under a monthly per-owner quota.
"""

__version__ = "1.0.0"
