"""
Pytest Configuration and Shared Fixtures

Provides an in-memory SQLite store, provider payloads shaped like
DataForSEO responses, and a scriptable fake provider.
"""

import pytest
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from keyword_intel.database.models import Subscription, SubscriptionPlan, Website
from keyword_intel.database.repository import AnalysisStore
from keyword_intel.database.session import build_session_factory, enable_sqlite_foreign_keys, init_db
from keyword_intel.utils.config import Settings

OWNER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_OWNER_ID = "22222222-2222-2222-2222-222222222222"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return AnalysisStore(session_factory)


@pytest.fixture
def add_website(session_factory):
    """Factory to register a website for an owner."""
    def _add(website_id: str = "site-1", owner_id: str = OWNER_ID, url: str = "https://www.example.fr/") -> str:
        with session_factory() as db:
            db.add(Website(id=website_id, owner_id=owner_id, name="Example", url=url))
            db.commit()
        return website_id
    return _add


@pytest.fixture
def subscribe(session_factory):
    """Factory to put an owner on a plan."""
    def _subscribe(owner_id: str, plan: str, analyses_per_month: Optional[int]):
        with session_factory() as db:
            if analyses_per_month is not None and db.get(SubscriptionPlan, plan) is None:
                db.add(SubscriptionPlan(name=plan, analyses_per_month=analyses_per_month))
                db.flush()
            db.add(Subscription(owner_id=owner_id, plan=plan))
            db.commit()
    return _subscribe


@pytest.fixture
def website(add_website):
    return add_website()


@pytest.fixture
def settings():
    return Settings(
        DATAFORSEO_LOGIN="test@example.com",
        DATAFORSEO_PASSWORD="secret",
        DEFAULT_MONTHLY_ANALYSES=3,
        JOB_TIMEOUT=5,
    )


# ============================================================================
# Provider Payload Fixtures
# ============================================================================

def ranked_item(keyword: str, volume: int = 1000, cpc: Optional[float] = 1.5, position: int = 3) -> Dict[str, Any]:
    """Ranked keyword item in the ranked_keywords/live shape."""
    keyword_info = {"search_volume": volume, "competition": 0.4, "competition_level": "MEDIUM"}
    if cpc is not None:
        keyword_info["cpc"] = cpc
    return {
        "keyword_data": {
            "keyword": keyword,
            "keyword_info": keyword_info,
            "keyword_properties": {"keyword_difficulty": 35},
            "search_intent_info": {"main_intent": "commercial"},
        },
        "ranked_serp_element": {
            "serp_item": {
                "rank_absolute": position,
                "url": "https://www.example.fr/chaussures",
                "domain": "www.example.fr",
                "etv": 120.5,
            },
        },
    }


def suggestion_item(keyword: str, volume: int = 500) -> Dict[str, Any]:
    """Keyword idea item in the keyword_ideas/live shape."""
    return {
        "keyword": keyword,
        "keyword_info": {"search_volume": volume, "cpc": 0.8, "competition": 0.2, "competition_level": "LOW"},
        "keyword_properties": {"keyword_difficulty": 12},
    }


@pytest.fixture
def ranked_batches():
    """One batch, two items: one fully populated, one without cpc."""
    return [{
        "target": "www.example.fr",
        "items": [
            ranked_item("chaussures running", volume=2400, cpc=1.2, position=4),
            ranked_item("basket homme", volume=880, cpc=None, position=12),
        ],
    }]


@pytest.fixture
def suggestion_batches():
    return [{"items": [suggestion_item("chaussures trail")]}]


def api_response(result: List[Dict[str, Any]], status_code: int = 20000) -> Dict[str, Any]:
    """Wrap result batches in a DataForSEO envelope."""
    return {
        "status_code": 20000,
        "status_message": "Ok.",
        "tasks": [{"status_code": status_code, "status_message": "Ok.", "result": result}],
    }


# ============================================================================
# Fake Provider
# ============================================================================

class FakeProvider:
    """
    Scriptable keyword provider.

    Each response may be a value or an exception instance to raise.
    """

    def __init__(self, html: Any = "<html></html>", ranked: Any = None, suggestions: Any = None):
        self.html = html
        self.ranked = ranked if ranked is not None else []
        self.suggestions = suggestions if suggestions is not None else []
        self.calls: List[tuple] = []

    @staticmethod
    def _reply(value):
        if isinstance(value, BaseException):
            raise value
        return value

    async def fetch_page_html(self, url):
        self.calls.append(("html", url))
        return self._reply(self.html)

    async def fetch_ranked_keywords(self, domain, country, limit, language=None):
        self.calls.append(("ranked", domain, country, limit))
        return self._reply(self.ranked)

    async def fetch_keyword_suggestions(self, seed_keywords, country, limit, language=None):
        self.calls.append(("suggestions", list(seed_keywords), country, limit))
        return self._reply(self.suggestions)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


@pytest.fixture
def fake_provider(ranked_batches, suggestion_batches):
    return FakeProvider(html="<html><title>Example</title></html>", ranked=ranked_batches, suggestions=suggestion_batches)


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
