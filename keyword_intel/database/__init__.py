"""
Keyword Intelligence Database Layer

Usage:
    from keyword_intel.database import (
        init_db, get_db_context,
        AnalysisRecord, KeywordRecord, AnalysisStatus,
        AnalysisStore,
    )
"""

from .models import (
    Base,
    AnalysisStatus,
    KeywordType,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Website,
    Subscription,
    SubscriptionPlan,
    AnalysisRecord,
    KeywordRecord,
)
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    build_session_factory,
    get_session_factory,
    get_db_context,
    init_db,
    check_db_connection,
)
from .repository import AnalysisStore, INTERRUPTED_MESSAGE, TIMEOUT_MESSAGE

__all__ = [
    # Models
    "Base",
    "AnalysisStatus",
    "KeywordType",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "Website",
    "Subscription",
    "SubscriptionPlan",
    "AnalysisRecord",
    "KeywordRecord",

    # Session
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "build_session_factory",
    "get_session_factory",
    "get_db_context",
    "init_db",
    "check_db_connection",

    # Repository
    "AnalysisStore",
    "INTERRUPTED_MESSAGE",
    "TIMEOUT_MESSAGE",
]
