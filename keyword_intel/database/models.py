"""
SQLAlchemy Models for the Keyword Intelligence Engine

Design Principles:
1. Store raw API responses (debugging, audit)
2. Normalize keyword rows (querying)
3. One terminal transition per analysis (status is authoritative)

Websites, subscriptions and plans are owned by the surrounding product;
they are mapped here read-only so the pipeline can resolve ownership and
monthly allowances.
"""

import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text,
    ForeignKey, Enum, Index, CheckConstraint, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests and local dev)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# Column widths the normalizer checks provider values against
KEYWORD_LENGTH = 500
URL_LENGTH = 2048
DOMAIN_LENGTH = 255
COMPETITION_LEVEL_LENGTH = 20
INTENT_LENGTH = 50


def generate_id() -> str:
    return str(uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class AnalysisStatus(enum.Enum):
    """Status of a keyword analysis"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses from which a job may still write or be cancelled
ACTIVE_STATUSES = (AnalysisStatus.PENDING, AnalysisStatus.PROCESSING)
TERMINAL_STATUSES = (AnalysisStatus.COMPLETED, AnalysisStatus.FAILED, AnalysisStatus.CANCELLED)


class KeywordType(enum.Enum):
    """Where a keyword row came from"""
    RANKED = "ranked"            # Site already ranks for it
    SUGGESTION = "suggestion"    # Related idea derived from ranked seeds


# =============================================================================
# COLLABORATOR TABLES
# =============================================================================

class Website(Base):
    """Websites registered by owners"""
    __tablename__ = "websites"

    id = Column(String(36), primary_key=True, default=generate_id)
    owner_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255))
    url = Column(String(2048), nullable=False)

    created_at = Column(DateTime, default=datetime.now)


class SubscriptionPlan(Base):
    """Plan catalogue: -1 analyses per month means unlimited"""
    __tablename__ = "subscription_plans"

    name = Column(String(50), primary_key=True)
    analyses_per_month = Column(Integer, nullable=False, default=3)


class Subscription(Base):
    """Owner to plan mapping"""
    __tablename__ = "subscriptions"

    owner_id = Column(String(36), primary_key=True)
    plan = Column(String(50), ForeignKey("subscription_plans.name"), nullable=False)

    created_at = Column(DateTime, default=datetime.now)


# =============================================================================
# ANALYSIS TABLES
# =============================================================================

class AnalysisRecord(Base):
    """One keyword analysis job and its lifecycle"""
    __tablename__ = "keyword_analyses"

    id = Column(String(36), primary_key=True, default=generate_id)
    owner_id = Column(String(36), nullable=False)
    subject_id = Column(String(36), ForeignKey("websites.id"), nullable=False)

    # Status
    status = Column(Enum(AnalysisStatus), nullable=False, default=AnalysisStatus.PENDING)
    progress = Column(Integer, nullable=False, default=0)

    # Immutable request parameters: country, language, limit
    input_parameters = Column(JSONType, nullable=False, default=dict)

    # Raw provider payloads
    ranked_keywords_response = Column(JSONType)
    keyword_suggestions_response = Column(JSONType)
    html_content_response = Column(JSONType)

    # Summary
    keyword_count = Column(Integer)
    estimated_cost = Column(Float)

    # Error tracking
    error_message = Column(Text)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    keywords = relationship(
        "KeywordRecord",
        back_populates="analysis",
        cascade="all, delete-orphan",
        order_by="KeywordRecord.position_index",
    )

    __table_args__ = (
        Index("idx_keyword_analyses_owner_created", "owner_id", "created_at"),
        Index("idx_keyword_analyses_status", "status"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_keyword_analyses_progress"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class KeywordRecord(Base):
    """One normalized keyword tied to an analysis"""
    __tablename__ = "analysis_keywords"

    id = Column(Integer, primary_key=True, autoincrement=True)
    analysis_id = Column(String(36), ForeignKey("keyword_analyses.id", ondelete="CASCADE"), nullable=False)
    position_index = Column(Integer, nullable=False, default=0)  # Output order within the analysis

    keyword = Column(String(KEYWORD_LENGTH), nullable=False)
    keyword_type = Column(Enum(KeywordType), nullable=False)

    # Metrics (never null)
    search_volume = Column(Integer, nullable=False, default=0)
    cpc = Column(Float, nullable=False, default=0)
    competition = Column(Float, nullable=False, default=0)
    competition_level = Column(String(COMPETITION_LEVEL_LENGTH), nullable=False, default="UNKNOWN")
    difficulty = Column(Float, nullable=False, default=0)
    etv = Column(Float, nullable=False, default=0)
    estimated_paid_cost = Column(Float, nullable=False, default=0)
    intent = Column(String(INTENT_LENGTH))
    monthly_searches = Column(JSONType, nullable=False, default=list)  # [{year, month, search_volume}]

    # Ranked only
    current_position = Column(Integer)
    previous_position = Column(Integer)
    is_up = Column(Boolean, nullable=False, default=False)
    is_down = Column(Boolean, nullable=False, default=False)
    is_new = Column(Boolean, nullable=False, default=False)
    url = Column(String(URL_LENGTH))
    domain = Column(String(DOMAIN_LENGTH))
    title = Column(Text)
    description = Column(Text)

    created_at = Column(DateTime, default=datetime.now)

    analysis = relationship("AnalysisRecord", back_populates="keywords")

    __table_args__ = (
        Index("idx_analysis_keywords_analysis", "analysis_id", "position_index"),
    )

    def to_dict(self) -> dict:
        return {
            "keyword": self.keyword,
            "type": self.keyword_type.value,
            "searchVolume": self.search_volume,
            "cpc": self.cpc,
            "competition": self.competition,
            "competitionLevel": self.competition_level,
            "difficulty": self.difficulty,
            "etv": self.etv,
            "estimatedPaidCost": self.estimated_paid_cost,
            "intent": self.intent,
            "monthlySearches": self.monthly_searches or [],
            "currentPosition": self.current_position,
            "previousPosition": self.previous_position,
            "isUp": bool(self.is_up),
            "isDown": bool(self.is_down),
            "isNew": bool(self.is_new),
            "url": self.url,
            "domain": self.domain,
            "title": self.title,
            "description": self.description,
        }
