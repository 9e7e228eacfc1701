"""
Monthly Analysis Quota

Counts analyses an owner created since the start of the current calendar
month (local server clock) and compares against the owner's plan.
A plan allowance of -1 means unlimited.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from keyword_intel.database.repository import AnalysisStore

logger = logging.getLogger(__name__)

UNLIMITED = -1
FREE_PLAN = "free"


def start_of_month(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def start_of_next_month(now: datetime) -> datetime:
    first = start_of_month(now)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


@dataclass
class QuotaSnapshot:
    """Usage against the monthly allowance. Derived, never stored."""
    used: int
    limit: int
    plan_name: str
    period_start: datetime
    reset_date: datetime

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> Optional[int]:
        """None when unlimited."""
        if self.is_unlimited:
            return None
        return max(0, self.limit - self.used)

    @property
    def allowed(self) -> bool:
        return self.is_unlimited or self.remaining > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "isUnlimited": self.is_unlimited,
            "planName": self.plan_name,
            "resetDate": self.reset_date.isoformat(),
        }


class QuotaGate:
    """
    Admission check for new analyses. Read-only.

    The count and the later insert are separate transactions, so two
    concurrent requests at the boundary may both be admitted. Callers
    that need strict enforcement pass the snapshot's limit to
    ``AnalysisStore.create(monthly_limit=...)``.
    """

    def __init__(self, store: AnalysisStore, default_allowance: int = 3):
        self.store = store
        self.default_allowance = default_allowance

    def resolve_plan(self, owner_id: str) -> Tuple[str, int]:
        """(plan name, monthly allowance) with the free plan as fallback."""
        plan_name, allowance = self.store.get_plan(owner_id)
        if allowance is None:
            allowance = self.default_allowance
        return plan_name or FREE_PLAN, allowance

    def check_admission(self, owner_id: str, now: Optional[datetime] = None) -> QuotaSnapshot:
        now = now or datetime.now()
        period_start = start_of_month(now)
        plan_name, allowance = self.resolve_plan(owner_id)
        used = self.store.count_created_since(owner_id, period_start)

        snapshot = QuotaSnapshot(
            used=used,
            limit=allowance,
            plan_name=plan_name,
            period_start=period_start,
            reset_date=start_of_next_month(now),
        )
        logger.debug(
            f"Quota for {owner_id}: {used}/{'unlimited' if snapshot.is_unlimited else allowance} "
            f"({plan_name})"
        )
        return snapshot
