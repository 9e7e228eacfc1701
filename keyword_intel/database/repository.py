"""
Repository Layer - Analysis Store

Persistence interface for keyword analyses and their keyword rows.

Every write a running job makes is a conditional UPDATE guarded by
``status IN (pending, processing)``. Once an analysis reaches completed,
failed or cancelled, later writes are refused instead of applied, so a
user cancellation always wins over a late job write.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from keyword_intel.exceptions import (
    AnalysisNotActive,
    AnalysisNotFound,
    NotCancellable,
    PersistenceError,
    QuotaExceeded,
    SubjectNotFound,
)
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AnalysisRecord,
    AnalysisStatus,
    KeywordRecord,
    Subscription,
    SubscriptionPlan,
    Website,
)
from .session import SessionFactory, get_db_context

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Analysis timed out"
INTERRUPTED_MESSAGE = "Analysis interrupted"

# Raw payload keys accepted by finalize() and the columns they land in
PAYLOAD_COLUMNS = {
    "ranked": "ranked_keywords_response",
    "suggestions": "keyword_suggestions_response",
    "html": "html_content_response",
}


class AnalysisStore:
    """
    Durable storage for analyses.

    Usage:
        store = AnalysisStore()
        record = store.create(owner_id, website_id, {"country": "FR", "language": "fr", "limit": 900})
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with get_db_context(self._session_factory) as db:
                yield db
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error: {e}") from e

    # =========================================================================
    # ANALYSIS LIFECYCLE
    # =========================================================================

    def create(
        self,
        owner_id: str,
        subject_id: str,
        params: Dict[str, Any],
        monthly_limit: Optional[int] = None,
        period_start: Optional[datetime] = None,
    ) -> AnalysisRecord:
        """
        Create a pending analysis at progress 0.

        When ``monthly_limit`` is given the owner's usage since
        ``period_start`` is counted inside the same transaction, and the
        insert is refused with QuotaExceeded if the allowance is used up.
        """
        with self._session() as db:
            if monthly_limit is not None and monthly_limit >= 0:
                self._lock_owner(db, owner_id)
                used = self._count_since(db, owner_id, period_start)
                if used >= monthly_limit:
                    raise QuotaExceeded(used, monthly_limit)

            record = AnalysisRecord(
                owner_id=owner_id,
                subject_id=subject_id,
                status=AnalysisStatus.PENDING,
                progress=0,
                input_parameters=dict(params),
                created_at=datetime.now(),
            )
            db.add(record)
            db.flush()

            logger.info(f"Created analysis {record.id} for website {subject_id}")
            return record

    def update_progress(
        self,
        analysis_id: str,
        progress: int,
        status: Optional[AnalysisStatus] = None,
    ) -> bool:
        """
        Advance progress (and optionally status) of an active analysis.

        Returns False when the analysis is already terminal and the write
        was refused.
        """
        if not 0 <= progress < 100:
            raise ValueError(f"progress must be in [0, 100), got {progress}")
        if status is not None and status not in ACTIVE_STATUSES:
            raise ValueError(f"update_progress cannot set terminal status {status.value}")

        values: Dict[str, Any] = {"progress": progress}
        if status is not None:
            values["status"] = status
            if status == AnalysisStatus.PROCESSING:
                values["started_at"] = func.coalesce(AnalysisRecord.started_at, datetime.now())

        with self._session() as db:
            result = db.execute(
                update(AnalysisRecord)
                .where(AnalysisRecord.id == analysis_id)
                .where(AnalysisRecord.status.in_(ACTIVE_STATUSES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

        if not applied:
            logger.info(f"[{analysis_id}] Progress {progress} refused, analysis no longer active")
        return applied

    def finalize(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        raw_payloads: Optional[Dict[str, Any]] = None,
        summary: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Move an active analysis to a terminal status.

        Args:
            analysis_id: Analysis to finalize
            status: COMPLETED, FAILED or CANCELLED
            raw_payloads: Provider responses keyed by ranked, suggestions, html
            summary: keyword_count and estimated_cost (completed only)
            error_message: Failure reason (failed only)

        Returns:
            True if this call performed the terminal transition, False if
            another terminal transition happened first
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"finalize requires a terminal status, got {status.value}")

        values: Dict[str, Any] = {"status": status, "completed_at": datetime.now()}

        for key, payload in (raw_payloads or {}).items():
            column = PAYLOAD_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Unknown payload key: {key}")
            values[column] = payload

        if status == AnalysisStatus.COMPLETED:
            summary = summary or {}
            values["progress"] = 100
            values["keyword_count"] = summary.get("keyword_count", 0)
            values["estimated_cost"] = summary.get("estimated_cost", 0.0)
        elif status == AnalysisStatus.FAILED:
            values["error_message"] = error_message or "Analysis failed"

        with self._session() as db:
            result = db.execute(
                update(AnalysisRecord)
                .where(AnalysisRecord.id == analysis_id)
                .where(AnalysisRecord.status.in_(ACTIVE_STATUSES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

        if applied:
            if status == AnalysisStatus.FAILED:
                logger.error(f"[{analysis_id}] Analysis failed: {values['error_message']}")
            else:
                logger.info(f"[{analysis_id}] Analysis {status.value}")
        else:
            logger.info(f"[{analysis_id}] Finalize to {status.value} refused, analysis already terminal")
        return applied

    def cancel(self, analysis_id: str, owner_id: str) -> AnalysisRecord:
        """
        Cancel a pending or processing analysis owned by ``owner_id``.

        Raises:
            AnalysisNotFound: Unknown id or another owner's analysis
            NotCancellable: Analysis already terminal
        """
        with self._session() as db:
            result = db.execute(
                update(AnalysisRecord)
                .where(AnalysisRecord.id == analysis_id)
                .where(AnalysisRecord.owner_id == owner_id)
                .where(AnalysisRecord.status.in_(ACTIVE_STATUSES))
                .values(status=AnalysisStatus.CANCELLED, completed_at=datetime.now())
                .execution_options(synchronize_session=False)
            )
            record = self._get_owned(db, analysis_id, owner_id)

            if result.rowcount != 1:
                raise NotCancellable(f"Analysis is already {record.status.value}")

        logger.info(f"[{analysis_id}] Analysis cancelled by owner")
        return record

    def reconcile_stale(self, older_than: datetime, message: str = TIMEOUT_MESSAGE) -> int:
        """
        Fail analyses left pending or processing since before ``older_than``.

        Run at startup: jobs do not survive a process restart.
        """
        with self._session() as db:
            result = db.execute(
                update(AnalysisRecord)
                .where(AnalysisRecord.status.in_(ACTIVE_STATUSES))
                .where(func.coalesce(AnalysisRecord.started_at, AnalysisRecord.created_at) < older_than)
                .values(
                    status=AnalysisStatus.FAILED,
                    error_message=message,
                    completed_at=datetime.now(),
                )
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0

        if count:
            logger.warning(f"Reconciled {count} stale analyses to failed")
        return count

    # =========================================================================
    # KEYWORDS
    # =========================================================================

    def bulk_insert_keywords(self, analysis_id: str, records: Iterable[Any]) -> int:
        """
        Insert normalized keywords for a processing analysis.

        All rows are written in one transaction. Refused with
        AnalysisNotActive unless the analysis is processing.

        Returns:
            Number of keywords stored
        """
        records = list(records)
        if not records:
            return 0

        with self._session() as db:
            status = db.execute(
                select(AnalysisRecord.status)
                .where(AnalysisRecord.id == analysis_id)
                .with_for_update()
            ).scalar_one_or_none()

            if status != AnalysisStatus.PROCESSING:
                state = status.value if status else "missing"
                raise AnalysisNotActive(f"Analysis {analysis_id} is {state}, keywords not stored")

            db.add_all(
                KeywordRecord(analysis_id=analysis_id, position_index=index, **record.to_row())
                for index, record in enumerate(records)
            )

        logger.info(f"[{analysis_id}] Stored {len(records)} keywords")
        return len(records)

    def list_keywords(self, analysis_id: str) -> List[KeywordRecord]:
        with self._session() as db:
            return list(
                db.execute(
                    select(KeywordRecord)
                    .where(KeywordRecord.analysis_id == analysis_id)
                    .order_by(KeywordRecord.position_index)
                ).scalars()
            )

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, analysis_id: str, owner_id: str) -> AnalysisRecord:
        """Get an analysis. Another owner's analysis is reported as not found."""
        with self._session() as db:
            return self._get_owned(db, analysis_id, owner_id)

    def get_status(self, analysis_id: str) -> Optional[AnalysisStatus]:
        """Current status without an owner check. Internal use by running jobs."""
        with self._session() as db:
            return db.execute(
                select(AnalysisRecord.status).where(AnalysisRecord.id == analysis_id)
            ).scalar_one_or_none()

    def list_for_owner(self, owner_id: str, limit: int = 10) -> List[AnalysisRecord]:
        """Most recent analyses first."""
        with self._session() as db:
            return list(
                db.execute(
                    select(AnalysisRecord)
                    .where(AnalysisRecord.owner_id == owner_id)
                    .order_by(AnalysisRecord.created_at.desc())
                    .limit(limit)
                ).scalars()
            )

    def count_created_since(self, owner_id: str, since: datetime) -> int:
        with self._session() as db:
            return self._count_since(db, owner_id, since)

    def get_subject(self, subject_id: str, owner_id: str) -> Website:
        with self._session() as db:
            website = db.execute(
                select(Website)
                .where(Website.id == subject_id)
                .where(Website.owner_id == owner_id)
            ).scalar_one_or_none()
            if website is None:
                raise SubjectNotFound("Website not found")
            return website

    def get_plan(self, owner_id: str) -> Tuple[Optional[str], Optional[int]]:
        """
        Resolve the owner's plan name and monthly allowance.

        Returns (None, None) when the owner has no subscription, and
        (plan, None) when the plan is missing from the catalogue.
        """
        with self._session() as db:
            row = db.execute(
                select(Subscription.plan, SubscriptionPlan.analyses_per_month)
                .outerjoin(SubscriptionPlan, SubscriptionPlan.name == Subscription.plan)
                .where(Subscription.owner_id == owner_id)
            ).first()
            if row is None:
                return None, None
            return row[0], row[1]

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _get_owned(db: Session, analysis_id: str, owner_id: str) -> AnalysisRecord:
        record = db.execute(
            select(AnalysisRecord)
            .where(AnalysisRecord.id == analysis_id)
            .where(AnalysisRecord.owner_id == owner_id)
        ).scalar_one_or_none()
        if record is None:
            raise AnalysisNotFound("Analysis not found")
        return record

    @staticmethod
    def _count_since(db: Session, owner_id: str, since: Optional[datetime]) -> int:
        query = select(func.count(AnalysisRecord.id)).where(AnalysisRecord.owner_id == owner_id)
        if since is not None:
            query = query.where(AnalysisRecord.created_at >= since)
        return db.execute(query).scalar_one()

    @staticmethod
    def _lock_owner(db: Session, owner_id: str) -> None:
        # Serializes count-then-insert per owner on PostgreSQL. SQLite gets
        # no lock here: its deferred transaction only takes the write lock at
        # the INSERT, so two connections can both pass the count.
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:owner_id))"), {"owner_id": owner_id})
