"""
Keyword Analysis Service

Use cases behind the keyword endpoints:
1. Start an analysis (validation, ownership, quota, dispatch)
2. Poll its status and results, or the detailed keyword view
3. Cancel it
4. List recent analyses and report quota
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from keyword_intel.auth.quota import QuotaGate, QuotaSnapshot
from keyword_intel.collector.client import DataForSEOClient
from keyword_intel.collector.locations import normalize_country
from keyword_intel.collector.orchestrator import AnalysisJob, extract_domain
from keyword_intel.database.models import AnalysisRecord, AnalysisStatus
from keyword_intel.database.repository import AnalysisStore
from keyword_intel.exceptions import QuotaExceeded, ValidationError
from keyword_intel.utils.config import Settings, get_settings
from .dispatcher import JobDispatcher
from .summary import detailed_payload, history_entry, status_payload

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Analysis cancelled successfully"


class AnalysisService:
    """Entry point for keyword analyses, one instance per process."""

    def __init__(
        self,
        store: AnalysisStore,
        dispatcher: JobDispatcher,
        settings: Optional[Settings] = None,
        provider_factory: Optional[Callable[[], Any]] = None,
    ):
        """
        Args:
            store: Analysis persistence
            dispatcher: Worker pool the jobs run on
            settings: Application settings (defaults to environment)
            provider_factory: Returns an async-context-managed keyword
                provider; defaults to a DataForSEO client
        """
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.quota_gate = QuotaGate(store, default_allowance=self.settings.DEFAULT_MONTHLY_ANALYSES)
        self.provider_factory = provider_factory or self._dataforseo_client

    def _dataforseo_client(self) -> DataForSEOClient:
        return DataForSEOClient(
            login=self.settings.DATAFORSEO_LOGIN,
            password=self.settings.DATAFORSEO_PASSWORD,
            timeout=float(self.settings.API_TIMEOUT),
        )

    # =========================================================================
    # START
    # =========================================================================

    async def start_analysis(
        self,
        owner_id: str,
        subject_id: str,
        country: Optional[str] = None,
        language: Optional[str] = None,
    ) -> AnalysisRecord:
        """
        Admit, create and dispatch a new analysis.

        Raises:
            ValidationError: Unsupported country or unusable website URL
            SubjectNotFound: Website missing or owned by someone else
            QuotaExceeded: Monthly allowance used up
        """
        country = normalize_country(country or self.settings.DEFAULT_COUNTRY)
        language = (language or self.settings.DEFAULT_LANGUAGE).strip().lower()
        if not language.isalpha() or len(language) != 2:
            raise ValidationError(f"Invalid language code '{language}'")

        website = self.store.get_subject(subject_id, owner_id)
        extract_domain(website.url)

        snapshot = self.quota_gate.check_admission(owner_id)
        if not snapshot.allowed:
            raise QuotaExceeded(snapshot.used, snapshot.limit)

        params = {
            "country": country,
            "language": language,
            "limit": self.settings.RANKED_KEYWORDS_LIMIT,
        }
        strict_limit = None
        if self.settings.STRICT_QUOTA and not snapshot.is_unlimited:
            strict_limit = snapshot.limit

        record = self.store.create(
            owner_id,
            subject_id,
            params,
            monthly_limit=strict_limit,
            period_start=snapshot.period_start,
        )

        website_url = website.url
        self.dispatcher.submit(record.id, lambda: self._execute(record.id, website_url, params))
        return record

    async def _execute(self, analysis_id: str, website_url: str, params: Dict[str, Any]) -> AnalysisStatus:
        async with self.provider_factory() as provider:
            job = AnalysisJob(
                analysis_id,
                website_url,
                params,
                self.store,
                provider,
                suggestions_limit=self.settings.SUGGESTIONS_LIMIT,
                seed_keyword_cap=self.settings.SEED_KEYWORD_CAP,
            )
            return await job.run()

    # =========================================================================
    # READ / CANCEL
    # =========================================================================

    def get_status(self, analysis_id: str, owner_id: str) -> Dict[str, Any]:
        record = self.store.get(analysis_id, owner_id)
        keywords = None
        if record.status == AnalysisStatus.COMPLETED:
            keywords = self.store.list_keywords(analysis_id)
        return status_payload(record, keywords)

    def get_detailed(self, analysis_id: str, owner_id: str) -> Dict[str, Any]:
        """
        Keyword detail and top competitors. Keyword lists stay empty until
        the analysis completes.

        Raises:
            AnalysisNotFound: Unknown id or another owner's analysis
        """
        record = self.store.get(analysis_id, owner_id)
        website = self.store.get_subject(record.subject_id, owner_id)
        try:
            own_domain = extract_domain(website.url)
        except ValidationError:
            own_domain = None
        return detailed_payload(record, website, self.store.list_keywords(analysis_id), own_domain)

    def cancel_analysis(self, analysis_id: str, owner_id: str) -> AnalysisRecord:
        """
        Raises:
            AnalysisNotFound: Unknown id or another owner's analysis
            NotCancellable: Already completed, failed or cancelled
        """
        record = self.store.cancel(analysis_id, owner_id)
        self.dispatcher.cancel(analysis_id)
        return record

    def history(self, owner_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        return [history_entry(record) for record in self.store.list_for_owner(owner_id, limit=limit)]

    def quota(self, owner_id: str) -> QuotaSnapshot:
        return self.quota_gate.check_admission(owner_id)

    # =========================================================================
    # RECOVERY
    # =========================================================================

    def reconcile_stale(self, now: Optional[datetime] = None) -> int:
        """Fail analyses orphaned by a previous process."""
        cutoff = (now or datetime.now()) - timedelta(minutes=self.settings.STALE_JOB_MINUTES)
        return self.store.reconcile_stale(cutoff)
