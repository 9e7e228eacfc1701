"""
Analysis Job

Drives one keyword analysis through its stages:

    pending (0) -> processing (10)
    Stage A: page HTML            (20)  failure tolerated, empty content
    Stage B: ranked keywords      (40)  failure fatal
    Stage C: keyword suggestions  (60)  failure fatal, skipped without seeds
    Normalize                     (80)
    Persist keywords, finalize    (100, completed)

Every progress write goes through the store's active-status guard. When a
write is refused the analysis was cancelled (or failed elsewhere) and the
job stops without touching the record again.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlparse

from keyword_intel.database.models import ACTIVE_STATUSES, AnalysisStatus
from keyword_intel.database.repository import AnalysisStore
from keyword_intel.exceptions import (
    AnalysisNotActive,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from .client import calculate_labs_cost
from .normalizer import extract_seed_keywords, iter_items, normalize

logger = logging.getLogger(__name__)

# Progress checkpoints
PROGRESS_STARTED = 10
PROGRESS_PAGE_FETCHED = 20
PROGRESS_RANKED_FETCHED = 40
PROGRESS_SUGGESTIONS_FETCHED = 60
PROGRESS_NORMALIZED = 80


class KeywordProvider(Protocol):
    """What the job needs from the SEO data provider."""

    async def fetch_page_html(self, url: str) -> str: ...

    async def fetch_ranked_keywords(
        self, domain: str, country: str, limit: int, language: Optional[str] = None
    ) -> List[Dict[str, Any]]: ...

    async def fetch_keyword_suggestions(
        self, seed_keywords: List[str], country: str, limit: int, language: Optional[str] = None
    ) -> List[Dict[str, Any]]: ...


class JobStopped(Exception):
    """The analysis left the active states while the job was running."""
    pass


def extract_domain(url: str) -> str:
    """Hostname of a website URL, accepting URLs without a scheme."""
    candidate = (url or "").strip()
    if candidate and "://" not in candidate:
        candidate = f"https://{candidate}"
    hostname = urlparse(candidate).hostname
    if not hostname or "." not in hostname:
        raise ValidationError(f"Invalid website URL: '{url}'")
    return hostname


class AnalysisJob:
    """
    One run of the keyword pipeline for one analysis record.

    Usage:
        job = AnalysisJob(record.id, website.url, record.input_parameters, store, client)
        status = await job.run()
    """

    def __init__(
        self,
        analysis_id: str,
        website_url: str,
        params: Dict[str, Any],
        store: AnalysisStore,
        provider: KeywordProvider,
        suggestions_limit: int = 100,
        seed_keyword_cap: int = 200,
    ):
        self.analysis_id = analysis_id
        self.website_url = website_url
        self.country = params["country"]
        self.language = params.get("language")
        self.ranked_limit = params.get("limit", 900)
        self.store = store
        self.provider = provider
        self.suggestions_limit = suggestions_limit
        self.seed_keyword_cap = seed_keyword_cap
        self.progress = 0

    async def run(self) -> AnalysisStatus:
        """
        Run all stages and finalize the record.

        Never raises for pipeline errors: they end up on the record as
        ``failed`` with the error message.

        Returns:
            The status this job observed or set last
        """
        logger.info(f"[{self.analysis_id}] Starting keyword analysis for {self.website_url} ({self.country})")
        try:
            return await self._run_stages()

        except JobStopped:
            logger.info(f"[{self.analysis_id}] Analysis is no longer active at {self.progress}%, stopping")
            return self._observed_status()

        except PersistenceError as e:
            logger.error(f"[{self.analysis_id}] Store write failed at {self.progress}%: {e}")
            return self._fail(str(e))

        except Exception as e:
            logger.exception(f"[{self.analysis_id}] Analysis failed at {self.progress}%: {e}")
            return self._fail(str(e) or type(e).__name__)

    async def _run_stages(self) -> AnalysisStatus:
        self._advance(PROGRESS_STARTED, AnalysisStatus.PROCESSING)

        # Stage A: page content (optional)
        html_content = await self._fetch_page_html()
        self._advance(PROGRESS_PAGE_FETCHED)

        # Stage B: ranked keywords
        domain = extract_domain(self.website_url)
        ranked_batches = await self.provider.fetch_ranked_keywords(
            domain, self.country, self.ranked_limit, language=self.language
        )
        ranked_count = sum(1 for _ in iter_items(ranked_batches))
        logger.info(f"[{self.analysis_id}] {ranked_count} ranked keywords for {domain}")
        self._advance(PROGRESS_RANKED_FETCHED)

        # Stage C: suggestions seeded by ranked keywords
        seeds = extract_seed_keywords(ranked_batches, cap=self.seed_keyword_cap)
        suggestion_batches: List[Dict[str, Any]] = []
        suggestion_requests = 0
        if seeds:
            suggestion_batches = await self.provider.fetch_keyword_suggestions(
                seeds, self.country, self.suggestions_limit, language=self.language
            )
            suggestion_requests = 1
        else:
            logger.info(f"[{self.analysis_id}] No seed keywords, skipping suggestions")
        self._advance(PROGRESS_SUGGESTIONS_FETCHED)

        keywords = normalize(ranked_batches, suggestion_batches)
        self._advance(PROGRESS_NORMALIZED)

        try:
            self.store.bulk_insert_keywords(self.analysis_id, keywords)
        except AnalysisNotActive as e:
            raise JobStopped() from e

        estimated_cost = calculate_labs_cost(ranked_count, suggestion_requests)
        completed = self.store.finalize(
            self.analysis_id,
            AnalysisStatus.COMPLETED,
            raw_payloads={
                "ranked": ranked_batches,
                "suggestions": suggestion_batches,
                "html": {"content": html_content},
            },
            summary={"keyword_count": len(keywords), "estimated_cost": estimated_cost},
        )
        if not completed:
            raise JobStopped()

        self.progress = 100
        logger.info(
            f"[{self.analysis_id}] Completed: {len(keywords)} keywords, "
            f"estimated cost ${estimated_cost:.4f}"
        )
        return AnalysisStatus.COMPLETED

    async def _fetch_page_html(self) -> str:
        try:
            return await self.provider.fetch_page_html(self.website_url)
        except ProviderError as e:
            logger.warning(f"[{self.analysis_id}] Page fetch failed, continuing without content: {e}")
            return ""

    def _advance(self, progress: int, status: Optional[AnalysisStatus] = None) -> None:
        # Checkpoints only ever increase within a run
        progress = max(progress, self.progress)
        if not self.store.update_progress(self.analysis_id, progress, status):
            raise JobStopped()
        self.progress = progress
        logger.info(f"[{self.analysis_id}] Progress {progress}%")

    def _fail(self, message: str) -> AnalysisStatus:
        """Single best-effort attempt to mark the record failed."""
        try:
            if self.store.finalize(self.analysis_id, AnalysisStatus.FAILED, error_message=message):
                return AnalysisStatus.FAILED
            return self._observed_status()
        except PersistenceError as e:
            logger.critical(
                f"[{self.analysis_id}] Could not record failure, analysis left at "
                f"{self.progress}%: {e}"
            )
            return AnalysisStatus.FAILED

    def _observed_status(self) -> AnalysisStatus:
        try:
            status = self.store.get_status(self.analysis_id)
        except PersistenceError:
            return AnalysisStatus.FAILED
        if status is None or status in ACTIVE_STATUSES:
            return AnalysisStatus.FAILED
        return status
