"""
Keyword Analysis API

Endpoints:
- POST /api/keywords/analyze - Start an analysis for one of your websites
- GET /api/keywords/status/{analysis_id} - Poll progress and results
- GET /api/keywords/detailed/{analysis_id} - Full keyword detail and top competitors
- POST /api/keywords/cancel/{analysis_id} - Cancel a pending or running analysis
- GET /api/keywords/quota - Monthly quota usage
- GET /api/keywords/history - Your 10 most recent analyses
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from keyword_intel.auth.dependencies import Owner, get_current_owner
from keyword_intel.database.repository import AnalysisStore
from keyword_intel.services import AnalysisService, JobDispatcher, CANCELLED_MESSAGE
from keyword_intel.utils.config import get_settings

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/keywords",
    tags=["Keywords"],
    dependencies=[Depends(get_current_owner)],  # All endpoints require authentication
)

_service: Optional[AnalysisService] = None


def get_analysis_service() -> AnalysisService:
    """Process-wide service; jobs share one dispatcher."""
    global _service
    if _service is None:
        settings = get_settings()
        store = AnalysisStore()
        dispatcher = JobDispatcher(
            store,
            max_concurrent=settings.MAX_CONCURRENT_JOBS,
            job_timeout=float(settings.JOB_TIMEOUT),
        )
        _service = AnalysisService(store, dispatcher, settings)
    return _service


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class AnalyzeRequest(BaseModel):
    """Request to start a keyword analysis."""
    websiteId: str = Field(..., min_length=1, max_length=36)
    country: Optional[str] = Field(default=None, min_length=2, max_length=2, description="ISO country code, e.g. FR")
    language: Optional[str] = Field(default=None, min_length=2, max_length=2, description="Language code, e.g. fr")


class AnalyzeResponse(BaseModel):
    analysisId: str
    message: str


class CancelResponse(BaseModel):
    message: str


class QuotaResponse(BaseModel):
    quota: Dict[str, Any]


class HistoryResponse(BaseModel):
    analyses: List[Dict[str, Any]]


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/analyze", response_model=AnalyzeResponse, status_code=status.HTTP_201_CREATED)
async def start_analysis(
    request: AnalyzeRequest,
    owner: Owner = Depends(get_current_owner),
    service: AnalysisService = Depends(get_analysis_service),
):
    """
    Start a keyword analysis in the background.

    Returns immediately; poll /status/{analysisId} for progress.
    """
    record = await service.start_analysis(
        owner.id,
        request.websiteId,
        country=request.country,
        language=request.language,
    )
    logger.info(f"[{record.id}] Analysis started by {owner.id}")
    return AnalyzeResponse(analysisId=record.id, message="Analysis started successfully")


@router.get("/status/{analysis_id}")
async def analysis_status(
    analysis_id: str,
    owner: Owner = Depends(get_current_owner),
    service: AnalysisService = Depends(get_analysis_service),
):
    """Current status, progress and, once completed, the keyword results."""
    return service.get_status(analysis_id, owner.id)


@router.get("/detailed/{analysis_id}")
async def analysis_detail(
    analysis_id: str,
    owner: Owner = Depends(get_current_owner),
    service: AnalysisService = Depends(get_analysis_service),
):
    """Keyword detail of an analysis plus its five most frequent competitor domains."""
    return service.get_detailed(analysis_id, owner.id)


@router.post("/cancel/{analysis_id}", response_model=CancelResponse)
async def cancel_analysis(
    analysis_id: str,
    owner: Owner = Depends(get_current_owner),
    service: AnalysisService = Depends(get_analysis_service),
):
    service.cancel_analysis(analysis_id, owner.id)
    return CancelResponse(message=CANCELLED_MESSAGE)


@router.get("/quota", response_model=QuotaResponse)
async def quota(
    owner: Owner = Depends(get_current_owner),
    service: AnalysisService = Depends(get_analysis_service),
):
    return QuotaResponse(quota=service.quota(owner.id).to_dict())


@router.get("/history", response_model=HistoryResponse)
async def history(
    owner: Owner = Depends(get_current_owner),
    service: AnalysisService = Depends(get_analysis_service),
):
    return HistoryResponse(analyses=service.history(owner.id))
