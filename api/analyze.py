"""
Keyword Intelligence API

FastAPI application that:
1. Creates the database tables on startup
2. Fails analyses orphaned by a previous process
3. Serves the keyword analysis endpoints (see api/keywords.py)
4. Maps pipeline errors to HTTP responses

Run with:
    uvicorn api.analyze:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from keyword_intel import __version__
from keyword_intel.database import init_db, check_db_connection
from keyword_intel.exceptions import (
    KeywordIntelError,
    ValidationError,
    QuotaExceeded,
    SubjectNotFound,
    AnalysisNotFound,
    NotCancellable,
)
from keyword_intel.utils import configure_logging, get_settings

from api.keywords import router as keywords_router, get_analysis_service

# Configure logging to stdout (container runtimes treat stderr as errors)
configure_logging(get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Keyword Intelligence Engine",
    description="Ranked keywords and keyword opportunities powered by DataForSEO",
    version=__version__,
)
app.include_router(keywords_router)

# Domain error -> HTTP status. Anything unlisted is a 500.
ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    QuotaExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
    SubjectNotFound: status.HTTP_404_NOT_FOUND,
    AnalysisNotFound: status.HTTP_404_NOT_FOUND,
    NotCancellable: status.HTTP_400_BAD_REQUEST,
}


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize database and reconcile orphaned analyses."""
    logger.info("Initializing database...")
    init_db()
    if check_db_connection():
        logger.info("Database connection verified")
    else:
        logger.warning("Database connection check failed - continuing anyway")

    reconciled = get_analysis_service().reconcile_stale()
    logger.info(f"Startup reconciliation: {reconciled} stale analyses failed")


@app.on_event("shutdown")
async def shutdown_event():
    await get_analysis_service().dispatcher.shutdown()


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(KeywordIntelError)
async def keyword_intel_error_handler(request: Request, exc: KeywordIntelError):
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"error": str(exc)})

    logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request data", "details": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg")}
        for error in exc.errors()
    ]


# ============================================================================
# HEALTH
# ============================================================================

@app.get("/api/health")
async def health():
    """Health check including database status."""
    db_connected = check_db_connection()
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": __version__,
        "environment": get_settings().ENVIRONMENT,
        "jobs_running": get_analysis_service().dispatcher.active_jobs,
        "database": "connected" if db_connected else "disconnected",
    }
