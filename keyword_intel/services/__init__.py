"""Service layer: analysis use cases and the job worker pool."""

from .analysis import AnalysisService, CANCELLED_MESSAGE
from .dispatcher import JobDispatcher

__all__ = [
    "AnalysisService",
    "CANCELLED_MESSAGE",
    "JobDispatcher",
]
