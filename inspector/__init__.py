"""Concurrent, depth-bounded page inspection for research runs."""

from .cancellation import CancellationToken
from .governor import Governor
from .orchestrator import InspectionSession, PageInspector, TaskState
from .runner import ResearchRunner, RunOutcome
from .urls import normalize_url

__all__ = [
    "CancellationToken",
    "Governor",
    "InspectionSession",
    "PageInspector",
    "ResearchRunner",
    "RunOutcome",
    "TaskState",
    "normalize_url",
]
