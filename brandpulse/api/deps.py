from __future__ import annotations

from brandpulse.services import analysis
from brandpulse.services.analysis import AnalysisRunner
from brandpulse.services.progress import ProgressBroker


def get_broker() -> ProgressBroker:
    """The process-wide progress broker shared by runs and SSE consumers."""
    return analysis.broker


def get_runner() -> AnalysisRunner:
    return AnalysisRunner(progress_broker=get_broker())
