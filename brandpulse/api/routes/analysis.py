from __future__ import annotations

import json as _json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from brandpulse.api.deps import get_broker, get_runner
from brandpulse.config import settings
from brandpulse.models.schemas import AnalysisConfig, AnalysisStartRequest, AnalysisStartResponse
from brandpulse.providers.pair import ProviderCredentials
from brandpulse.services import logger as log_service
from brandpulse.services.analysis import (
    AnalysisConfigError,
    AnalysisRunner,
    new_report_id,
    validate_run,
)
from brandpulse.services.progress import ProgressBroker

router = APIRouter(prefix="/api/analysis", tags=["analysis"])


@router.post("/start", response_model=AnalysisStartResponse)
async def start_analysis(
    request: AnalysisStartRequest,
    background_tasks: BackgroundTasks,
    runner: AnalysisRunner = Depends(get_runner),
):
    """Validate the config and schedule the run. Progress streams from /progress."""
    credentials = ProviderCredentials(
        gemini_api_key=request.gemini_api_key or settings.gemini_api_key,
        openai_api_key=request.openai_api_key or settings.openai_api_key,
    )
    try:
        config, items = validate_run(request.config, credentials)
    except AnalysisConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    report_id = request.report_id or new_report_id()
    log_service.log_event(
        event_type="analysis_started",
        message="Analysis scheduled",
        report_id=report_id,
        entity=config.entity,
        questions=len(items),
    )
    background_tasks.add_task(runner.run, report_id, config, credentials)
    return AnalysisStartResponse(report_id=report_id, status="processing", total_questions=len(items))


@router.post("/{report_id}/resume", response_model=AnalysisStartResponse)
async def resume_analysis(
    report_id: str,
    config: AnalysisConfig,
    background_tasks: BackgroundTasks,
    runner: AnalysisRunner = Depends(get_runner),
):
    """Re-run classification, aggregation and insights from saved responses."""
    background_tasks.add_task(runner.resume, report_id, config)
    return AnalysisStartResponse(report_id=report_id, status="processing", total_questions=0)


@router.get("/{report_id}/progress")
async def stream_progress(report_id: str, broker: ProgressBroker = Depends(get_broker)):
    """SSE stream of progress events, ending after ``complete`` or ``error``."""
    subscription = broker.subscribe(report_id)

    async def event_generator():
        try:
            async for event in subscription:
                yield {
                    "event": event.type.value,
                    "data": _json.dumps(event.to_dict()),
                }
        finally:
            subscription.close()

    return EventSourceResponse(event_generator())
