"""
Runs API Router

Starts pipeline runs and streams their progress via SSE.
Subscribe to GET /events/{run_id} first, then POST /run?rid={run_id}.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, StreamingResponse

from config.settings import settings
from schemas.run import RunErrorResponse, RunRequest, RunResponse
from services.event_hub import event_hub
from services.run_service import RunFailed, new_run_id, run_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])


@router.post(
    "/run",
    response_model=RunResponse,
    responses={500: {"model": RunErrorResponse, "description": "Run could not produce results"}},
)
async def start_run(request: RunRequest, rid: Optional[str] = Query(None)):
    """Plan and execute a pipeline; lifecycle events go to /events/{runId}."""
    run_id = rid or request.runId or new_run_id()
    use_mocks = request.useMocks if request.useMocks is not None else settings.USE_MOCKS

    try:
        return await run_service.run(
            run_id,
            goal=request.goal,
            context=request.context.model_dump(exclude_none=True),
            use_mocks=use_mocks,
        )
    except RunFailed as e:
        return JSONResponse(status_code=500, content=e.to_dict())


@router.get("/events/{run_id}")
async def stream_events(run_id: str):
    """SSE stream of one run's events, starting with `hello`."""
    logger.info(f"[SSE {run_id}] incoming connection")
    return StreamingResponse(
        event_hub.stream(run_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )


@router.get("/api/runs/status")
async def runs_status():
    return {"ok": True, "mocks": settings.USE_MOCKS, "sse_channels": event_hub.channels()}
