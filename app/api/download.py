from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from app.core.logging import log_info
from app.core.state import state

router = APIRouter()


@router.get("/download/{token}")
async def download_video(
    request: Request,
    token: str,
    filename: Optional[str] = Query(None, max_length=200, description="Preferred download filename"),
):
    """
    Redeem a stream token: run the extractor and stream the finished file.
    Errors before the first byte are reported as JSON; afterwards the
    connection is simply closed.
    """
    orchestrator = state.require("orchestrator")
    prepared = await orchestrator.start(token, client=request, filename_hint=filename)
    log_info(request, f"Streaming job {prepared.job.id}: {prepared.content_length} bytes")

    return StreamingResponse(
        prepared.body,
        media_type=prepared.media_type,
        headers=prepared.headers,
        background=BackgroundTask(prepared.aclose),
    )
