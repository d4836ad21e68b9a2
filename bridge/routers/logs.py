# bridge/routers/logs.py
"""
Engine log lines and supervisor state changes.
GET /logs        — recent lines (ring buffer)
GET /logs/stream — Server-Sent Events: `log` and `state` events
"""

from typing import Optional

from fastapi import APIRouter, Request
from starlette.responses import StreamingResponse

from bridge.schemas.control import LogLineOut
from bridge.services.event_hub import sse_stream

router = APIRouter()


@router.get("/logs", response_model=list[LogLineOut], summary="Recent engine log lines")
def recent_logs(request: Request, device_id: Optional[str] = None, limit: int = 200):
    return request.app.state.hub.recent(device_id=device_id, limit=limit)


@router.get("/logs/stream", summary="Live log + state stream (SSE)")
async def stream_logs(request: Request, device_id: Optional[str] = None):
    return StreamingResponse(
        sse_stream(request.app.state.hub, device_id=device_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
