"""Chat route: JSON for complete answers, server-sent events for summaries."""
import json
import logging
import math
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from askmandi.routes.deps import get_client_identity, get_service
from askmandi.services.pipeline import ChatOutcome, MandiChatService
from askmandi.services.runtime import get_request_id, log_event

router = APIRouter(prefix="/api/chat", tags=["chat"])
logger = logging.getLogger("chat_route")

RATE_LIMIT_MESSAGE = "Daily question limit reached. Please try again later."
STREAM_FAILED_MESSAGE = "Failed to generate summary"


def _sse_event(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=True)}\n\n"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------
class ChatMessage(BaseModel):
    role: str
    content: str = ""


class ChatRequest(BaseModel):
    messages: Optional[List[ChatMessage]] = None


def _message_response(outcome: ChatOutcome) -> JSONResponse:
    body: Dict[str, Any] = {
        "message": outcome.message,
        "usage": outcome.usage.to_dict() if outcome.usage else None,
    }
    if outcome.remaining is not None:
        body["remaining"] = outcome.remaining
    if outcome.cached:
        body["cached"] = True
    return JSONResponse(body)


def _rate_limited_response(outcome: ChatOutcome) -> JSONResponse:
    reset_at = float(outcome.reset_at or time.time())
    retry_after = max(0, math.ceil(reset_at - time.time()))
    return JSONResponse(
        {"error": RATE_LIMIT_MESSAGE, "remaining": 0, "reset": int(reset_at * 1000)},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def _stream_response(outcome: ChatOutcome, request: Request) -> StreamingResponse:
    stream = outcome.stream

    async def _event_generator():
        try:
            async for delta in stream:
                if await request.is_disconnected():
                    log_event(logger, logging.INFO, "summary_stream_abandoned", chars=len(delta))
                    return
                yield _sse_event("delta", {"delta": delta})
            yield _sse_event(
                "done",
                {"fullText": stream.full_text, "usage": stream.usage.to_dict(), "remaining": outcome.remaining},
            )
        except Exception as exc:
            # Headers are already sent; the failure goes out as an event.
            log_event(logger, logging.ERROR, "summary_stream_failed", error_type=type(exc).__name__, error=str(exc)[:300])
            yield _sse_event("error", {"message": STREAM_FAILED_MESSAGE})

    return StreamingResponse(
        _event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "x-request-id": get_request_id(),
        },
    )


# ---------------------------------------------------------------------------
# POST /api/chat
# ---------------------------------------------------------------------------
@router.post("")
async def chat(
    req: ChatRequest,
    request: Request,
    identity: str = Depends(get_client_identity),
    service: MandiChatService = Depends(get_service),
):
    outcome = await service.handle(req.messages, identity)
    if outcome.kind == "rate_limited":
        return _rate_limited_response(outcome)
    if outcome.kind == "stream":
        return _stream_response(outcome, request)
    return _message_response(outcome)
