import asyncio
import logging
import time
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from iris_api.core.config import settings
from iris_api.core.sse import sse_done, sse_event
from iris_api.schemas.answer import AnswerRequest, RateLimitedResponse
from iris_api.services.analytics import log_query
from iris_api.services.rate_limiter import client_ip
from iris_api.services.runtime import IrisRuntime, get_runtime
from iris_api.services.telemetry import AnswerTracePayload, emit_answer_trace

_LOGGER = logging.getLogger(__name__)

NEUTRAL_ERROR_MESSAGE = "Something went wrong while answering. Please try again."

router = APIRouter(prefix="/iris", tags=["iris"])


def _record_answer(state: dict[str, Any]) -> None:
    done = state.get("done")
    if not isinstance(done, dict):
        return
    latency_ms = int((time.perf_counter() - float(state["started"])) * 1000)
    log_query(
        query=state["query"],
        intent=done.get("blocked") or done.get("intent"),
        filters=state.get("filters"),
        sources=done.get("sources"),
        answer=str(done.get("answer") or ""),
        latency_ms=latency_ms,
        cached=bool(done.get("cached")),
        session_id=state.get("session_id"),
        user_agent=state.get("user_agent"),
    )
    emit_answer_trace(
        AnswerTracePayload(
            query_id=str(done.get("query_id") or ""),
            session_id=state.get("session_id"),
            query=state["query"],
            answer=str(done.get("answer") or ""),
            intent=done.get("intent"),
            cached=bool(done.get("cached")),
            latency_ms=latency_ms,
            signals=done.get("signals") or {},
            sources=done.get("sources") or [],
            blocked=done.get("blocked"),
        )
    )


@router.post("/answer")
async def answer(
    payload: AnswerRequest,
    request: Request,
    runtime: IrisRuntime = Depends(get_runtime),
):
    user_agent = request.headers.get("user-agent", "")
    if settings.rate_limit_enabled:
        decision = runtime.rate_limiter.check(client_ip(request.headers), user_agent)
        if not decision.allowed:
            body = RateLimitedResponse(
                message="Too many questions in a short time. Please wait a moment and try again.",
                reset_at=decision.reset_at,
            )
            return JSONResponse(
                status_code=429,
                content=body.model_dump(),
                headers={"Retry-After": str(decision.retry_after_seconds())},
            )

    cancel_event = asyncio.Event()
    state: dict[str, Any] = {
        "query": payload.query,
        "session_id": payload.session_id,
        "user_agent": user_agent,
        "started": time.perf_counter(),
    }

    async def event_gen() -> AsyncGenerator[str, None]:
        try:
            async for event in runtime.synthesizer.stream(
                payload.query,
                session_id=payload.session_id,
                cancel_event=cancel_event,
            ):
                if await request.is_disconnected():
                    cancel_event.set()
                    return
                if event.get("type") == "meta":
                    state["filters"] = event.get("filters")
                elif event.get("type") == "done":
                    state["done"] = event
                yield sse_event(event)
            yield sse_done()
        except asyncio.CancelledError:
            cancel_event.set()
            raise
        except Exception:
            _LOGGER.exception("answer stream failed")
            yield sse_event({"type": "error", "message": NEUTRAL_ERROR_MESSAGE})

    return StreamingResponse(
        event_gen(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
        background=BackgroundTask(_record_answer, state),
    )
