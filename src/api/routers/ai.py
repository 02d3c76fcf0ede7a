"""
AI API Router

Question answering (plain and streamed) plus the operational endpoints for
degradation status, circuit breakers, and the context cache.
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from ..errors import AppError
from ..models.question import QuestionRequest, QuestionResponse
from ..services.ai_service import AIService
from ..services.health_registry import HealthRegistry
from ..services.rag_cache_service import RagCacheService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/ai", tags=["ai"])

DISCONNECT_POLL_SECONDS = 1.0
_CIRCUIT_ACTIONS = {"open": "opened", "close": "closed", "reset": "reset"}


def get_ai_service(request: Request) -> AIService:
    return request.app.state.ai_service


def get_health(request: Request) -> HealthRegistry:
    return request.app.state.health


def get_cache(request: Request) -> RagCacheService:
    return request.app.state.rag_cache


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return user_id


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


@router.post("/ask", response_model=QuestionResponse, response_model_by_alias=True)
async def ask(
    body: QuestionRequest,
    user_id: str = Depends(get_user_id),
    service: AIService = Depends(get_ai_service),
):
    """Answer a question with document and web context."""
    return await service.answer_question(body, user_id)


@router.post("/ask/stream")
async def ask_stream(
    body: QuestionRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    service: AIService = Depends(get_ai_service),
):
    """
    Answer a question as Server-Sent Events.

    Emits `{"chunk": text}` while the answer streams, then
    `followUpQuestions`, `sources`, `citations`, and finally `done`.
    Failures are emitted as `{"error": message, "code": code}`.
    """
    queue: asyncio.Queue = asyncio.Queue()
    finished = object()

    async def produce():
        try:
            async for item in service.answer_question_stream(body, user_id):
                await queue.put(_sse({"chunk": item} if isinstance(item, str) else item))
        except AppError as e:
            await queue.put(_sse({"error": e.message, "code": e.code}))
        except Exception as e:
            logger.error("[AI] stream failed: %s", e, exc_info=True)
            await queue.put(_sse({"error": "Failed to generate answer", "code": "INTERNAL_ERROR"}))
        finally:
            await queue.put(finished)

    async def event_generator():
        producer = asyncio.create_task(produce())
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=DISCONNECT_POLL_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        logger.info("[AI] client disconnected, stopping stream")
                        break
                    continue
                if item is finished:
                    break
                yield item
        finally:
            if not producer.done():
                producer.cancel()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/degradation")
async def degradation_status(health: HealthRegistry = Depends(get_health)):
    """Overall degradation level plus per-service and per-circuit detail."""
    snapshot = health.snapshot()
    return {
        "degraded": snapshot["degraded"],
        "degradation_level": snapshot["degradation_level"],
        "status": snapshot["status"],
        "services": health.degradation.get_statistics()["services"],
        "circuits": health.circuits.stats(),
        "circuit_health": health.circuits.health_check(),
        "recovery": health.recovery.get_stats(),
    }


@router.post("/circuits/{name}/{action}")
async def circuit_action(name: str, action: str, health: HealthRegistry = Depends(get_health)):
    """Manually open, close, or reset one circuit breaker."""
    if action not in _CIRCUIT_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown circuit action: {action}")
    getattr(health.circuits, action)(name)
    logger.info("[AI] circuit %s manually %s", name, _CIRCUIT_ACTIONS[action])
    return {"name": name, "state": health.circuits.state(name)}


@router.get("/cache/stats")
async def cache_stats(cache: RagCacheService = Depends(get_cache)):
    return cache.get_stats()


@router.delete("/cache")
async def clear_cache(cache: RagCacheService = Depends(get_cache)):
    deleted = await cache.clear_all()
    return {"deleted": deleted}


@router.delete("/cache/users/{user_id}")
async def invalidate_user_cache(
    user_id: str,
    topic_id: Optional[str] = Query(None),
    document_id: Optional[str] = Query(None),
    cache: RagCacheService = Depends(get_cache),
):
    """Drop a user's cached contexts, optionally narrowed to a topic or a document."""
    if document_id:
        deleted = await cache.invalidate_document(user_id, document_id)
    else:
        deleted = await cache.invalidate_user(user_id, topic_id)
    return {"deleted": deleted}
