"""
Assistant API - threads, streaming chat, action confirmation, search and
provider health. Every route is scoped to the user named by `X-User-Id`.
"""

from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from .schemas import (
    ActionCommandRequest,
    ActionCommandResponse,
    ActionResponse,
    ChatRequest,
    CreateThreadRequest,
    DeleteResponse,
    MessageResponse,
    ProviderHealthResponse,
    SearchResponse,
    SearchResultResponse,
    SyncResponse,
    ThreadDetailResponse,
    ThreadListResponse,
    ThreadResponse,
    to_datetime,
)
from ..agents.orchestrator import StreamingOrchestrator, encode_event
from ..agents.provider import check_provider_health
from ..agents.response_parser import format_action_for_display, strip_proposal_markup
from ..core import assistant_dao
from ..core.actions import (
    ActionNotFoundError,
    ActionWorkflow,
    InvalidActionStateError,
)
from ..core.background import get_background_queue
from ..core.config import THREAD_TITLE_MAX_CHARS, get_chat_provider
from ..core.conversation import ConversationWindowManager
from ..core.dao import RecordNotFoundError
from ..core.metrics import MetricsRecorder
from ..core.rate_limit import FixedWindowRateLimiter, chat_rate_limiter, thread_rate_limiter
from ..core.schema import ActionRecord, ChatMessage, Thread
from ..util.logging import logger
from ..vector.pipeline import EmbeddingIndexer, EmbeddingPipeline
from ..vector.retrieval import RetrievalEngine

router = APIRouter(prefix="/assistant", tags=["assistant"])

ACTION_COMMANDS = ("confirm", "cancel")


# Collaborators, overridable through app.dependency_overrides

@lru_cache(maxsize=None)
def get_metrics() -> MetricsRecorder:
    return MetricsRecorder(get_background_queue())


@lru_cache(maxsize=None)
def get_embedding_pipeline() -> EmbeddingPipeline:
    return EmbeddingPipeline(metrics=get_metrics())


@lru_cache(maxsize=None)
def get_retrieval_engine() -> RetrievalEngine:
    return RetrievalEngine(metrics=get_metrics())


@lru_cache(maxsize=None)
def get_action_workflow() -> ActionWorkflow:
    indexer = EmbeddingIndexer(get_embedding_pipeline(), get_background_queue())
    return ActionWorkflow(indexer=indexer, metrics=get_metrics())


@lru_cache(maxsize=None)
def get_window_manager() -> ConversationWindowManager:
    return ConversationWindowManager()


@lru_cache(maxsize=None)
def get_orchestrator() -> StreamingOrchestrator:
    return StreamingOrchestrator(
        chat_provider=get_chat_provider(),
        retrieval=get_retrieval_engine(),
        workflow=get_action_workflow(),
        window=get_window_manager(),
        metrics=get_metrics()
    )


@lru_cache(maxsize=None)
def get_chat_limiter() -> FixedWindowRateLimiter:
    return chat_rate_limiter()


@lru_cache(maxsize=None)
def get_thread_limiter() -> FixedWindowRateLimiter:
    return thread_rate_limiter()


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Identity asserted by the upstream authentication layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized. Please log in.")
    return x_user_id.strip()


def _admit(limiter: FixedWindowRateLimiter, user_id: str):
    result = limiter.hit(user_id)
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(result.retry_after)}
        )


def _clean_title(raw: Optional[str]) -> str:
    title = (raw or "").replace("<", "").replace(">", "").strip()[:THREAD_TITLE_MAX_CHARS]
    return title or f"Chat {datetime.now().strftime('%m/%d/%Y')}"


def _thread_response(thread: Thread, message_count: int = 0) -> ThreadResponse:
    return ThreadResponse(
        id=thread.id,
        title=thread.title,
        created_at=to_datetime(thread.created_at),
        updated_at=to_datetime(thread.updated_at),
        message_count=message_count
    )


def _message_response(message: ChatMessage) -> MessageResponse:
    display = strip_proposal_markup(message.content) if message.role == "assistant" else message.content
    return MessageResponse(
        id=message.id,
        role=message.role,
        content=message.content,
        display_content=display,
        created_at=to_datetime(message.created_at)
    )


def _action_response(action: ActionRecord) -> ActionResponse:
    return ActionResponse(
        id=action.id,
        thread_id=action.thread_id,
        action_type=action.action_type,
        payload=action.payload,
        status=action.status,
        display=format_action_for_display(action.action_type, action.payload),
        error_msg=action.error_msg,
        created_at=to_datetime(action.created_at),
        executed_at=to_datetime(action.executed_at)
    )


# Threads

@router.post("/threads", response_model=ThreadResponse, status_code=status.HTTP_201_CREATED)
def create_thread_endpoint(req: CreateThreadRequest,
                           user_id: str = Depends(get_current_user),
                           limiter: FixedWindowRateLimiter = Depends(get_thread_limiter),
                           metrics: MetricsRecorder = Depends(get_metrics)):
    _admit(limiter, user_id)
    thread = assistant_dao.create_thread(user_id, _clean_title(req.title))
    metrics.track_thread(user_id, thread.id, "created")
    return _thread_response(thread)


@router.get("/threads", response_model=ThreadListResponse)
def list_threads_endpoint(user_id: str = Depends(get_current_user),
                          limiter: FixedWindowRateLimiter = Depends(get_thread_limiter)):
    _admit(limiter, user_id)
    rows = assistant_dao.list_threads(user_id)
    return ThreadListResponse(threads=[_thread_response(r["thread"], r["message_count"]) for r in rows])


@router.get("/threads/{thread_id}", response_model=ThreadDetailResponse)
def get_thread_endpoint(thread_id: str, user_id: str = Depends(get_current_user),
                        limiter: FixedWindowRateLimiter = Depends(get_thread_limiter),
                        window: ConversationWindowManager = Depends(get_window_manager)):
    _admit(limiter, user_id)
    thread = assistant_dao.get_thread(user_id, thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")

    messages = assistant_dao.list_messages(thread_id)
    return ThreadDetailResponse(
        thread=_thread_response(thread, len(messages)),
        messages=[_message_response(m) for m in messages],
        actions=[_action_response(a) for a in assistant_dao.list_actions(thread_id)],
        stats=window.stats(messages),
        health=window.health(messages).to_dict()
    )


@router.delete("/threads/{thread_id}", response_model=DeleteResponse)
def delete_thread_endpoint(thread_id: str, user_id: str = Depends(get_current_user),
                           limiter: FixedWindowRateLimiter = Depends(get_thread_limiter),
                           metrics: MetricsRecorder = Depends(get_metrics)):
    _admit(limiter, user_id)
    try:
        assistant_dao.delete_thread(user_id, thread_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Thread not found")
    metrics.track_thread(user_id, thread_id, "deleted")
    return DeleteResponse(success=True)


# Chat

@router.post("/chat")
async def chat_endpoint(req: ChatRequest, user_id: str = Depends(get_current_user),
                        limiter: FixedWindowRateLimiter = Depends(get_chat_limiter),
                        orchestrator: StreamingOrchestrator = Depends(get_orchestrator)):
    """Stream one conversational turn as newline-delimited JSON events."""
    _admit(limiter, user_id)
    thread = await run_in_threadpool(assistant_dao.get_thread, user_id, req.thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")

    async def event_stream():
        async for event in orchestrator.stream_turn(user_id, req.thread_id, req.message):
            yield encode_event(event)

    return StreamingResponse(
        event_stream(),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache"}
    )


# Actions

@router.post("/action", response_model=ActionCommandResponse, response_model_exclude_none=True)
def action_endpoint(req: ActionCommandRequest, user_id: str = Depends(get_current_user),
                    workflow: ActionWorkflow = Depends(get_action_workflow)):
    if req.action not in ACTION_COMMANDS:
        raise HTTPException(status_code=400, detail='Invalid action command. Use "confirm" or "cancel"')

    try:
        if req.action == "confirm":
            outcome = workflow.confirm(user_id, req.action_id)
            return ActionCommandResponse(success=outcome.success, error=outcome.error)
        workflow.cancel(user_id, req.action_id)
        return ActionCommandResponse(success=True)
    except ActionNotFoundError:
        raise HTTPException(status_code=404, detail="Action not found")
    except InvalidActionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/action", response_model=ActionResponse)
def get_action_endpoint(action_id: str = Query(..., alias="actionId", min_length=1),
                        user_id: str = Depends(get_current_user),
                        workflow: ActionWorkflow = Depends(get_action_workflow)):
    try:
        return _action_response(workflow.get(user_id, action_id))
    except ActionNotFoundError:
        raise HTTPException(status_code=404, detail="Action not found")


# Health, search and indexing

@router.get("/health", response_model=ProviderHealthResponse)
def provider_health_endpoint():
    """Which local models are reachable. Unauthenticated, never fails."""
    health = check_provider_health()
    return ProviderHealthResponse(
        status="ok" if health["available"] and health["hasLLM"] else "unavailable",
        available=health["available"],
        mode=health["mode"],
        models=health["models"],
        has_llm=health["hasLLM"],
        has_embeddings=health["hasEmbeddings"],
        llm_model=health["llmModel"],
        embedding_model=health["embeddingModel"]
    )


@router.get("/search", response_model=SearchResponse)
def search_endpoint(q: str = Query(..., min_length=1), types: Optional[str] = None,
                    limit: int = Query(8, ge=1, le=50),
                    user_id: str = Depends(get_current_user),
                    retrieval: RetrievalEngine = Depends(get_retrieval_engine)):
    source_types: Optional[List[str]] = None
    if types:
        source_types = [t.strip() for t in types.split(",") if t.strip()]

    results = retrieval.search(q, user_id, top_k=limit, source_types=source_types)
    return SearchResponse(query=q, results=[SearchResultResponse(**r.to_dict()) for r in results])


@router.post("/embeddings/sync", response_model=SyncResponse)
def sync_embeddings_endpoint(user_id: str = Depends(get_current_user),
                             limiter: FixedWindowRateLimiter = Depends(get_thread_limiter),
                             pipeline: EmbeddingPipeline = Depends(get_embedding_pipeline)):
    """Re-embed every record the user owns."""
    _admit(limiter, user_id)
    counts = pipeline.sync_all(user_id)
    logger.info(f"Embedding sync finished for {user_id}: {counts}")
    return SyncResponse(success=counts["errors"] == 0, counts=counts)


def reset_dependencies():
    """Drop cached collaborators so the next request builds fresh ones."""
    for dependency in (get_metrics, get_embedding_pipeline, get_retrieval_engine, get_action_workflow,
                       get_window_manager, get_orchestrator, get_chat_limiter, get_thread_limiter):
        dependency.cache_clear()
