"""
Request/response models for the assistant HTTP API.
Field names are camelCase on the wire.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..core.config import CHAT_MAX_MESSAGE_CHARS


def to_datetime(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool


# Threads

class CreateThreadRequest(CamelModel):
    title: Optional[str] = None


class ThreadResponse(CamelModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0


class ThreadListResponse(CamelModel):
    threads: List[ThreadResponse]


class MessageResponse(CamelModel):
    id: str
    role: str
    content: str
    display_content: str
    created_at: datetime


class ActionResponse(CamelModel):
    id: str
    thread_id: str
    action_type: str
    payload: Dict[str, Any]
    status: str
    display: str
    error_msg: Optional[str] = None
    created_at: datetime
    executed_at: Optional[datetime] = None


class ThreadDetailResponse(CamelModel):
    thread: ThreadResponse
    messages: List[MessageResponse]
    actions: List[ActionResponse]
    stats: Dict[str, Any]
    health: Dict[str, Any]


class DeleteResponse(CamelModel):
    success: bool


# Chat and actions

class ChatRequest(CamelModel):
    thread_id: str
    message: str

    @field_validator('thread_id')
    @classmethod
    def thread_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('threadId cannot be empty')
        return v

    @field_validator('message')
    @classmethod
    def message_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('message cannot be empty')
        return v

    @field_validator('message')
    @classmethod
    def message_must_be_reasonable_length(cls, v):
        if len(v) > CHAT_MAX_MESSAGE_CHARS:
            raise ValueError(f'message must be at most {CHAT_MAX_MESSAGE_CHARS} characters')
        return v


class ActionCommandRequest(CamelModel):
    action_id: str = Field(min_length=1)
    action: str


class ActionCommandResponse(CamelModel):
    success: bool
    error: Optional[str] = None


# Provider health, search and indexing

class ProviderHealthResponse(CamelModel):
    status: str
    available: bool
    mode: str
    models: List[str]
    has_llm: bool = Field(alias="hasLLM")
    has_embeddings: bool
    llm_model: Optional[str] = None
    embedding_model: Optional[str] = None


class SearchResultResponse(CamelModel):
    id: str
    source_type: str
    source_id: str
    content_text: str
    similarity: float
    entity: Optional[Dict[str, Any]] = None


class SearchResponse(CamelModel):
    query: str
    results: List[SearchResultResponse]


class SyncResponse(CamelModel):
    success: bool
    counts: Dict[str, int]
