"""
Embedding pipeline: canonical document text per record type, provider calls
with bounded retry, and owner-scoped upserts into document_embeddings.
"""

import sqlite3
import time
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from ..core import assistant_dao, dao
from ..core.config import (
    EMBED_BACKOFF_BASE_SEC,
    EMBED_BACKOFF_MAX_SEC,
    EMBED_MAX_CONTENT_CHARS,
    EMBED_MAX_RETRIES,
    get_embedding_provider,
)
from ..core.schema import RecordChange, SourceType
from ..util.logging import logger
from .embeddings import IEmbeddingProvider

_DEFAULT = object()


def _field(entity: Any, name: str):
    if isinstance(entity, dict):
        return entity.get(name)
    return getattr(entity, name, None)


def format_amount(amount_cents: int) -> str:
    if amount_cents % 100 == 0:
        return f"${amount_cents // 100}"
    return f"${amount_cents / 100:.2f}"


def generate_content_text(source_type: str, entity: Any) -> str:
    """Render the fixed per-type template; optional fields are omitted when empty."""
    def get(name):
        return _field(entity, name)

    if source_type == SourceType.COMPANY:
        lines = [
            get('name') and f"Company: {get('name')}",
            get('website') and f"Website: {get('website')}",
            get('phone') and f"Phone: {get('phone')}",
            get('address') and f"Address: {get('address')}",
        ]
    elif source_type == SourceType.CONTACT:
        name = " ".join(part for part in (get('first_name'), get('last_name')) if part)
        lines = [
            name and f"Contact: {name}",
            get('email') and f"Email: {get('email')}",
            get('phone') and f"Phone: {get('phone')}",
            get('title') and f"Title: {get('title')}",
            get('company_name') and f"Company: {get('company_name')}",
        ]
    elif source_type == SourceType.DEAL:
        lines = [
            get('title') and f"Deal: {get('title')}",
            get('amount_cents') and f"Amount: {format_amount(get('amount_cents'))}",
            get('stage') and f"Stage: {get('stage')}",
            get('close_date') and f"Close Date: {get('close_date')}",
            get('company_name') and f"Company: {get('company_name')}",
            get('contact_name') and f"Contact: {get('contact_name')}",
        ]
    elif source_type == SourceType.TASK:
        lines = [
            get('title') and f"Task: {get('title')}",
            get('status') and f"Status: {get('status')}",
            get('due_at') and f"Due: {get('due_at')}",
        ]
    elif source_type == SourceType.NOTE:
        related = get('related_type')
        lines = [
            get('body') and f"Note: {get('body')}",
            related and related != "NONE" and f"Related to: {related}",
        ]
    else:
        return ""

    return "\n".join(line for line in lines if line)


def _log_failed_attempt(retry_state: RetryCallState) -> None:
    attempt = retry_state.attempt_number
    outcome = retry_state.outcome
    if outcome.failed:
        logger.warning(f"Embedding attempt {attempt} failed: {outcome.exception()}")
    else:
        logger.warning(f"Embedding attempt {attempt} returned an empty vector")


def _give_up(retry_state: RetryCallState) -> None:
    logger.error(f"Failed to generate embedding after {retry_state.attempt_number} attempts")
    return None


def embed_with_retry(provider: IEmbeddingProvider, text: str, max_retries: int = EMBED_MAX_RETRIES,
                     backoff_base: float = EMBED_BACKOFF_BASE_SEC, backoff_max: float = EMBED_BACKOFF_MAX_SEC,
                     sleep: Callable[[float], None] = time.sleep) -> Tuple[Optional[list], int]:
    """
    Call the provider up to `max_retries` times with capped exponential backoff.
    Exceptions and empty vectors both count as failed attempts.
    Returns (embedding or None, retry count).
    """
    retrying = Retrying(
        stop=stop_after_attempt(max(1, max_retries)),
        wait=wait_exponential(multiplier=backoff_base, max=backoff_max),
        retry=retry_if_exception_type(Exception) | retry_if_result(lambda embedding: not embedding),
        after=_log_failed_attempt,
        retry_error_callback=_give_up,
        sleep=sleep,
    )
    embedding = retrying(provider.embed_text, text)
    return embedding, retrying.statistics["attempt_number"] - 1


class EmbeddingPipeline:
    """Turns records into indexed documents. Failures are reported, never raised."""

    def __init__(self, provider: Optional[IEmbeddingProvider] = _DEFAULT, metrics=None,
                 max_content_chars: int = EMBED_MAX_CONTENT_CHARS, max_retries: int = EMBED_MAX_RETRIES,
                 backoff_base: float = EMBED_BACKOFF_BASE_SEC, backoff_max: float = EMBED_BACKOFF_MAX_SEC,
                 sleep: Callable[[float], None] = time.sleep):
        self.provider = get_embedding_provider() if provider is _DEFAULT else provider
        self.metrics = metrics
        self.max_content_chars = max_content_chars
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    def upsert(self, source_type: str, source_id: str, owner_user_id: str, entity: Any) -> bool:
        """Index one record. True only when a vector was stored."""
        source_type = SourceType(source_type).value

        if self.provider is None or not self.provider.is_available():
            logger.log_embedding_operation("upsert", source_type, source_id,
                                           {"reason": "no embedding provider"}, status="skipped")
            return False

        content_text = generate_content_text(source_type, entity)
        if not content_text.strip():
            logger.log_embedding_operation("upsert", source_type, source_id,
                                           {"reason": "empty content"}, status="skipped")
            return False

        if len(content_text) > self.max_content_chars:
            logger.warning(f"Content too long for {source_type}:{source_id}, truncating")
            content_text = content_text[:self.max_content_chars]

        embedding, retry_count = embed_with_retry(self.provider, content_text, self.max_retries,
                                                  self.backoff_base, self.backoff_max, self._sleep)
        if self.metrics:
            self.metrics.track_embedding(owner_user_id, source_type, embedding is not None, retry_count)

        # Unlike a success-only upsert, a failed generation still replaces the row
        # with a NULL vector so the stale embedding stops matching
        assistant_dao.upsert_embedding(source_type, source_id, owner_user_id, content_text, embedding)

        if embedding is None:
            logger.log_embedding_operation("upsert", source_type, source_id,
                                           {"retry_count": retry_count}, status="failed")
            return False

        logger.log_embedding_operation("upsert", source_type, source_id,
                                       {"retry_count": retry_count, "dimension": len(embedding)})
        return True

    def delete(self, source_type: str, source_id: str) -> bool:
        """Remove the indexed document; absent rows are fine."""
        removed = assistant_dao.delete_embedding(SourceType(source_type).value, source_id)
        logger.log_embedding_operation("delete", source_type, source_id, {"removed": removed})
        return removed

    def index_record(self, owner_user_id: str, source_type: str, source_id: str) -> bool:
        """Re-read the live record and index it, or drop its document if it is gone."""
        entity = dao.get_record(SourceType(source_type).value, owner_user_id, source_id)
        if entity is None:
            self.delete(source_type, source_id)
            return False
        return self.upsert(source_type, source_id, owner_user_id, entity)

    def sync_all(self, owner_user_id: str) -> Dict[str, int]:
        """Re-embed every record the user owns and drop documents of vanished records."""
        counts: Dict[str, int] = {source_type.value: 0 for source_type in SourceType}
        errors = 0
        live = set()

        for source_type in SourceType:
            for entity in dao.list_records(source_type.value, owner_user_id):
                live.add((source_type.value, entity.id))
                if self.upsert(source_type.value, entity.id, owner_user_id, entity):
                    counts[source_type.value] += 1
                else:
                    errors += 1

        removed = 0
        for document in assistant_dao.list_embeddings(owner_user_id, vectors_only=False):
            if (document.source_type, document.source_id) not in live:
                removed += int(self.delete(document.source_type, document.source_id))

        logger.log_operation("embedding.sync_all", "success", {
            "user_id": owner_user_id, **counts, "errors": errors, "removed": removed
        })
        return {**counts, "errors": errors, "removed": removed}


class EmbeddingIndexer:
    """Schedules re-indexing on a background queue once a mutation has committed.

    The record is snapshotted in the caller's thread so the worker embeds
    the committed state; scheduling problems are logged and never raised.
    """

    def __init__(self, pipeline: EmbeddingPipeline, queue):
        self.pipeline = pipeline
        self.queue = queue

    def schedule(self, owner_user_id: str, source_type: str, source_id: str, deleted: bool = False) -> bool:
        description = f"embed:{source_type}:{source_id}"
        try:
            entity = None if deleted else dao.get_record(source_type, owner_user_id, source_id)
        except sqlite3.Error as e:
            logger.error(f"Could not snapshot {source_type}:{source_id} for indexing: {e}")
            return False

        if entity is None:
            return self.queue.submit(self.pipeline.delete, source_type, source_id, description=description)
        return self.queue.submit(self.pipeline.upsert, source_type, source_id, owner_user_id, entity,
                                 description=description)

    def schedule_changes(self, owner_user_id: str, changes: Sequence[RecordChange]) -> int:
        scheduled = 0
        for change in changes:
            if self.schedule(owner_user_id, change.source_type, change.source_id, deleted=change.deleted):
                scheduled += 1
        return scheduled
