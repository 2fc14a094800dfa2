"""
Retrieval engine: owner-scoped similarity search with a freshness bonus,
and a keyword fallback that keeps every record type searchable without any
embedding infrastructure.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from ..core import assistant_dao, dao
from ..core.config import (
    FRESHNESS_WEIGHT,
    FRESHNESS_WINDOW_SEC,
    KEYWORD_MATCH_SCORE,
    RETRIEVAL_MIN_SIMILARITY,
    RETRIEVAL_TOP_K,
    get_embedding_provider,
)
from ..core.schema import Company, Contact, Deal, Note, SourceType, Task
from ..util.logging import logger
from .embeddings import IEmbeddingProvider
from .pipeline import format_amount

_DEFAULT = object()

NOTE_PREVIEW_CHARS = 100

RELATED_URLS = {
    "COMPANY": "/companies/{id}",
    "CONTACT": "/contacts/{id}",
    "DEAL": "/deals/{id}",
}


@dataclass
class EntityDetails:
    id: str
    type: str
    title: str
    url: str
    subtitle: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "type": self.type, "title": self.title, "url": self.url}
        if self.subtitle:
            data["subtitle"] = self.subtitle
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    def to_citation(self) -> Dict[str, str]:
        return {"id": self.id, "type": self.type, "title": self.title, "url": self.url}


@dataclass
class RetrievalResult:
    id: str
    source_type: str
    source_id: str
    content_text: str
    similarity: float
    entity: Optional[EntityDetails]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceType": self.source_type,
            "sourceId": self.source_id,
            "contentText": self.content_text,
            "similarity": round(self.similarity, 4),
            "entity": self.entity.to_dict() if self.entity else None,
        }


@dataclass
class RetrievalContext:
    results: List[RetrievalResult]
    context_text: str
    citations: List[EntityDetails]


def freshness(updated_at: float, now: float, window_sec: float = FRESHNESS_WINDOW_SEC) -> float:
    """Linear decay from 1 (just updated) to 0 at `window_sec` and beyond."""
    age = max(now - updated_at, 0.0)
    return 1.0 - min(age / window_sec, 1.0)


def blended_score(similarity: float, fresh: float, weight: float = FRESHNESS_WEIGHT) -> float:
    return similarity * (1 - weight) + fresh * weight


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def related_url(related_type: Optional[str], related_id: Optional[str]) -> str:
    template = RELATED_URLS.get(related_type or "NONE")
    if template is None or not related_id:
        return "#"
    return template.format(id=related_id)


def entity_details_from_record(record: Any) -> EntityDetails:
    """Display details for a live record read from the store."""
    if isinstance(record, Company):
        return EntityDetails(
            id=record.id, type="COMPANY", title=record.name,
            subtitle=record.website or record.phone,
            url=f"/companies/{record.id}",
            metadata={"createdAt": _iso(record.created_at)}
        )
    if isinstance(record, Contact):
        return EntityDetails(
            id=record.id, type="CONTACT", title=record.full_name,
            subtitle=record.company_name or record.title or record.email,
            url=f"/contacts/{record.id}",
            metadata={k: v for k, v in {
                "companyName": record.company_name,
                "title": record.title,
                "email": record.email,
                "phone": record.phone,
            }.items() if v}
        )
    if isinstance(record, Deal):
        return EntityDetails(
            id=record.id, type="DEAL", title=record.title,
            subtitle=f"{record.stage} - {format_amount(record.amount_cents or 0)}",
            url=f"/deals/{record.id}",
            metadata={k: v for k, v in {
                "stage": record.stage,
                "amountCents": record.amount_cents,
                "dealAmount": record.amount_cents / 100 if record.amount_cents else None,
                "companyName": record.company_name,
                "contactName": record.contact_name,
                "closeDate": record.close_date,
                "status": record.stage.lower(),
            }.items() if v is not None}
        )
    if isinstance(record, Task):
        return EntityDetails(
            id=record.id, type="TASK", title=record.title,
            subtitle=record.status,
            url=f"/tasks/{record.id}",
            metadata={"status": record.status, "dueAt": record.due_at}
        )
    if isinstance(record, Note):
        preview = record.body if len(record.body) <= NOTE_PREVIEW_CHARS else record.body[:NOTE_PREVIEW_CHARS] + "..."
        return EntityDetails(
            id=record.id, type="NOTE", title=preview,
            url=related_url(record.related_type, record.related_id),
            metadata={"relatedType": record.related_type, "relatedId": record.related_id}
        )
    raise TypeError(f"Unsupported record type: {type(record).__name__}")


def _keyword_content(record: Any) -> str:
    if isinstance(record, Company):
        return f"Company: {record.name}"
    if isinstance(record, Contact):
        return f"Contact: {record.full_name}"
    if isinstance(record, Deal):
        return f"Deal: {record.title} - {record.stage}"
    if isinstance(record, Task):
        return f"Task: {record.title}"
    return f"Note: {record.body}"


def build_retrieval_context(results: Sequence[RetrievalResult]) -> RetrievalContext:
    """Evidence block for the prompt plus the citations backing it."""
    citations = []
    parts = []
    for result in results:
        if result.entity:
            citations.append(result.entity)
            parts.append(f"[{result.entity.type}:{result.entity.id}] {result.content_text}")
        else:
            parts.append(f"[{result.source_type}:{result.source_id}] {result.content_text}")

    return RetrievalContext(results=list(results), context_text="\n\n".join(parts), citations=citations)


class RetrievalEngine:
    """Ranks a user's indexed records against a query.

    score = similarity * (1 - freshness_weight) + freshness * freshness_weight

    Ties on score go to the more recently updated record. Falls back to
    keyword matching whenever a query vector cannot be produced.
    """

    def __init__(self, provider: Optional[IEmbeddingProvider] = _DEFAULT, metrics=None,
                 top_k: int = RETRIEVAL_TOP_K, min_similarity: float = RETRIEVAL_MIN_SIMILARITY,
                 freshness_weight: float = FRESHNESS_WEIGHT, freshness_window: float = FRESHNESS_WINDOW_SEC,
                 keyword_score: float = KEYWORD_MATCH_SCORE, clock: Callable[[], float] = time.time):
        self.provider = get_embedding_provider() if provider is _DEFAULT else provider
        self.metrics = metrics
        self.top_k = top_k
        self.min_similarity = min_similarity
        self.freshness_weight = freshness_weight
        self.freshness_window = freshness_window
        self.keyword_score = keyword_score
        self._clock = clock

    def _source_types(self, source_types: Optional[Sequence[str]]) -> Optional[List[str]]:
        if source_types is None:
            return None
        valid = {t.value for t in SourceType}
        return [str(getattr(t, "value", t)).upper() for t in source_types
                if str(getattr(t, "value", t)).upper() in valid]

    def _embed_query(self, query: str) -> Optional[np.ndarray]:
        if self.provider is None:
            return None
        try:
            if not self.provider.is_available():
                return None
            vector = self.provider.embed_text(query)
        except Exception as e:
            logger.warning(f"Query embedding failed, using keyword search: {e}")
            return None
        if not vector:
            return None
        return np.asarray(vector, dtype=np.float64)

    def search(self, query: str, owner_user_id: str, top_k: int = None,
               source_types: Optional[Sequence[str]] = None,
               min_similarity: float = None) -> List[RetrievalResult]:
        started = time.time()
        top_k = top_k or self.top_k
        min_similarity = self.min_similarity if min_similarity is None else min_similarity
        types = self._source_types(source_types)
        if types is not None and not types:
            return []

        query_vector = self._embed_query(query)
        if query_vector is None:
            results = self.keyword_search(query, owner_user_id, top_k, types)
            mode = "keyword"
        else:
            results = self._semantic_search(query_vector, owner_user_id, top_k, types, min_similarity)
            mode = "semantic"

        duration_ms = int((time.time() - started) * 1000)
        logger.log_retrieval(mode, owner_user_id, len(results), {"duration_ms": duration_ms})
        if self.metrics:
            self.metrics.track_search(owner_user_id, mode, len(results), duration_ms)
        return results

    def _semantic_search(self, query_vector: np.ndarray, owner_user_id: str, top_k: int,
                         source_types: Optional[List[str]], min_similarity: float) -> List[RetrievalResult]:
        now = self._clock()
        scored = []
        for document in assistant_dao.list_embeddings(owner_user_id, source_types):
            vector = np.asarray(document.embedding, dtype=np.float64)
            if vector.shape != query_vector.shape:
                continue
            score = blended_score(
                cosine_similarity(query_vector, vector),
                freshness(document.updated_at, now, self.freshness_window),
                self.freshness_weight
            )
            if score >= min_similarity:
                scored.append((score, document))

        scored.sort(key=lambda item: (-item[0], -item[1].updated_at))

        results = []
        for score, document in scored:
            if len(results) >= top_k:
                break
            entity = self.get_entity_details(document.source_type, document.source_id, owner_user_id)
            if entity is None:
                # Source record deleted since it was indexed
                continue
            results.append(RetrievalResult(
                id=f"{document.source_type.lower()}-{document.source_id}",
                source_type=document.source_type,
                source_id=document.source_id,
                content_text=document.content_text,
                similarity=score,
                entity=entity
            ))
        return results

    def keyword_search(self, query: str, owner_user_id: str, top_k: int = None,
                       source_types: Optional[Sequence[str]] = None) -> List[RetrievalResult]:
        """Substring match of query terms (longer than two characters) per record type."""
        top_k = top_k or self.top_k
        terms = [term for term in query.lower().split() if len(term) > 2]
        if not terms:
            return []

        results = []
        for source_type in SourceType:
            if source_types is not None and source_type.value not in source_types:
                continue
            for record in dao.search_records(source_type.value, owner_user_id, terms, top_k):
                results.append(RetrievalResult(
                    id=f"{source_type.value.lower()}-{record.id}",
                    source_type=source_type.value,
                    source_id=record.id,
                    content_text=_keyword_content(record),
                    similarity=self.keyword_score,
                    entity=entity_details_from_record(record)
                ))
        return results[:top_k]

    def get_entity_details(self, source_type: str, source_id: str, owner_user_id: str) -> Optional[EntityDetails]:
        """Re-read the live record, scoped to its owner. None when it no longer exists."""
        record = dao.get_record(source_type, owner_user_id, source_id)
        return entity_details_from_record(record) if record else None

    def find_deals_in_stage(self, owner_user_id: str, stage: str,
                            min_amount_cents: int = None) -> List[EntityDetails]:
        return [entity_details_from_record(d) for d in dao.find_deals_in_stage(owner_user_id, stage, min_amount_cents)]

    def find_open_tasks(self, owner_user_id: str, due_before: str = None) -> List[EntityDetails]:
        return [entity_details_from_record(t) for t in dao.find_open_tasks(owner_user_id, due_before)]
