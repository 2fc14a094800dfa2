"""
Vector layer - advisory embeddings and retrieval over the canonical SQLite store.
"""

from .embeddings import IEmbeddingProvider, DeterministicHashEmbedding, OllamaEmbeddingProvider, EmbeddingError
from .pipeline import EmbeddingPipeline, EmbeddingIndexer, generate_content_text
from .retrieval import RetrievalEngine, RetrievalResult, EntityDetails, RetrievalContext, build_retrieval_context

__all__ = [
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'OllamaEmbeddingProvider',
    'EmbeddingError',
    'EmbeddingPipeline',
    'EmbeddingIndexer',
    'generate_content_text',
    'RetrievalEngine',
    'RetrievalResult',
    'EntityDetails',
    'RetrievalContext',
    'build_retrieval_context'
]
