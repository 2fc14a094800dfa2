"""
Assistant configuration.
Environment-driven settings for the store, providers, retrieval, windowing and streaming.
"""

import os
from typing import List
from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/assistant.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Language-model provider (Ollama)
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "phi3:3.8b")
OLLAMA_EMBED_MODEL = os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text")
OLLAMA_HEALTH_TTL_SEC = int(os.getenv("OLLAMA_HEALTH_TTL_SEC", "30"))

# Embedding pipeline
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "ollama")  # ollama|hash|none
EMBED_DIMENSION = int(os.getenv("EMBED_DIMENSION", "384"))
EMBED_MAX_CONTENT_CHARS = int(os.getenv("EMBED_MAX_CONTENT_CHARS", "10000"))
EMBED_MAX_RETRIES = int(os.getenv("EMBED_MAX_RETRIES", "3"))
EMBED_BACKOFF_BASE_SEC = float(os.getenv("EMBED_BACKOFF_BASE_SEC", "1"))
EMBED_BACKOFF_MAX_SEC = float(os.getenv("EMBED_BACKOFF_MAX_SEC", "5"))
EMBED_WORKERS = int(os.getenv("EMBED_WORKERS", "2"))
EMBED_QUEUE_LIMIT = int(os.getenv("EMBED_QUEUE_LIMIT", "256"))

# Retrieval ranking
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "8"))
RETRIEVAL_MIN_SIMILARITY = float(os.getenv("RETRIEVAL_MIN_SIMILARITY", "0.3"))
FRESHNESS_WEIGHT = float(os.getenv("FRESHNESS_WEIGHT", "0.15"))
FRESHNESS_WINDOW_SEC = int(os.getenv("FRESHNESS_WINDOW_SEC", "2592000"))  # 30 days
KEYWORD_MATCH_SCORE = float(os.getenv("KEYWORD_MATCH_SCORE", "0.7"))

# Conversation window
WINDOW_MAX_ACTIVE_MESSAGES = int(os.getenv("WINDOW_MAX_ACTIVE_MESSAGES", "20"))
WINDOW_SUMMARY_TRIGGER = int(os.getenv("WINDOW_SUMMARY_TRIGGER", "15"))
WINDOW_MAX_SUMMARY_CHARS = int(os.getenv("WINDOW_MAX_SUMMARY_CHARS", "500"))

# Streaming
STREAM_FIRST_CHUNK_TIMEOUT_SEC = float(os.getenv("STREAM_FIRST_CHUNK_TIMEOUT_SEC", "60"))

# Admission control
RATE_LIMIT_WINDOW_SEC = int(os.getenv("RATE_LIMIT_WINDOW_SEC", "60"))
CHAT_RATE_LIMIT = int(os.getenv("CHAT_RATE_LIMIT", "10"))
THREAD_RATE_LIMIT = int(os.getenv("THREAD_RATE_LIMIT", "30"))

# Request limits
CHAT_MAX_MESSAGE_CHARS = int(os.getenv("CHAT_MAX_MESSAGE_CHARS", "4000"))
THREAD_TITLE_MAX_CHARS = int(os.getenv("THREAD_TITLE_MAX_CHARS", "200"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

# Version string
VERSION = "1.0.0"


def get_db_path() -> str:
    """Database path, re-read so tests can point at a temporary file."""
    return os.getenv("DB_PATH", DB_PATH)


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_embed_provider_name() -> str:
    return os.getenv("EMBED_PROVIDER", EMBED_PROVIDER).lower()


def embeddings_enabled():
    """Check if an embedding provider is configured at all."""
    return get_embed_provider_name() != "none"


def get_embedding_provider():
    """Get configured embedding provider implementation. Returns None if embeddings disabled."""
    if not embeddings_enabled():
        return None

    provider_name = get_embed_provider_name()
    if provider_name == "hash":
        from ..vector.embeddings import DeterministicHashEmbedding
        return DeterministicHashEmbedding(dimension=EMBED_DIMENSION)

    from ..vector.embeddings import OllamaEmbeddingProvider
    return OllamaEmbeddingProvider(host=OLLAMA_HOST, model_name=OLLAMA_EMBED_MODEL)


def get_chat_provider():
    """Get the streaming chat provider."""
    from ..agents.provider import OllamaChatProvider
    return OllamaChatProvider(host=OLLAMA_HOST, model_name=OLLAMA_MODEL)


def validate_config() -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    if get_embed_provider_name() not in ["ollama", "hash", "none"]:
        issues.append(f"Invalid EMBED_PROVIDER: {get_embed_provider_name()}")

    if not 0 <= FRESHNESS_WEIGHT <= 1:
        issues.append("FRESHNESS_WEIGHT must be between 0 and 1")

    if FRESHNESS_WINDOW_SEC < 1:
        issues.append("FRESHNESS_WINDOW_SEC must be >= 1")

    if EMBED_MAX_RETRIES < 1:
        issues.append("EMBED_MAX_RETRIES must be >= 1")

    if WINDOW_SUMMARY_TRIGGER > WINDOW_MAX_ACTIVE_MESSAGES + 1:
        issues.append("WINDOW_SUMMARY_TRIGGER should not exceed WINDOW_MAX_ACTIVE_MESSAGES + 1")

    if STREAM_FIRST_CHUNK_TIMEOUT_SEC <= 0:
        issues.append("STREAM_FIRST_CHUNK_TIMEOUT_SEC must be > 0")

    return issues
