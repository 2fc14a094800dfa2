"""
Ollama language-model provider: streaming chat and installed-model health.
"""

from typing import Any, AsyncIterator, Dict, List, Optional

import ollama

from ..core.config import OLLAMA_EMBED_MODEL, OLLAMA_HOST, OLLAMA_MODEL
from ..util.logging import logger

LLM_MODEL_FAMILIES = ['llama', 'mistral', 'codellama', 'qwen', 'phi']
EMBED_MODEL_FAMILIES = ['nomic-embed', 'mxbai-embed', 'all-minilm']


class ProviderUnavailableError(RuntimeError):
    """Raised when no chat-capable model can be reached."""


def _model_name(model: Any) -> str:
    # ollama>=0.4 returns typed models; older clients return plain dicts
    name = getattr(model, 'model', None)
    if name:
        return name
    if isinstance(model, dict):
        return model.get('model') or model.get('name') or ''
    return ''


def _unavailable() -> Dict[str, Any]:
    return {
        'available': False,
        'mode': 'unavailable',
        'models': [],
        'hasLLM': False,
        'hasEmbeddings': False,
        'llmModel': None,
        'embeddingModel': None,
    }


def check_provider_health(client: ollama.Client = None, llm_model: str = OLLAMA_MODEL,
                          embed_model: str = OLLAMA_EMBED_MODEL) -> Dict[str, Any]:
    """
    Report which chat and embedding models the local Ollama server offers.
    The configured model is preferred; otherwise the first installed model
    of a known family is chosen. Never raises.
    """
    client = client or ollama.Client(host=OLLAMA_HOST)
    try:
        listing = client.list()
    except Exception as e:
        logger.warning(f"Ollama health check failed: {e}")
        return _unavailable()

    raw_models = getattr(listing, 'models', None)
    if raw_models is None and isinstance(listing, dict):
        raw_models = listing.get('models', [])
    models = [name for name in (_model_name(m) for m in raw_models or []) if name]

    llm_models = [m for m in models if any(f in m for f in LLM_MODEL_FAMILIES)]
    embed_models = [m for m in models if any(f in m for f in EMBED_MODEL_FAMILIES)]

    chosen_llm = llm_model if any(m.startswith(llm_model) for m in models) else (llm_models[0] if llm_models else None)
    chosen_embed = embed_model if any(m.startswith(embed_model) for m in models) else (embed_models[0] if embed_models else None)

    return {
        'available': True,
        'mode': 'local',
        'models': models,
        'hasLLM': chosen_llm is not None,
        'hasEmbeddings': chosen_embed is not None,
        'llmModel': chosen_llm,
        'embeddingModel': chosen_embed,
    }


class OllamaChatProvider:
    """Streams chat completions from a local Ollama server."""

    def __init__(self, host: str = OLLAMA_HOST, model_name: str = OLLAMA_MODEL,
                 client: ollama.AsyncClient = None, options: Optional[Dict[str, Any]] = None):
        self.host = host
        self.model_name = model_name
        self.client = client or ollama.AsyncClient(host=host)
        self.options = options or {'temperature': 0.7, 'top_p': 0.9}

    async def stream_chat(self, messages: List[Dict[str, str]], system_prompt: str) -> AsyncIterator[str]:
        """Yield text deltas for the completion of `messages` under `system_prompt`."""
        payload = [{'role': 'system', 'content': system_prompt}] + list(messages)
        try:
            stream = await self.client.chat(
                model=self.model_name,
                messages=payload,
                stream=True,
                options=self.options
            )
        except ollama.ResponseError as e:
            raise ProviderUnavailableError(f"Ollama model error: {e}")
        except ConnectionError as e:
            raise ProviderUnavailableError(f"Ollama is not reachable at {self.host}: {e}")

        async for part in stream:
            content = part['message']['content'] if part.get('message') else ''
            if content:
                yield content
