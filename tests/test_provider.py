"""
Ollama provider health and streaming chat, with the client mocked out.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import Mock

import ollama
import pytest

from crm_assistant.agents.provider import (
    OllamaChatProvider,
    ProviderUnavailableError,
    check_provider_health,
)


def listing(*names):
    return {"models": [{"model": name} for name in names]}


class TestProviderHealth:

    def test_configured_models(self):
        client = Mock()
        client.list.return_value = listing("phi3:3.8b", "nomic-embed-text:latest")

        health = check_provider_health(client, llm_model="phi3:3.8b", embed_model="nomic-embed-text")

        assert health["available"] is True
        assert health["mode"] == "local"
        assert health["hasLLM"] is True
        assert health["llmModel"] == "phi3:3.8b"
        assert health["embeddingModel"] == "nomic-embed-text"

    def test_falls_back_to_known_family(self):
        client = Mock()
        client.list.return_value = listing("llama3:8b", "mxbai-embed-large")

        health = check_provider_health(client, llm_model="phi3:3.8b", embed_model="nomic-embed-text")

        assert health["llmModel"] == "llama3:8b"
        assert health["embeddingModel"] == "mxbai-embed-large"

    def test_no_usable_models(self):
        client = Mock()
        client.list.return_value = listing("stable-diffusion")

        health = check_provider_health(client, llm_model="phi3:3.8b", embed_model="nomic-embed-text")

        assert health["available"] is True
        assert health["hasLLM"] is False
        assert health["hasEmbeddings"] is False

    def test_typed_listing(self):
        client = Mock()
        client.list.return_value = SimpleNamespace(models=[SimpleNamespace(model="qwen2:7b")])

        health = check_provider_health(client, llm_model="phi3:3.8b")

        assert health["models"] == ["qwen2:7b"]
        assert health["llmModel"] == "qwen2:7b"

    def test_unreachable_server(self):
        client = Mock()
        client.list.side_effect = ConnectionError("refused")

        health = check_provider_health(client)

        assert health["available"] is False
        assert health["mode"] == "unavailable"
        assert health["models"] == []


class FakeAsyncClient:
    def __init__(self, parts=None, error=None):
        self.parts = parts or []
        self.error = error
        self.requests = []

    async def chat(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error

        async def stream():
            for part in self.parts:
                yield part
        return stream()


def collect(provider, messages, system_prompt="You are helpful."):
    async def run():
        return [delta async for delta in provider.stream_chat(messages, system_prompt)]
    return asyncio.run(run())


class TestOllamaChatProvider:

    def test_streams_deltas_after_system_prompt(self):
        client = FakeAsyncClient(parts=[
            {"message": {"role": "assistant", "content": "Hel"}},
            {"message": {"role": "assistant", "content": ""}},
            {"message": {"role": "assistant", "content": "lo"}},
            {"done": True},
        ])
        provider = OllamaChatProvider(model_name="phi3:3.8b", client=client)

        deltas = collect(provider, [{"role": "user", "content": "Hi"}])

        assert deltas == ["Hel", "lo"]
        request = client.requests[0]
        assert request["model"] == "phi3:3.8b"
        assert request["stream"] is True
        assert request["messages"][0] == {"role": "system", "content": "You are helpful."}
        assert request["messages"][1] == {"role": "user", "content": "Hi"}

    def test_connection_failure(self):
        provider = OllamaChatProvider(client=FakeAsyncClient(error=ConnectionError("refused")))
        with pytest.raises(ProviderUnavailableError):
            collect(provider, [{"role": "user", "content": "Hi"}])

    def test_model_error(self):
        provider = OllamaChatProvider(client=FakeAsyncClient(error=ollama.ResponseError("model not found")))
        with pytest.raises(ProviderUnavailableError, match="model not found"):
            collect(provider, [{"role": "user", "content": "Hi"}])
