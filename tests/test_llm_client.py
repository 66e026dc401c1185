"""Tests for the Ollama client and the backends built on it."""
import httpx
import pytest

from docgraph import config
from docgraph.llm_client import OllamaClient, OllamaEmbedder, OllamaGenerator


class FakeAsyncClient:
    """Stands in for httpx.AsyncClient; replies come from ``routes``."""

    routes = {}
    requests = []
    timeouts = []

    def __init__(self, timeout=None):
        self.timeout = timeout
        FakeAsyncClient.timeouts.append(timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def _respond(self, method, url, payload=None):
        FakeAsyncClient.requests.append({"method": method, "url": url, "json": payload})
        status, body = FakeAsyncClient.routes[url]
        return httpx.Response(status, json=body, request=httpx.Request(method, url))

    async def post(self, url, json=None):
        return self._respond("POST", url, json)

    async def get(self, url):
        return self._respond("GET", url)


@pytest.fixture
def fake_http(monkeypatch):
    FakeAsyncClient.routes = {}
    FakeAsyncClient.requests = []
    FakeAsyncClient.timeouts = []
    monkeypatch.setattr("docgraph.llm_client.httpx.AsyncClient", FakeAsyncClient)
    return FakeAsyncClient


async def test_embedder_returns_vector(fake_http):
    fake_http.routes["http://ollama:11434/api/embeddings"] = (200, {"embedding": [0.1, 0.2]})
    embedder = OllamaEmbedder(OllamaClient(base_url="http://ollama:11434/"), model="embed-model")

    assert await embedder.embed("hello") == [0.1, 0.2]
    assert fake_http.requests[0]["json"] == {"model": "embed-model", "prompt": "hello"}


async def test_embedder_rejects_empty_vector(fake_http):
    fake_http.routes["http://ollama:11434/api/embeddings"] = (200, {"embedding": []})
    embedder = OllamaEmbedder(OllamaClient(base_url="http://ollama:11434"))

    with pytest.raises(ValueError):
        await embedder.embed("hello")


async def test_generator_sends_system_and_user_messages(fake_http):
    fake_http.routes["http://ollama:11434/api/chat"] = (200, {"message": {"content": "An answer"}})
    generator = OllamaGenerator(OllamaClient(base_url="http://ollama:11434"), model="chat-model", temperature=0.1)

    answer = await generator.generate("Question?", system="Be brief")

    assert answer == "An answer"
    payload = fake_http.requests[0]["json"]
    assert payload["model"] == "chat-model"
    assert payload["stream"] is False
    assert payload["options"] == {"temperature": 0.1}
    assert payload["messages"] == [
        {"role": "system", "content": "Be brief"},
        {"role": "user", "content": "Question?"},
    ]


async def test_generator_rejects_empty_reply(fake_http):
    fake_http.routes["http://ollama:11434/api/chat"] = (200, {"message": {"content": ""}})
    generator = OllamaGenerator(OllamaClient(base_url="http://ollama:11434"))

    with pytest.raises(ValueError):
        await generator.generate("Question?")


async def test_http_errors_propagate(fake_http):
    fake_http.routes["http://ollama:11434/api/chat"] = (503, {"error": "loading"})
    client = OllamaClient(base_url="http://ollama:11434")

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        await client.chat([{"role": "user", "content": "hi"}])

    assert exc_info.value.response.status_code == 503


async def test_list_models(fake_http):
    fake_http.routes["http://ollama:11434/api/tags"] = (
        200,
        {"models": [{"name": "gemma3:12b"}, {"name": "mxbai-embed-large:latest"}]},
    )

    models = await OllamaClient(base_url="http://ollama:11434").list_models()

    assert models == ["gemma3:12b", "mxbai-embed-large:latest"]


async def test_default_timeout_outlasts_generation_policy(fake_http):
    fake_http.routes["http://ollama:11434/api/chat"] = (200, {"message": {"content": "ok"}})
    client = OllamaClient(base_url="http://ollama:11434")

    await client.chat([{"role": "user", "content": "hi"}])

    assert client.timeout >= config.GENERATION_TIMEOUT
    assert client.timeout >= config.EMBEDDING_TIMEOUT
    assert fake_http.timeouts == [client.timeout]
    assert OllamaClient(timeout=5.0).timeout == 5.0
