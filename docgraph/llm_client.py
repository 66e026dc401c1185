"""Ollama HTTP client and the embedding / text-generation backends built on it."""
from typing import Dict, List, Optional

import httpx
import structlog

from docgraph import config

logger = structlog.get_logger()


class OllamaClient:
    """Async client for the Ollama API."""

    def __init__(self, base_url: str = None, timeout: Optional[float] = None):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            timeout: Request timeout in seconds (defaults to the longest backend
                policy timeout)
        """
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        if timeout is None:
            timeout = max(config.EMBEDDING_TIMEOUT, config.GENERATION_TIMEOUT)
        self.timeout = timeout

    async def _post(self, path: str, payload: Dict) -> Dict:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(f"{self.base_url}{path}", json=payload)
            response.raise_for_status()
            return response.json()

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> Dict:
        """Send a non-streaming chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to config.CHAT_MODEL)
            temperature: Sampling temperature (0.0-2.0)

        Returns:
            Response dict with 'message' containing 'content'

        Raises:
            httpx.HTTPError: On API errors
        """
        model = model or config.CHAT_MODEL

        payload = {"model": model, "messages": messages, "stream": False}
        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        logger.info("ollama_chat_request", model=model, message_count=len(messages))

        try:
            data = await self._post("/api/chat", payload)
        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise
        except httpx.HTTPError as e:
            logger.error(
                "ollama_http_error",
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise

        logger.info(
            "ollama_chat_response",
            model=model,
            response_length=len(data.get("message", {}).get("content", "")),
        )
        return data

    async def embeddings(self, prompt: str, model: str = None) -> Dict:
        """Generate an embedding for a text prompt.

        Returns:
            Response dict with 'embedding' list

        Raises:
            httpx.HTTPError: On API errors
        """
        model = model or config.EMBEDDING_MODEL

        try:
            data = await self._post("/api/embeddings", {"model": model, "prompt": prompt})
        except httpx.HTTPError as e:
            logger.error("ollama_embedding_error", error=str(e))
            raise

        logger.debug(
            "ollama_embedding_response",
            model=model,
            prompt_length=len(prompt),
            dimension=len(data.get("embedding", [])),
        )
        return data

    async def list_models(self) -> List[str]:
        """List available model names.

        Raises:
            httpx.HTTPError: On API errors
        """
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise


class OllamaEmbedder:
    """EmbeddingService backed by an Ollama embedding model."""

    def __init__(self, client: OllamaClient = None, model: str = None):
        self.client = client or OllamaClient()
        self.model = model or config.EMBEDDING_MODEL

    async def embed(self, text: str) -> List[float]:
        response = await self.client.embeddings(prompt=text, model=self.model)
        embedding = response.get("embedding", [])
        if not embedding:
            raise ValueError("Empty embedding returned from Ollama")
        return embedding


class OllamaGenerator:
    """TextGenerator backed by an Ollama chat model."""

    def __init__(self, client: OllamaClient = None, model: str = None, temperature: float = 0.2):
        self.client = client or OllamaClient()
        self.model = model or config.CHAT_MODEL
        self.temperature = temperature

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await self.client.chat(
            messages, model=self.model, temperature=self.temperature
        )
        content = response.get("message", {}).get("content", "")
        if not content:
            raise ValueError("Empty response from Ollama")
        return content
