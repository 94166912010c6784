"""HTTP clients for OpenAI-compatible endpoints.

Works with any server implementing /chat/completions and /embeddings:
Ollama, llama.cpp server, LM Studio, OpenAI, DeepSeek and similar.
"""

import asyncio
import logging
from typing import Any, Sequence

import httpx

from ..config import MAX_EMBED_CONCURRENCY
from ..errors import (
    ClawMemError,
    EmbedderError,
    EmbedderTimeoutError,
    LLMError,
    LLMTimeoutError,
)

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})


class _OpenAICompatClient:
    """Shared POST-with-retry logic for both clients."""

    error_class: type[ClawMemError] = ClawMemError
    timeout_error_class: type[ClawMemError] = ClawMemError

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key or "local"
        self._timeout = timeout
        self._max_retries = max(0, max_retries)
        self._retry_backoff = retry_backoff
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self._api_key}"},
                transport=self._transport,
            )
        return self._client

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST JSON and return the decoded response, retrying 429/5xx."""
        client = self._get_client()
        attempt = 0
        while True:
            try:
                response = await asyncio.wait_for(client.post(path, json=body), self._timeout)
            except (httpx.TimeoutException, asyncio.TimeoutError):
                raise self.timeout_error_class(
                    f"Request to {path} timed out after {self._timeout}s"
                ) from None
            except httpx.RequestError as e:
                raise self.error_class(f"Request to {path} failed: {e}") from e

            if response.status_code in RETRY_STATUSES and attempt < self._max_retries:
                delay = self._retry_backoff * (2**attempt)
                attempt += 1
                logger.warning(
                    "%s returned %d, retry %d/%d in %.2fs",
                    path, response.status_code, attempt, self._max_retries, delay,
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                raise self.error_class(
                    f"Request to {path} failed ({response.status_code}): {response.text[:500]}"
                )
            try:
                return response.json()
            except ValueError as e:
                raise self.error_class(f"Invalid JSON from {path}: {e}") from e

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenAICompatLLM(_OpenAICompatClient):
    """LLM over a /chat/completions endpoint."""

    error_class = LLMError
    timeout_error_class = LLMTimeoutError

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.1,
        max_tokens: int = 4096,
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, api_key, timeout, max_retries, retry_backoff, transport)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self, messages: list[dict[str, str]], json_mode: bool = False
    ) -> str:
        """Send a chat completion and return the response text.

        Raises:
            LLMTimeoutError: No response within the timeout.
            LLMError: HTTP failure, exhausted retries, or empty content.
        """
        body: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        data = await self._post("/chat/completions", body)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise LLMError("LLM response has no choices") from None
        if content is None:
            raise LLMError("LLM returned empty response")
        return content


class OpenAICompatEmbedder(_OpenAICompatClient):
    """Embedder over an /embeddings endpoint.

    embed_batch() splits the input into chunks of `batch_size` and runs up to
    `concurrency` requests at once, never more than MAX_EMBED_CONCURRENCY.
    Each worker claims the next chunk index and writes its vectors into a
    pre-sized result list, so the output order always matches the input
    order. When a request fails the other workers are cancelled before the
    error propagates.
    """

    error_class = EmbedderError
    timeout_error_class = EmbedderTimeoutError

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        model: str = "nomic-embed-text",
        dimension: int = 768,
        batch_size: int = 10,
        concurrency: int = 2,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, api_key, timeout, max_retries, retry_backoff, transport)
        self._model = model
        self._dimension = dimension
        self._batch_size = max(1, batch_size)
        self._concurrency = max(1, min(concurrency, MAX_EMBED_CONCURRENCY))

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        vectors = await self._request([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        chunks = [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]
        results: list[list[list[float]]] = [[] for _ in chunks]
        next_index = 0

        async def worker() -> None:
            nonlocal next_index
            while next_index < len(chunks):
                index = next_index
                next_index += 1
                results[index] = await self._request(chunks[index])

        tasks = [
            asyncio.create_task(worker()) for _ in range(min(self._concurrency, len(chunks)))
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [vector for chunk in results for vector in chunk]

    async def _request(self, inputs: list[str]) -> list[list[float]]:
        data = await self._post("/embeddings", {"model": self._model, "input": inputs})
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or len(items) != len(inputs):
            raise EmbedderError(
                f"Embedder returned {len(items) if isinstance(items, list) else 0} "
                f"vectors for {len(inputs)} inputs"
            )
        items = sorted(items, key=lambda item: item.get("index", 0))
        return [list(item["embedding"]) for item in items]
