"""LLM client backed by the Groq SDK."""

import asyncio
import logging

import groq
from groq import AsyncGroq

from ..errors import LLMError, LLMTimeoutError

logger = logging.getLogger(__name__)


class GroqLLM:
    """LLM implementation that wraps AsyncGroq.

    Example:
        from groq import AsyncGroq
        from clawmem.backends.groq_llm import GroqLLM

        llm = GroqLLM(AsyncGroq(api_key="..."), model="llama-3.1-70b-versatile")
        text = await llm.complete([{"role": "user", "content": "Hi"}])
    """

    def __init__(
        self,
        client: AsyncGroq,
        model: str = "llama-3.1-70b-versatile",
        temperature: float = 0.1,
        max_tokens: int = 4096,
        timeout: float = 60.0,
    ) -> None:
        """Initialize the Groq LLM client wrapper.

        Args:
            client: The AsyncGroq client instance to wrap.
            model: The model to use for completions.
            temperature: Sampling temperature.
            max_tokens: Completion cap.
            timeout: Seconds before the request is abandoned.
        """
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout

    @property
    def model(self) -> str:
        """Return the model being used."""
        return self._model

    async def complete(
        self, messages: list[dict[str, str]], json_mode: bool = False
    ) -> str:
        """Send a chat completion and return the response text.

        Raises:
            LLMTimeoutError: No response within the timeout.
            LLMError: The API call failed or returned no content.
        """
        kwargs = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise LLMTimeoutError(f"Groq request timed out after {self._timeout}s") from None
        except groq.APITimeoutError as e:
            raise LLMTimeoutError(f"Groq request timed out: {e}") from e
        except groq.APIError as e:
            raise LLMError(f"Groq request failed: {e}") from e

        if not response.choices:
            raise LLMError("Groq returned no choices")
        content = response.choices[0].message.content
        if content is None:
            raise LLMError("Groq returned an empty message")
        return content
