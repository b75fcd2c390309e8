"""LLM client for the pain-point pipeline.

Wraps the OpenAI API (or any OpenAI-compatible endpoint) for chat completions
and embeddings. Every call carries a timeout and is retried with quadratic
backoff on rate limits and server errors only.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import openai
from openai import OpenAI

from painpoint.config import get_config
from painpoint.errors import (
    ConfigurationError,
    PermanentProviderError,
    ProviderError,
    RateLimited,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LLMResponse:
    """Response from LLM API."""
    content: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    attempts: int = 1


def translate_error(error: Exception) -> ProviderError:
    """Map an openai exception onto the pipeline's provider error taxonomy."""
    if isinstance(error, openai.RateLimitError):
        return RateLimited(f"Rate limited: {error}", status_code=429)
    if isinstance(error, openai.APITimeoutError):
        return TransientProviderError(f"Request timed out: {error}")
    if isinstance(error, openai.APIConnectionError):
        return TransientProviderError(f"Connection error: {error}")
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if status == 429:
            return RateLimited(f"Rate limited: {error}", status_code=status)
        if status >= 500:
            return TransientProviderError(f"Server error {status}: {error}", status_code=status)
        return PermanentProviderError(f"Request rejected {status}: {error}", status_code=status)
    return PermanentProviderError(f"Unexpected provider error: {error}")


def backoff_delay(attempt: int, base: float) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    return base * attempt ** 2


def call_with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    backoff_base: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> tuple[T, int]:
    """Run ``fn`` and retry retryable provider failures.

    Args:
        fn: Zero-argument callable performing one provider request.
        max_attempts: Total attempts including the first.
        backoff_base: Seconds multiplied by attempt squared between attempts.
        sleep: Sleep function, injectable for tests.
        label: Name used in log messages.

    Returns:
        Tuple of (fn result, number of attempts used).

    Raises:
        ProviderError: Last failure once retries are exhausted, or the first
            non-retryable failure.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except openai.OpenAIError as e:
            error = translate_error(e)
            if not error.retryable or attempt >= max_attempts:
                raise error from e
            delay = backoff_delay(attempt, backoff_base)
            logger.warning(
                f"[LLM] {label} attempt {attempt}/{max_attempts} failed ({error}), "
                f"retrying in {delay:.1f}s"
            )
            sleep(delay)


class LLMClient:
    """OpenAI client with timeout and retry/backoff."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-large",
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 300,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize LLM client.

        Args:
            model: Chat model.
            embedding_model: Embedding model.
            api_key: API key. Required unless ``client`` is given.
            base_url: Optional OpenAI-compatible endpoint.
            temperature: Default generation temperature.
            max_tokens: Default maximum tokens to generate.
            timeout: Per-request timeout in seconds.
            max_attempts: Attempts per request, retries included.
            backoff_base: Base of the quadratic backoff, in seconds.
            client: Pre-built OpenAI-compatible client (tests).
            sleep: Sleep function used between retries.

        Raises:
            ConfigurationError: If no API key is configured.
        """
        self.model = model
        self.embedding_model = embedding_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep

        if client is not None:
            self._client = client
            return

        if not api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY", "AI provider key is not configured"
            )
        # Retries are handled here, not by the SDK
        self._client = OpenAI(
            api_key=api_key,
            base_url=base_url or None,
            timeout=timeout,
            max_retries=0,
        )

    def _retry(self, fn: Callable[[], T], label: str) -> tuple[T, int]:
        return call_with_retry(
            fn,
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            sleep=self._sleep,
            label=label,
        )

    def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a response from the LLM.

        Args:
            prompt: User prompt.
            system_prompt: Optional system prompt.
            temperature: Override default temperature.
            max_tokens: Override default max tokens.
            json_mode: Ask the model for a JSON object.
            model: Override default chat model.

        Returns:
            LLMResponse with generated content.

        Raises:
            ProviderError: If generation fails.
        """
        messages = []

        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "timeout": self.timeout,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response, attempts = self._retry(
            lambda: self._client.chat.completions.create(**kwargs), "chat completion"
        )

        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=kwargs["model"],
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
            attempts=attempts,
        )

    def embed(self, text: str, dimensions: int | None = None) -> list[float]:
        """Embed a single piece of text.

        Raises:
            ProviderError: If the request fails.
        """
        kwargs: dict[str, Any] = {
            "model": self.embedding_model,
            "input": text,
            "timeout": self.timeout,
        }
        if dimensions:
            kwargs["dimensions"] = dimensions

        response, _ = self._retry(
            lambda: self._client.embeddings.create(**kwargs), "embedding"
        )
        return list(response.data[0].embedding)


def get_llm_client(
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> LLMClient:
    """Get an LLM client configured from the global config.

    Raises:
        ConfigurationError: If OPENAI_API_KEY is not set.
    """
    config = get_config()

    return LLMClient(
        model=model or config.ai.classify_model,
        embedding_model=config.ai.embedding_model,
        api_key=config.credentials.openai_api_key,
        base_url=config.ai.base_url,
        temperature=0.1 if temperature is None else temperature,
        max_tokens=max_tokens or 300,
        timeout=config.ai.timeout,
        max_attempts=config.ai.max_attempts,
        backoff_base=config.ai.backoff_base,
    )
