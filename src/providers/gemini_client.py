"""Gemini client wrapper using google-genai SDK.

Uses response_mime_type="application/json" with a per-call response_schema to
get structured JSON output. Each request runs under a timeout in a worker
thread and the whole call is retried through the shared RetryPolicy. The
timeout is also passed to the SDK, so a timed-out request does not keep a
worker busy.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Any, Dict, Optional

from src.common.config import GeminiConfig
from src.common.retry import (
    ProviderError,
    RateLimitError,
    RetryPolicy,
    TransientError,
    run_with_timeout,
    with_retry,
)

logger = logging.getLogger(__name__)

# Enough workers for every LLM processor of a turn at the highest job concurrency.
DEFAULT_MAX_WORKERS = 150


class GeminiClientError(ProviderError):
    """Base exception for Gemini client errors."""

    pass


class GeminiAPIError(GeminiClientError):
    """Non-retryable error from a Gemini API call."""

    pass


class GeminiTransientError(GeminiAPIError, TransientError):
    """5xx or connection failure, retried."""

    pass


class GeminiRateLimitError(GeminiAPIError, RateLimitError):
    """429 / quota exhaustion, retried with a longer delay."""

    pass


class GeminiParseError(GeminiClientError):
    """Response was empty or not valid JSON."""

    pass


class GeminiTimeoutError(GeminiClientError, TransientError):
    """Gemini call exceeded timeout."""

    pass


def _classify(error: Exception) -> GeminiClientError:
    message = str(error)
    lowered = message.lower()
    if "429" in message or "rate limit" in lowered or "resource exhausted" in lowered or "quota" in lowered:
        return GeminiRateLimitError(f"Rate limit exceeded: {message}")
    if any(code in message for code in ("500", "502", "503", "504")) or "unavailable" in lowered:
        return GeminiTransientError(f"Transient error: {message}")
    return GeminiAPIError(f"API error: {message}")


class GeminiClient:
    """Client for structured generation calls to Gemini."""

    def __init__(
        self,
        config: GeminiConfig,
        retry_policy: Optional[RetryPolicy] = None,
        client: Any = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        """Initialize the Gemini client.

        Args:
            config: Gemini configuration with model, temperature, timeout.
            retry_policy: Backoff policy; defaults to RetryPolicy().
            client: Optional pre-built genai.Client (used by tests).
            max_workers: Size of the pool that runs calls under the timeout.
        """
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gemini-call")

    def _get_client(self):
        """Lazy-load the google-genai client."""
        if self._client is None:
            from google import genai
            from google.genai.types import HttpOptions

            try:
                self._client = genai.Client(
                    vertexai=True,
                    project=None,  # Uses GOOGLE_CLOUD_PROJECT from env
                    location=self.config.location,
                    http_options=HttpOptions(
                        api_version="v1",
                        timeout=int(self.config.request_timeout_sec * 1000),
                    ),
                )
            except Exception as e:
                raise GeminiClientError(f"Failed to initialize Gemini client: {e}") from e
        return self._client

    def _make_api_call(self, prompt: str, response_schema: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        from google.genai import types

        config = types.GenerateContentConfig(
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_output_tokens,
            response_mime_type="application/json",
            response_schema=response_schema,
        )
        try:
            response = client.models.generate_content(
                model=self.config.model,
                contents=prompt,
                config=config,
            )
        except Exception as e:
            classified = _classify(e)
            logger.warning("Gemini call failed", extra={"error": str(e), "error_type": type(classified).__name__})
            raise classified from e

        if not response.text:
            raise GeminiParseError("Empty response from Gemini")
        try:
            parsed = json.loads(response.text)
        except json.JSONDecodeError as e:
            raise GeminiParseError(f"Invalid JSON in Gemini response: {e}") from e
        if not isinstance(parsed, dict):
            raise GeminiParseError(f"Expected a JSON object, got {type(parsed).__name__}")
        return parsed

    def _call_with_timeout(self, prompt: str, response_schema: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return run_with_timeout(
                self._executor,
                lambda: self._make_api_call(prompt, response_schema),
                self.config.request_timeout_sec,
            )
        except FuturesTimeoutError:
            raise GeminiTimeoutError(f"Gemini request exceeded timeout of {self.config.request_timeout_sec}s")

    def generate(self, prompt: str, response_schema: Dict[str, Any]) -> Dict[str, Any]:
        """Generate a JSON object matching ``response_schema``.

        Raises:
            GeminiTimeoutError: If every attempt timed out.
            GeminiAPIError: If the API call fails.
            GeminiParseError: If the response is not a JSON object.
        """
        return with_retry(
            self.retry_policy,
            lambda: self._call_with_timeout(prompt, response_schema),
            description=f"gemini:{self.config.model}",
        )

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "max_output_tokens": self.config.max_output_tokens,
            "location": self.config.location,
        }
