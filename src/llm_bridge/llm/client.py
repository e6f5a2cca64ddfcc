"""
LLM Client Base Classes

Defines the provider interface, the error hierarchy and retry handling
shared by all providers.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

import httpx

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Receives (delta, cumulative_text) for each streamed frame
DeltaListener = Callable[[str, str], Union[None, Awaitable[None]]]


class ProviderClient(ABC):
    """
    Abstract base class for upstream LLM providers.

    Providers do no caching or throttling themselves; both are applied
    around them by AiBridge.
    """

    retry_delay = 1.0

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        max_retries: int = 1,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the provider.

        Args:
            api_key: API key for authentication
            timeout: Request timeout in seconds
            max_retries: Retries for transient failures on non-streamed calls
            http_client: Pre-built httpx client (created lazily otherwise)
        """
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self._client: Optional[httpx.AsyncClient] = http_client

    def _get_client(self) -> httpx.AsyncClient:
        """Lazy initialization of the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        options: Dict[str, Any],
        on_delta: Optional[DeltaListener] = None,
    ) -> Any:
        """
        Run one request against the provider.

        Args:
            prompt: Prompt text (or embedding input)
            options: Request options, passed through to the provider
            on_delta: Listener for streamed deltas

        Returns:
            The final response (completion text or embedding vector)
        """
        pass


def raise_for_status(response: httpx.Response, provider: str):
    """Map an HTTP error status to the matching LLMError. The body must already be read."""
    if response.status_code < 400:
        return

    message = f"{provider} API error {response.status_code}: {response.text[:500]}"

    if response.status_code in (401, 403):
        raise AuthenticationError(message)
    if response.status_code == 429:
        raise RateLimitError(message)
    raise ProviderError(message, status_code=response.status_code)


def is_retryable(error: Exception) -> bool:
    """Transient failures worth another attempt."""
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, ProviderError):
        return error.status_code is None or error.status_code >= 500
    return isinstance(error, (httpx.TransportError, asyncio.TimeoutError))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 1,
    base_delay: float = 1.0,
    description: str = 'LLM request',
) -> T:
    """
    Await fn() with automatic retry on transient failures.

    Uses exponential backoff for rate limits and network errors.

    Args:
        fn: Zero-argument coroutine function performing one attempt
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds (doubles each retry)
        description: Used in log messages

    Returns:
        Result of the first successful attempt

    Raises:
        Exception: The last error, once retries are exhausted or the error
                   is not retryable
    """
    last_exception = None
    delay = base_delay

    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            last_exception = e
            if not is_retryable(e) or attempt == max_retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                raise

            logger.warning(f"{description} failed (attempt {attempt + 1}/{max_retries + 1}), "
                           f"retrying in {delay}s: {e}")
            await asyncio.sleep(delay)
            delay *= 2  # Exponential backoff

    raise last_exception


class LLMError(Exception):
    """Base exception for LLM-related errors."""
    pass


class ProviderError(LLMError):
    """Raised for provider-specific errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(LLMError):
    """Raised when rate limit is exceeded."""
    pass


class AuthenticationError(LLMError):
    """Raised when authentication fails."""
    pass


class StreamProtocolError(LLMError):
    """Raised when a streamed response is malformed or truncated."""
    pass
