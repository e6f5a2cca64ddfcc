"""
Anthropic Claude Provider

Implements ProviderClient for Anthropic's text completion endpoint,
including the streamed (server-sent event) variant.
"""

import os
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from ..client import (
    DeltaListener,
    ProviderClient,
    ProviderError,
    AuthenticationError,
    call_with_retry,
    raise_for_status,
)
from ..streaming import StreamDecoder

logger = logging.getLogger(__name__)

COMPLETION_URL = 'https://api.anthropic.com/v1/complete'


def messages_to_prompt(messages: List[Dict[str, str]]) -> str:
    """
    Flatten chat messages into a Human/Assistant prompt.

    Args:
        messages: [{"role": "system"|"user"|"human"|"assistant", "content": "..."}]

    Returns:
        Prompt string ending with the "Assistant:" cue
    """
    prompt = "\n\n"
    for message in messages:
        role = str(message.get('role', '')).lower()
        content = message.get('content', '')
        if role in ('system', 'user', 'human'):
            prompt += f"Human: {content}\n\n"
        elif role == 'assistant':
            prompt += f"Assistant: {content}\n\n"
        else:
            raise ValueError(f"Unsupported chat message role: {role!r}")

    return prompt + "Assistant:"


class AnthropicClient(ProviderClient):
    """
    Anthropic text completion client.

    Environment variables:
        ANTHROPIC_API_KEY: API key for authentication
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        completion_url: str = COMPLETION_URL,
        timeout: float = 120.0,
        max_retries: int = 1,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Anthropic client.

        Args:
            api_key: API key (default: from ANTHROPIC_API_KEY env var)
            completion_url: Completion endpoint
            timeout: Request timeout in seconds
            max_retries: Retries for non-streamed requests
            http_client: Pre-built httpx client
        """
        super().__init__(
            api_key=api_key or os.environ.get('ANTHROPIC_API_KEY'),
            timeout=timeout,
            max_retries=max_retries,
            http_client=http_client,
        )
        self.completion_url = completion_url

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise AuthenticationError(
                "Anthropic API key not found. Set ANTHROPIC_API_KEY environment variable "
                "or configure providers.anthropic.api_key."
            )
        return {
            'Content-Type': 'application/json',
            'x-api-key': self.api_key,
        }

    def build_request(self, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """Request body: options as given, minus null values."""
        body = {
            key: value
            for key, value in options.items()
            if value is not None
        }
        body['prompt'] = prompt
        return body

    async def complete(
        self,
        prompt: str,
        options: Dict[str, Any],
        on_delta: Optional[DeltaListener] = None,
    ) -> str:
        """
        Generate a completion.

        Streams when options["stream"] is True; streamed requests are not
        retried, since deltas may already have been delivered.

        Args:
            prompt: Full prompt text
            options: Provider request fields (model, max_tokens_to_sample, ...).
                     "raw_api": True returns the whole JSON response of a
                     non-streamed request; it is never sent upstream.
            on_delta: Listener for streamed deltas

        Returns:
            Completion text, or the response JSON with raw_api
        """
        if not prompt:
            raise ValueError("Prompt cannot be empty")

        options = dict(options)
        raw_api = bool(options.pop('raw_api', False))
        body = self.build_request(prompt, options)
        headers = self._headers()

        if body.get('stream') is True:
            return await self._stream(body, headers, on_delta)

        return await call_with_retry(
            lambda: self._request(body, headers, raw_api),
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            description='Anthropic completion',
        )

    async def _request(
        self,
        body: Dict[str, Any],
        headers: Dict[str, str],
        raw_api: bool = False,
    ) -> Union[str, Dict[str, Any]]:
        response = await self._get_client().post(self.completion_url, json=body, headers=headers)
        raise_for_status(response, 'Anthropic')

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Anthropic returned invalid JSON: {e}") from e

        if data.get('error'):
            error = data['error']
            raise ProviderError(f"[{error.get('type', 'error')}] {error.get('message', '')}")

        completion = data.get('completion')
        if not isinstance(completion, str):
            logger.warning(f"Missing completion in Anthropic response: {str(data)[:500]}")
            raise ProviderError("Missing valid Anthropic response, see warning logs for details")

        if raw_api:
            return data
        return completion

    async def _stream(
        self,
        body: Dict[str, Any],
        headers: Dict[str, str],
        on_delta: Optional[DeltaListener],
    ) -> str:
        decoder = StreamDecoder(on_delta=on_delta)

        async with self._get_client().stream('POST', self.completion_url, json=body, headers=headers) as response:
            if response.status_code >= 400:
                await response.aread()
                raise_for_status(response, 'Anthropic')

            return await decoder.decode(response.aiter_bytes())
