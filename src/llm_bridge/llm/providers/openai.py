"""
OpenAI Embedding Provider

Implements ProviderClient for OpenAI's embeddings endpoint.
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

logger = logging.getLogger(__name__)

EMBEDDING_URL = 'https://api.openai.com/v1/embeddings'


class OpenAIEmbeddingClient(ProviderClient):
    """
    OpenAI embeddings client.

    Environment variables:
        OPENAI_API_KEY: API key for authentication
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        embedding_url: str = EMBEDDING_URL,
        timeout: float = 60.0,
        max_retries: int = 1,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            api_key=api_key or os.environ.get('OPENAI_API_KEY'),
            timeout=timeout,
            max_retries=max_retries,
            http_client=http_client,
        )
        self.embedding_url = embedding_url

    async def complete(
        self,
        prompt: str,
        options: Dict[str, Any],
        on_delta: Optional[DeltaListener] = None,
    ) -> List[float]:
        """
        Embed a single input text.

        Args:
            prompt: Text to embed
            options: Request fields (model, ...); "raw_api": True returns
                     the whole JSON response and is never sent upstream
            on_delta: Unused, embeddings are not streamed

        Returns:
            Embedding vector, or the response JSON with raw_api
        """
        if not self.api_key:
            raise AuthenticationError(
                "OpenAI API key not found. Set OPENAI_API_KEY environment variable "
                "or configure providers.openai.api_key."
            )

        raw_api = bool(options.get('raw_api', False))
        body = {
            key: value
            for key, value in options.items()
            if value is not None and key != 'raw_api'
        }
        body['input'] = prompt
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f"Bearer {self.api_key}",
        }

        return await call_with_retry(
            lambda: self._request(body, headers, raw_api),
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            description='OpenAI embedding',
        )

    async def _request(
        self,
        body: Dict[str, Any],
        headers: Dict[str, str],
        raw_api: bool = False,
    ) -> Union[List[float], Dict[str, Any]]:
        response = await self._get_client().post(self.embedding_url, json=body, headers=headers)
        raise_for_status(response, 'OpenAI')

        try:
            data = response.json()
            embedding = data['data'][0]['embedding']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Unexpected OpenAI embedding response: {response.text[:500]}")
            raise ProviderError(f"Missing valid OpenAI embedding response: {e}") from e

        if raw_api:
            return data
        return embedding
