"""
AI Bridge

Single entry point tying configuration, caching, throttling and providers
together: look up the cache, call the provider through the dispatch queue
on a miss, and write the fresh response back to the cache.
"""

import inspect
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .cache import CacheKind, LayerCache, temperature_bucket_count
from .cache.keys import DEFAULT_CACHE_GROUP
from .config import BridgeConfig, load_config, setup_logging
from .llm.client import DeltaListener, ProviderClient
from .llm.dispatch import DispatchQueue
from .llm.providers import AnthropicClient, OpenAIEmbeddingClient, messages_to_prompt

logger = logging.getLogger(__name__)


class AiBridge:
    """
    Cached, rate-limited access to completion and embedding providers.

    Usage:
        async with AiBridge({'cache': {'jsonl': {'path': './cache'}}}) as bridge:
            text = await bridge.get_completion(
                "\\n\\nHuman: Hello\\n\\nAssistant:",
                {'model': 'claude-v1', 'max_tokens_to_sample': 256},
            )
    """

    def __init__(
        self,
        config: Optional[Union[BridgeConfig, Dict[str, Any], str, Path]] = None,
        completion_client: Optional[ProviderClient] = None,
        embedding_client: Optional[ProviderClient] = None,
        cache: Optional[LayerCache] = None,
        queue: Optional[DispatchQueue] = None,
    ):
        """
        Set up the bridge.

        Args:
            config: BridgeConfig, a dict shaped like config.DEFAULTS, or a
                    YAML file path. None searches for config.yaml.
            completion_client: Provider override for completions
            embedding_client: Provider override for embeddings
            cache: LayerCache override
            queue: DispatchQueue override

        Raises:
            ConfigError: If the configuration is invalid
        """
        if config is None or isinstance(config, (str, Path)):
            config = load_config(config)
        elif isinstance(config, dict):
            config = BridgeConfig.from_dict(config)
        self.config = config
        setup_logging(config.logging)

        self.cache = cache or LayerCache.from_config(config.cache)
        self.queue = queue or DispatchQueue(
            max_concurrency=config.dispatch.max_concurrency,
            post_call_delay=config.dispatch.post_call_delay,
        )
        self.completion_client = completion_client or AnthropicClient(
            api_key=config.anthropic.api_key,
            completion_url=config.anthropic.url,
            timeout=config.anthropic.timeout,
            max_retries=config.anthropic.max_retries,
        )
        self.embedding_client = embedding_client or OpenAIEmbeddingClient(
            api_key=config.openai.api_key,
            embedding_url=config.openai.url,
            timeout=config.openai.timeout,
            max_retries=config.openai.max_retries,
        )

        # Track statistics
        self._stats = {
            'hits': 0,
            'misses': 0,
            'total_requests': 0,
            'cache_write_failures': 0,
        }

    async def setup(self):
        """Connect cache backends that need it. Call once before use."""
        await self.cache.setup()

    async def close(self):
        await self.cache.close()
        await self.completion_client.close()
        await self.embedding_client.close()

    async def __aenter__(self) -> 'AiBridge':
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def get_completion(
        self,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        cache_group: str = DEFAULT_CACHE_GROUP,
        temp_key: int = 0,
        on_delta: Optional[DeltaListener] = None,
    ) -> str:
        """
        Return the completion for prompt, from cache when possible.

        Args:
            prompt: Prompt text
            options: Provider request fields; set "stream": True to stream
            cache_group: Namespace used to organize cache storage
            temp_key: Temperature bucket, 0 <= temp_key < temperature_bucket_count(temperature)
            on_delta: Listener called with (delta, completion_so_far); a
                      cache hit is delivered as a single delta

        Returns:
            Completion text
        """
        if not prompt:
            raise ValueError("Prompt cannot be empty")

        options = dict(options or {})
        self._check_temp_key(temp_key, options.get('temperature'))

        return await self._cached_call(
            CacheKind.COMPLETION, self.completion_client,
            prompt, options, cache_group, temp_key, on_delta,
        )

    async def get_chat_completion(
        self,
        messages: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
        cache_group: str = DEFAULT_CACHE_GROUP,
        temp_key: int = 0,
        on_delta: Optional[DeltaListener] = None,
    ) -> str:
        """Chat-style completion, flattened into a Human/Assistant prompt."""
        if not messages:
            raise ValueError("Messages cannot be empty")

        return await self.get_completion(
            messages_to_prompt(messages), options,
            cache_group=cache_group, temp_key=temp_key, on_delta=on_delta,
        )

    async def get_embedding(
        self,
        text: str,
        options: Optional[Dict[str, Any]] = None,
        cache_group: str = DEFAULT_CACHE_GROUP,
    ) -> List[float]:
        """
        Return the embedding vector for text, from cache when possible.

        Args:
            text: Text to embed
            options: Provider request fields (model, ...)
            cache_group: Namespace used to organize cache storage

        Returns:
            Embedding vector
        """
        if not text:
            raise ValueError("Embedding input cannot be empty")

        return await self._cached_call(
            CacheKind.EMBEDDING, self.embedding_client,
            text, dict(options or {}), cache_group, 0, None,
        )

    async def _cached_call(
        self,
        kind: CacheKind,
        client: ProviderClient,
        prompt: str,
        options: Dict[str, Any],
        cache_group: str,
        temp_key: int,
        on_delta: Optional[DeltaListener],
    ) -> Any:
        if options.get('raw_api'):
            # Whole provider responses carry per-call metadata, never cached
            return await self.queue.submit(lambda: client.complete(prompt, options, on_delta))

        self._stats['total_requests'] += 1

        cached = await self.cache.lookup(kind, prompt, options, cache_group, temp_key)
        if cached is not None:
            self._stats['hits'] += 1
            if on_delta is not None:
                result = on_delta(cached, cached)
                if inspect.isawaitable(result):
                    await result
            return cached

        # Cache miss - call the actual API
        self._stats['misses'] += 1
        response = await self.queue.submit(lambda: client.complete(prompt, options, on_delta))

        failures = await self.cache.store(kind, prompt, response, options, cache_group, temp_key)
        self._stats['cache_write_failures'] += len(failures)

        return response

    def _check_temp_key(self, temp_key: int, temperature: Optional[float]):
        bucket_count = temperature_bucket_count(temperature)
        if isinstance(temp_key, bool) or not isinstance(temp_key, int) or not 0 <= temp_key < bucket_count:
            raise ValueError(
                f"temp_key must be an integer in [0, {bucket_count}) for temperature {temperature}, "
                f"got {temp_key!r}"
            )

    def get_cache_stats(self) -> Dict[str, Any]:
        """
        Get caching statistics.

        Returns:
            Dict with hit/miss stats and dispatch queue counters
        """
        hit_rate = 0.0
        if self._stats['total_requests'] > 0:
            hit_rate = self._stats['hits'] / self._stats['total_requests'] * 100

        return {
            **self._stats,
            'hit_rate_percent': round(hit_rate, 1),
            'dispatch': self.queue.get_stats(),
        }
