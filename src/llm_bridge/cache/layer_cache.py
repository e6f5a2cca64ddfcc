"""
Layered Cache

Fans cache lookups and stores out across the enabled backends. Lookups try
backends in order and stop at the first hit; stores write through to every
backend concurrently.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from .base import CacheBackend, CacheWriteError
from .jsonl_cache import JsonlCache
from .keys import (
    DEFAULT_CACHE_GROUP,
    CacheKey,
    CacheKind,
    CacheRecord,
    derive_cache_key,
)
from .redis_cache import RedisCache
from ..config import CacheConfig

logger = logging.getLogger(__name__)


class LayerCache:
    """
    Multi-backend cache for completions and embeddings.

    Caching is best effort: lookup faults become misses and store faults
    are logged and reported, never raised.
    """

    def __init__(
        self,
        backends: Optional[Sequence[CacheBackend]] = None,
        completion_cache: bool = True,
        embedding_cache: bool = True,
    ):
        """
        Initialize the layered cache.

        Args:
            backends: Backends in lookup order (may be empty)
            completion_cache: Enable caching of completions
            embedding_cache: Enable caching of embeddings
        """
        self.backends: List[CacheBackend] = list(backends or [])
        self.completion_cache = completion_cache
        self.embedding_cache = embedding_cache

    @classmethod
    def from_config(cls, config: CacheConfig) -> 'LayerCache':
        """Build the backends enabled in config: JSONL first, then Redis."""
        backends: List[CacheBackend] = []
        if config.jsonl.enable:
            backends.append(JsonlCache(config.jsonl.path, lock_timeout=config.jsonl.lock_timeout))
        if config.redis.enable:
            backends.append(RedisCache(config.redis.url, namespace=config.redis.namespace))

        logger.info(
            f"Cache backends: {[b.name for b in backends] or 'none'} "
            f"(completions={'on' if config.completion_cache else 'off'}, "
            f"embeddings={'on' if config.embedding_cache else 'off'})"
        )
        return cls(
            backends,
            completion_cache=config.completion_cache,
            embedding_cache=config.embedding_cache,
        )

    async def setup(self):
        """Run async setup (connections) for every backend."""
        for backend in self.backends:
            await backend.setup()

    async def close(self):
        for backend in self.backends:
            await backend.close()

    def is_enabled(self, kind: CacheKind) -> bool:
        if not self.backends:
            return False
        if CacheKind(kind) is CacheKind.EMBEDDING:
            return self.embedding_cache
        return self.completion_cache

    async def lookup(
        self,
        kind: CacheKind,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        group: str = DEFAULT_CACHE_GROUP,
        temp_bucket: int = 0,
    ) -> Optional[Any]:
        """
        Return the cached response, or None on a miss.

        Args:
            kind: Completion or embedding
            prompt: Prompt text
            options: Request options (filtered when deriving the key)
            group: Cache group
            temp_bucket: Temperature bucket

        Returns:
            The cached completion/embedding, or None
        """
        if not self.is_enabled(kind):
            return None

        key = derive_cache_key(kind, prompt, options, group, temp_bucket)
        record = await self.lookup_key(key)
        return record.response if record is not None else None

    async def lookup_key(self, key: CacheKey) -> Optional[CacheRecord]:
        for backend in self.backends:
            try:
                record = await backend.lookup(key)
            except Exception as e:
                logger.warning(f"Cache lookup failed on {backend.name}, treating as miss: {e}")
                continue

            if record is not None:
                logger.debug(f"Cache hit on {backend.name} for {key.digest[:16]}...")
                return record

        logger.debug(f"Cache miss for {key.digest[:16]}...")
        return None

    async def store(
        self,
        kind: CacheKind,
        prompt: str,
        response: Any,
        options: Optional[Dict[str, Any]] = None,
        group: str = DEFAULT_CACHE_GROUP,
        temp_bucket: int = 0,
    ) -> List[Exception]:
        """
        Write a response through to every backend.

        Args:
            kind: Completion or embedding
            prompt: Prompt text
            response: Completion text or embedding vector
            options: Request options (filtered when deriving the key)
            group: Cache group
            temp_bucket: Temperature bucket

        Returns:
            Failures from individual backends (empty when all succeeded)
        """
        if not self.is_enabled(kind):
            return []

        key = derive_cache_key(kind, prompt, options, group, temp_bucket)
        return await self.store_key(key, CacheRecord(prompt=prompt, response=response, options=key.options))

    async def store_key(self, key: CacheKey, record: CacheRecord) -> List[Exception]:
        results = await asyncio.gather(
            *(backend.store(key, record) for backend in self.backends),
            return_exceptions=True,
        )

        failures: List[Exception] = []
        for backend, result in zip(self.backends, results):
            if isinstance(result, Exception):
                if not isinstance(result, CacheWriteError):
                    result = CacheWriteError(f"{backend.name}: {result}")
                logger.warning(f"Cache write failed on {backend.name}: {result}")
                failures.append(result)
        return failures

    async def get_cache_completion(
        self,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        group: str = DEFAULT_CACHE_GROUP,
        temp_bucket: int = 0,
    ) -> Optional[Any]:
        return await self.lookup(CacheKind.COMPLETION, prompt, options, group, temp_bucket)

    async def add_cache_completion(
        self,
        prompt: str,
        completion: Any,
        options: Optional[Dict[str, Any]] = None,
        group: str = DEFAULT_CACHE_GROUP,
        temp_bucket: int = 0,
    ) -> List[Exception]:
        return await self.store(CacheKind.COMPLETION, prompt, completion, options, group, temp_bucket)

    async def get_cache_embedding(
        self,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        group: str = DEFAULT_CACHE_GROUP,
    ) -> Optional[Any]:
        return await self.lookup(CacheKind.EMBEDDING, prompt, options, group)

    async def add_cache_embedding(
        self,
        prompt: str,
        embedding: Any,
        options: Optional[Dict[str, Any]] = None,
        group: str = DEFAULT_CACHE_GROUP,
    ) -> List[Exception]:
        return await self.store(CacheKind.EMBEDDING, prompt, embedding, options, group)
