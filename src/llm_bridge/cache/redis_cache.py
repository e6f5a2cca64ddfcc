"""
Redis Cache Module

Shared cache backend on Redis, so cached responses can be reused across
machines and team members.

Each "<kind>_<model>" pair is a Redis hash (the collection). Documents are
JSON values addressed by content hash and temperature bucket:

    completion_<model>  ->  {"<hash>:<tempBucket>": {...document...}}
    embedding_<model>   ->  {"<hash>": {...document...}}
"""

import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from .base import CacheBackend, CacheWriteError
from .keys import CacheKey, CacheKind, CacheRecord, canonical_json

logger = logging.getLogger(__name__)


def get_collection_name(key: CacheKey, namespace: str = '') -> str:
    """Collection (Redis hash) holding documents for key's kind and model."""
    name = f"{key.kind.value}_{key.model}"
    if namespace:
        return f"{namespace}:{name}"
    return name


def get_document_id(key: CacheKey) -> str:
    """Document id within the collection; embeddings have no temperature bucket."""
    if key.kind is CacheKind.EMBEDDING:
        return key.digest
    return f"{key.digest}:{key.temp_bucket}"


class RedisCache(CacheBackend):
    """
    Async Redis cache backend.

    Requires setup() before first use. HSET replaces the whole document in
    one command, so concurrent writers of the same key leave exactly one
    document (last write wins) without any read-check.
    """

    name = 'redis'

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        namespace: str = '',
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialize the Redis cache.

        Args:
            redis_url: Redis connection URL
            namespace: Optional prefix for collection names
            client: Pre-built client (skips from_url in setup)
        """
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client

    async def setup(self):
        """Connect to Redis."""
        if self.client is None:
            self.client = redis.from_url(self.redis_url)
        try:
            await self.client.ping()
            logger.info("Connected to Redis cache")
        except Exception as e:
            logger.warning(f"Failed to connect to Redis at {self.redis_url}: {e}")
            self.client = None

    async def close(self):
        """Disconnect from Redis."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def lookup(self, key: CacheKey) -> Optional[CacheRecord]:
        if not self.client:
            return None

        try:
            raw = await self.client.hget(
                get_collection_name(key, self.namespace),
                get_document_id(key),
            )
            if not raw:
                return None
            document = json.loads(raw)
        except Exception as e:
            logger.error(f"Cache get error: {e}")
            return None

        if not self._matches(key, document):
            return None

        logger.debug(f"Redis cache hit for {key.digest[:16]}...")
        return CacheRecord(
            prompt=document['prompt'],
            response=document[key.kind.value],
            options=document.get('opt', {}),
        )

    async def store(self, key: CacheKey, record: CacheRecord):
        if not self.client:
            raise CacheWriteError("Redis cache is not connected")

        document: Dict[str, Any] = {
            'hash': key.digest,
            'prompt': record.prompt,
            'opt': record.options,
            key.kind.value: record.response,
            'cacheGrp': key.group,
        }
        if key.kind is CacheKind.COMPLETION:
            document['tempBucket'] = key.temp_bucket

        try:
            await self.client.hset(
                get_collection_name(key, self.namespace),
                get_document_id(key),
                canonical_json(document),
            )
        except Exception as e:
            raise CacheWriteError(f"Redis cache set error: {e}") from e

    def _matches(self, key: CacheKey, document: Any) -> bool:
        """Guard against a hash match whose content differs."""
        if not isinstance(document, dict) or key.kind.value not in document:
            return False
        if document.get('prompt') != key.prompt:
            return False
        return document.get('opt', {}) == json.loads(canonical_json(key.options))
