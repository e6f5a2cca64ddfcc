"""
LLM Response Caching

Layered caching of completions and embeddings across a local JSONL store
and an optional shared Redis store.
"""

from .base import CacheBackend, CacheError, CacheWriteError
from .keys import CacheKey, CacheKind, CacheRecord, derive_cache_key, temperature_bucket_count
from .jsonl_cache import JsonlCache
from .redis_cache import RedisCache
from .layer_cache import LayerCache

__all__ = [
    'CacheBackend',
    'CacheError',
    'CacheWriteError',
    'CacheKey',
    'CacheKind',
    'CacheRecord',
    'derive_cache_key',
    'temperature_bucket_count',
    'JsonlCache',
    'RedisCache',
    'LayerCache',
]
