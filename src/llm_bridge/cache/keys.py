"""
Cache Key Derivation

Turns (prompt, options, group, temperature bucket) into a deterministic
CacheKey. Only cache-relevant options take part in the key, and they are
serialized canonically before hashing so key order never matters.
"""

import json
import math
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

# Options that change what the provider returns. Anything else
# (api keys, routing, stream flags, ...) must not affect the key.
CACHE_OPTION_KEYS = (
    'max_tokens',
    'max_tokens_to_sample',
    'stop',
    'stop_sequences',
    'temperature',
    'top_p',
    'top_k',
    'presence_penalty',
    'frequency_penalty',
    'best_of',
    'logit_bias',
    'suffix',
)

DEFAULT_CACHE_GROUP = 'misc/default'
UNKNOWN_MODEL = 'unknown'

# Sampling temperature 1.0 spreads over 10 buckets, 0.5 over 5, etc.
TEMP_BUCKETS_PER_UNIT = 10


class CacheKind(str, Enum):
    """What a cached record holds."""
    COMPLETION = 'completion'
    EMBEDDING = 'embedding'


@dataclass(frozen=True)
class CacheKey:
    """
    Identity of one cached response.

    Equality covers model, kind, group, both hashes and the temperature
    bucket. The literal prompt and cleaned options ride along so backends
    can reject a record whose hash matches but whose content does not.
    """
    model: str
    kind: CacheKind
    group: str
    prompt_hash: str
    options_hash: str
    temp_bucket: int
    prompt: str = field(default='', compare=False, repr=False)
    options: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def digest(self) -> str:
        """Combined content hash used for storage addressing."""
        return sha256_hex(f"{self.prompt_hash}-{self.options_hash}")


@dataclass(frozen=True)
class CacheRecord:
    """An immutable prompt/response pair as written to a backend."""
    prompt: str
    response: Any
    options: Dict[str, Any] = field(default_factory=dict)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def canonical_json(value: Any) -> str:
    """Serialize value with sorted keys and no incidental whitespace."""
    return json.dumps(value, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def clean_options(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only the cache-relevant, non-null options."""
    if not options:
        return {}
    return {
        key: options[key]
        for key in CACHE_OPTION_KEYS
        if options.get(key) is not None
    }


def temperature_bucket_count(temperature: Optional[float]) -> int:
    """
    Number of temperature buckets for a sampling temperature.

    Valid buckets are 0..N-1. Deterministic sampling (temperature <= 0)
    has exactly one bucket.
    """
    if not temperature or temperature <= 0:
        return 1
    # round() keeps 0.7 * 10 from becoming 8 buckets
    return max(1, math.ceil(round(temperature * TEMP_BUCKETS_PER_UNIT, 6)))


def derive_cache_key(
    kind: CacheKind,
    prompt: str,
    options: Optional[Dict[str, Any]] = None,
    group: str = DEFAULT_CACHE_GROUP,
    temp_bucket: int = 0,
) -> CacheKey:
    """
    Derive the cache key for a request.

    Args:
        kind: Completion or embedding
        prompt: Prompt text (or embedding input)
        options: Raw request options; 'model' selects the model, the
                 allow-listed fields are hashed, everything else is ignored
        group: Caller-chosen namespace for storage partitioning
        temp_bucket: Temperature bucket; always 0 for embeddings

    Returns:
        CacheKey
    """
    kind = CacheKind(kind)
    options = options or {}
    cleaned = clean_options(options)

    return CacheKey(
        model=str(options.get('model') or UNKNOWN_MODEL),
        kind=kind,
        group=group or DEFAULT_CACHE_GROUP,
        prompt_hash=sha256_hex(prompt),
        options_hash=sha256_hex(canonical_json(cleaned)),
        temp_bucket=0 if kind is CacheKind.EMBEDDING else int(temp_bucket),
        prompt=prompt,
        options=cleaned,
    )
