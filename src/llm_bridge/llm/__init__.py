"""
LLM Abstraction Layer

Provider clients, the streamed response decoder and the dispatch queue
that throttles outbound calls.
"""

from .client import (
    ProviderClient,
    LLMError,
    ProviderError,
    RateLimitError,
    AuthenticationError,
    StreamProtocolError,
)
from .dispatch import DispatchQueue
from .streaming import StreamDecoder, parse_frame

__all__ = [
    'ProviderClient',
    'LLMError',
    'ProviderError',
    'RateLimitError',
    'AuthenticationError',
    'StreamProtocolError',
    'DispatchQueue',
    'StreamDecoder',
    'parse_frame',
]
