"""
Cache Backend Interface

Defines the contract every cache storage implementation follows.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .keys import CacheKey, CacheRecord


class CacheBackend(ABC):
    """
    Abstract base class for cache storage backends.

    lookup() never raises: read faults are treated as misses.
    store() raises CacheWriteError when the record could not be written.
    """

    name = 'backend'

    async def setup(self):
        """Perform any async setup needed before first use."""
        pass

    async def close(self):
        """Release connections or other resources."""
        pass

    @abstractmethod
    async def lookup(self, key: CacheKey) -> Optional[CacheRecord]:
        """
        Find the record stored for key.

        Args:
            key: Cache key to look up

        Returns:
            CacheRecord on hit, None on miss
        """
        pass

    @abstractmethod
    async def store(self, key: CacheKey, record: CacheRecord):
        """
        Persist record under key.

        Args:
            key: Cache key to store under
            record: Prompt/response pair

        Raises:
            CacheWriteError: If the write failed
        """
        pass


class CacheError(Exception):
    """Base exception for cache-related errors."""
    pass


class CacheWriteError(CacheError):
    """Raised when a backend fails to persist a record."""
    pass
