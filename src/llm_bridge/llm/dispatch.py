"""
Dispatch Queue

Bounds the number of provider calls in flight and optionally holds each
slot for a fixed delay after the call returns, to stay under provider
rate limits regardless of how fast the provider answers.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class DispatchQueue:
    """
    FIFO queue of async tasks with a concurrency limit.

    Usage:
        queue = DispatchQueue(max_concurrency=4, post_call_delay=0.5)
        result = await queue.submit(lambda: client.complete(prompt, options))

    Waiting tasks are admitted in submission order. The queue is unbounded
    and started tasks always run to completion.
    """

    def __init__(self, max_concurrency: int = 10, post_call_delay: float = 0.0):
        """
        Initialize the dispatch queue.

        Args:
            max_concurrency: Maximum number of tasks running at once
            post_call_delay: Seconds each task keeps its slot after finishing
        """
        if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int) or max_concurrency < 1:
            raise ValueError(f"max_concurrency must be an integer >= 1, got {max_concurrency!r}")
        if post_call_delay < 0:
            raise ValueError(f"post_call_delay must not be negative, got {post_call_delay!r}")

        self.max_concurrency = max_concurrency
        self.post_call_delay = post_call_delay
        self._semaphore = asyncio.Semaphore(max_concurrency)

        self.pending = 0
        self.in_flight = 0
        self.completed = 0

    async def submit(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run task once a slot is free and return its result.

        Args:
            task: Zero-argument callable returning an awaitable; it is only
                  called after a slot has been acquired

        Returns:
            Whatever the task returns (its exception propagates unchanged)
        """
        self.pending += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.pending -= 1

        self.in_flight += 1
        try:
            return await task()
        finally:
            try:
                if self.post_call_delay > 0:
                    await asyncio.sleep(self.post_call_delay)
            finally:
                self.in_flight -= 1
                self.completed += 1
                self._semaphore.release()

    def get_stats(self):
        return {
            'max_concurrency': self.max_concurrency,
            'pending': self.pending,
            'in_flight': self.in_flight,
            'completed': self.completed,
        }
