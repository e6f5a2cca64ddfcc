"""
LLM Bridge

Cached, rate-limited access to LLM completion and embedding providers.

Usage:
    from llm_bridge import AiBridge

    async with AiBridge() as bridge:
        completion = await bridge.get_completion(
            "\n\nHuman: Summarize this text...\n\nAssistant:",
            {'model': 'claude-v1', 'max_tokens_to_sample': 512, 'stream': True},
            cache_group='summaries',
            on_delta=lambda delta, full: print(delta, end=''),
        )
"""

from .bridge import AiBridge
from .config import BridgeConfig, ConfigError, load_config

__all__ = [
    'AiBridge',
    'BridgeConfig',
    'ConfigError',
    'load_config',
]
