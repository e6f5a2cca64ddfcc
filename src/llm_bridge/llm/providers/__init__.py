"""
LLM Provider Implementations

Each provider implements the ProviderClient interface for a specific service.

Supported Providers:
- Anthropic: text completions, streamed or not
- OpenAI: embeddings
"""

from .anthropic import AnthropicClient, messages_to_prompt
from .openai import OpenAIEmbeddingClient

__all__ = [
    'AnthropicClient',
    'OpenAIEmbeddingClient',
    'messages_to_prompt',
]
