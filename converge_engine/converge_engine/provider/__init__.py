"""Provider interface, retry decorator, and in-memory provider."""

from __future__ import annotations

from converge_engine.provider.base import AttributeSchema, Provider, ResourceSchema
from converge_engine.provider.memory import InMemoryProvider
from converge_engine.provider.retry import RetryConfig, RetryingProvider, async_retry_with_backoff

__all__ = [
    "AttributeSchema",
    "InMemoryProvider",
    "Provider",
    "ResourceSchema",
    "RetryConfig",
    "RetryingProvider",
    "async_retry_with_backoff",
]
