"""Configurable retry logic with exponential backoff and optional jitter.

:func:`async_retry_with_backoff` is the generic primitive;
:class:`RetryingProvider` applies it around every call of a
:class:`~converge_engine.provider.base.Provider` so that the reconciler and
drift detector never carry retry logic themselves.  Only
:class:`~converge_engine.errors.ProviderError` instances marked
``retryable`` are retried.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from converge_engine.config import Settings
from converge_engine.errors import ProviderError
from converge_engine.provider.base import Provider, ResourceSchema

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_backoff_base,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    should_retry: Callable[[BaseException], bool] = _is_retryable,
    *,
    operation: str = "call",
) -> T:
    """Await *fn* with retry and exponential backoff.

    Parameters
    ----------
    fn:
        A zero-argument callable returning an awaitable.  On each retry the
        callable is invoked from scratch -- it must be safe to call repeatedly.
    config:
        Retry parameters (see :class:`RetryConfig`).
    should_retry:
        Predicate deciding whether an exception triggers a retry.  All other
        exceptions propagate immediately.  Defaults to retryable
        :class:`ProviderError` instances only.
    operation:
        Label used in log messages.

    Returns
    -------
    T
        The result of *fn* on the first successful call.

    Raises
    ------
    Exception
        The last exception raised by *fn* after all retry attempts are
        exhausted, or the first non-retryable one.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not should_retry(exc) or attempt >= config.max_retries:
                raise
            delay = _compute_delay(attempt, config)
            attempt += 1
            logger.warning(
                "Retry %d/%d of %s after %.1fs: %s",
                attempt,
                config.max_retries,
                operation,
                delay,
                exc,
            )
            await asyncio.sleep(delay)


class RetryingProvider:
    """Provider decorator that retries retryable failures with backoff.

    ``schema`` is forwarded untouched; ``create``, ``read``, ``update`` and
    ``delete`` are each wrapped by :func:`async_retry_with_backoff`.
    """

    def __init__(self, inner: Provider, config: RetryConfig | None = None) -> None:
        self._inner = inner
        self._config = config or RetryConfig()

    @property
    def inner(self) -> Provider:
        return self._inner

    @property
    def config(self) -> RetryConfig:
        return self._config

    def schema(self, resource_type: str) -> ResourceSchema:
        return self._inner.schema(resource_type)

    async def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        return await async_retry_with_backoff(
            lambda: self._inner.create(resource_type, attributes),
            self._config,
            operation=f"create {resource_type}",
        )

    async def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        return await async_retry_with_backoff(
            lambda: self._inner.read(resource_type, resource_id),
            self._config,
            operation=f"read {resource_type}/{resource_id}",
        )

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        attributes: dict[str, Any],
    ) -> dict[str, Any]:
        return await async_retry_with_backoff(
            lambda: self._inner.update(resource_type, resource_id, attributes),
            self._config,
            operation=f"update {resource_type}/{resource_id}",
        )

    async def delete(self, resource_type: str, resource_id: str) -> None:
        await async_retry_with_backoff(
            lambda: self._inner.delete(resource_type, resource_id),
            self._config,
            operation=f"delete {resource_type}/{resource_id}",
        )
