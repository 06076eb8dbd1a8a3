"""
Bounded retry for connector read calls.
"""

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.mirror.errors import ConnectorError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ConnectorError) and exc.transient


class RetryPolicy:
    """
    Retry transient connector failures with exponential backoff.

    Only reads go through this; submissions are never retried since a
    retried submit could spend twice.
    """

    def __init__(self, attempts: int = 3, backoff: float = 1.0, max_backoff: float = 10.0):
        self.attempts = attempts
        self.backoff = backoff
        self.max_backoff = max_backoff

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff, max=self.max_backoff),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        async for attempt in self._retrying():
            with attempt:
                return await fn(*args, **kwargs)

    def __repr__(self):
        return f"<RetryPolicy attempts={self.attempts} backoff={self.backoff}s>"
