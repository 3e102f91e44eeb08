"""Retry policy shared by the SSH tunnel and the vsock dial.

Both wait for a guest service that isn't up yet. They retry on a fixed
interval, logging a warning only on every Nth failure, until the service
answers or the owning task is cancelled. The sleep is an asyncio sleep,
so cancellation interrupts it immediately.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_fixed,
)

from qemu_micro_env._logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Fixed-interval retry with a retryable-error predicate.

    Args:
        name: Label used in log records
        interval: Seconds between attempts
        retryable: Returns True for errors worth another attempt; anything
            else is re-raised at once
        warn_every: Log a warning on every Nth consecutive failure
        max_attempts: Give up after this many attempts (None = until cancelled)
    """

    def __init__(
        self,
        name: str,
        *,
        interval: float,
        retryable: Callable[[BaseException], bool],
        warn_every: int = 10,
        max_attempts: int | None = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self.retryable = retryable
        self.warn_every = max(1, warn_every)
        self.max_attempts = max_attempts

    def _before_sleep(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        extra = {"retry": self.name, "attempt": state.attempt_number, "error": str(exc)}
        if state.attempt_number % self.warn_every == 0:
            logger.warning(f"{self.name} still failing, retrying", extra=extra)
        else:
            logger.debug(f"{self.name} failed, retrying", extra=extra)

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(self.retryable),
            wait=wait_fixed(self.interval),
            stop=stop_after_attempt(self.max_attempts) if self.max_attempts else stop_never,
            before_sleep=self._before_sleep,
            reraise=True,
        )

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` until it succeeds, fails permanently, or is cancelled."""
        async for attempt in self.retrying():
            with attempt:
                return await fn()
        raise AssertionError("unreachable")  # pragma: no cover
