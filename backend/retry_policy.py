import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Tuple, Type

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from mint_errors import TransientNetworkError

logger = logging.getLogger("mintpad.retry")


def _transient_only(exc: BaseException) -> bool:
    return isinstance(exc, TransientNetworkError)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff (``backoff_multiplier=1`` gives a fixed delay)."""

    max_attempts: int = 3
    base_delay: float = 0.5
    backoff_multiplier: float = 2.0
    retryable: Callable[[BaseException], bool] = _transient_only
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, compare=False)

    @classmethod
    def fixed(cls, max_attempts: int, delay: float, **kwargs) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay=delay, backoff_multiplier=1.0, **kwargs)

    @classmethod
    def on_exceptions(cls, exc_types: Tuple[Type[BaseException], ...], **kwargs) -> "RetryPolicy":
        return cls(retryable=lambda exc: isinstance(exc, exc_types), **kwargs)

    def _retrying(self, name: str) -> AsyncRetrying:
        def _before_sleep(state) -> None:
            logger.warning(
                "retry_scheduled op=%s attempt=%s/%s error=%s",
                name,
                state.attempt_number,
                self.max_attempts,
                state.outcome.exception() if state.outcome else None,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.backoff_multiplier, min=self.base_delay),
            retry=retry_if_exception(self.retryable),
            sleep=self.sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, op: str = "", **kwargs) -> Any:
        async for attempt in self._retrying(op or getattr(fn, "__name__", "call")):
            with attempt:
                return await fn(*args, **kwargs)
