import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, TypeAlias, TypeVar

from domain.errors import ErrorKind, StoreError


logger = logging.getLogger(__name__)


T = TypeVar("T")

Classifier: TypeAlias = Callable[[Exception], StoreError | None]


def classify(exc: Exception) -> StoreError | None:
    """Map an exception onto a `StoreError`.

    Returns `None` for exceptions that are not backend faults, those are
    re-raised untouched.
    """
    if isinstance(exc, StoreError):
        return exc
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return StoreError(ErrorKind.TRANSIENT, str(exc) or type(exc).__name__)
    return None


class RetryPolicy:
    """Bounded retries for store operations.

    Transient faults are retried until `max_attempts` attempts have failed,
    waiting `base_delay * 2 ** (n - 1)` plus up to `max_jitter` seconds between
    them. Rate limited attempts wait for the suggested duration (or
    `rate_limit_wait`) and are capped separately by `max_rate_limit_retries`.
    An overall `timeout` turns into a TIMEOUT error, never into a retry.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_jitter: float = 0.05,
        rate_limit_wait: float = 1.0,
        max_rate_limit_retries: int = 3,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_jitter = max_jitter
        self.rate_limit_wait = rate_limit_wait
        self.max_rate_limit_retries = max_rate_limit_retries
        self.timeout = timeout
        self.sleep = sleep
        self.jitter = jitter
        self.clock = clock

    def backoff(self, retry: int) -> float:
        return self.base_delay * 2 ** (retry - 1) + self.jitter(0, self.max_jitter)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        timeout: float | None = None,
        classifier: Classifier = classify,
    ) -> T:
        timeout = self.timeout if timeout is None else timeout
        deadline = None if timeout is None else self.clock() + timeout
        attempts = 0
        transient_failures = 0
        rate_limit_retries = 0

        while True:
            attempts += 1
            try:
                return await self._attempt(operation, name, deadline, attempts)
            except Exception as e:
                err = classifier(e)
                if err is None:
                    raise
                err.attempts = attempts

                if not err.kind.retryable:
                    if err is e:
                        raise
                    raise err from e

                if err.kind is ErrorKind.TRANSIENT:
                    transient_failures += 1
                    if transient_failures >= self.max_attempts:
                        raise self._exhausted(err, name, attempts) from e
                    delay = self.backoff(transient_failures)
                else:
                    rate_limit_retries += 1
                    if rate_limit_retries > self.max_rate_limit_retries:
                        raise self._exhausted(err, name, attempts) from e
                    delay = (
                        self.rate_limit_wait
                        if err.retry_after is None
                        else max(err.retry_after, 0.0)
                    )

                logger.warning(
                    "%s during %s (attempt %d). Retrying after %.0fms.",
                    err.kind.value,
                    name,
                    attempts,
                    delay * 1000,
                )
                await self._wait(delay, deadline, name, attempts)

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        deadline: float | None,
        attempts: int,
    ) -> T:
        if deadline is None:
            return await operation()

        remaining = deadline - self.clock()
        if remaining <= 0:
            raise self._timeout(name, attempts)

        scope = asyncio.timeout(remaining)
        try:
            async with scope:
                return await operation()
        except TimeoutError as e:
            if scope.expired():
                raise self._timeout(name, attempts) from e
            raise

    async def _wait(
        self, delay: float, deadline: float | None, name: str, attempts: int
    ) -> None:
        # Waits happen outside of any store lock.
        if deadline is not None:
            remaining = deadline - self.clock()
            if delay >= remaining:
                await self.sleep(max(remaining, 0.0))
                raise self._timeout(name, attempts)
        await self.sleep(delay)

    def _timeout(self, name: str, attempts: int) -> StoreError:
        logger.warning("%s timed out after %d attempt(s).", name, attempts)
        return StoreError(
            ErrorKind.TIMEOUT,
            f"{name} did not complete before its deadline.",
            attempts=attempts,
        )

    def _exhausted(self, err: StoreError, name: str, attempts: int) -> StoreError:
        logger.error(
            "%s gave up after %d attempts: %s", name, attempts, err.message
        )
        return StoreError(
            err.kind,
            f"{name} failed after {attempts} attempts: {err.message}",
            retry_after=err.retry_after,
            retries_exhausted=True,
            attempts=attempts,
        )
