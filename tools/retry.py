import asyncio
import random
import time
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from loguru import logger

from errors import CircuitOpenError, TransientInfrastructureError

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float = 30.0, multiplier: float = 2.0) -> float:
    """Exponential backoff for ``attempt`` (1-based) with +/-25% jitter."""
    delay = min(base_delay * (multiplier ** (attempt - 1)), max_delay)
    jitter = delay * 0.25 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientInfrastructureError,),
    operation: str = "operation",
) -> T:
    """
    Run ``fn`` up to ``attempts`` times, sleeping with exponential backoff between tries.

    Only exceptions in ``retry_on`` are retried; anything else propagates on the
    first failure. An open circuit is never retried.

    Args:
        fn: Zero-argument coroutine factory
        attempts: Maximum number of calls (>= 1)
        base_delay: Delay before the second call, in seconds
        max_delay: Cap for any single delay
        retry_on: Exception types that count as transient
        operation: Name used in log messages

    Returns:
        Whatever ``fn`` returns
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except CircuitOpenError:
            raise
        except retry_on as e:
            if attempt == attempts:
                logger.error(f"{operation} failed after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"{operation} attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")


class CircuitBreaker:
    """Stops calling a failing dependency for ``cooldown`` seconds after ``threshold`` failures.

    States: closed (normal), open (reject immediately), half-open (one probe call
    allowed; success closes the circuit, failure re-opens it).
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"

    def __init__(
        self,
        service: str,
        threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service = service
        self.threshold = max(1, threshold)
        self.cooldown = cooldown
        self._clock = clock
        self.failures = 0
        self.opened_at: Optional[float] = None
        self.state = self.CLOSED
        self._probe_in_flight = False

    def _before_call(self) -> None:
        if self.state == self.OPEN:
            if self._clock() - (self.opened_at or 0.0) < self.cooldown:
                raise CircuitOpenError(self.service)
            self.state = self.HALF_OPEN
            logger.info(f"Circuit breaker for {self.service} entering half-open state")
        if self.state == self.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.service)
            self._probe_in_flight = True

    def record_success(self) -> None:
        if self.state != self.CLOSED:
            logger.info(f"Circuit breaker for {self.service} closed")
        self.failures = 0
        self.opened_at = None
        self.state = self.CLOSED
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self.failures += 1
        self._probe_in_flight = False
        if self.state == self.HALF_OPEN or self.failures >= self.threshold:
            if self.state != self.OPEN:
                logger.warning(f"Circuit breaker for {self.service} opened after {self.failures} failures")
            self.state = self.OPEN
            self.opened_at = self._clock()

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._before_call()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        self.record_success()

    def snapshot(self) -> dict:
        return {"service": self.service, "state": self.state, "failures": self.failures}
