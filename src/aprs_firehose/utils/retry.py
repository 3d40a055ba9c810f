"""Retry utilities with exponential backoff."""

import asyncio
import inspect
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar('T')

JitterFunction = Callable[[float], float]


def proportional_jitter(ratio: float = 0.25) -> JitterFunction:
    """Return a jitter function adding up to ``ratio`` of the delay."""
    def _jitter(delay: float) -> float:
        return delay + random.uniform(0, delay * ratio)
    return _jitter


def no_jitter(delay: float) -> float:
    return delay


class BackoffPolicy:
    """
    Exponential reconnect delay with jitter and an upper bound.

    Successive delays never decrease until ``reset()`` is called, even with
    jitter applied, and never exceed ``max_delay``.
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 120.0,
        multiplier: float = 2.0,
        jitter: Optional[JitterFunction] = None,
    ):
        if initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter or no_jitter

        self._attempts = 0
        self._last_delay = 0.0

    @property
    def attempts(self) -> int:
        """Number of delays handed out since the last reset."""
        return self._attempts

    def next_delay(self) -> float:
        """Return the delay to wait before the next attempt."""
        base = min(self.initial_delay * (self.multiplier ** self._attempts), self.max_delay)
        delay = min(self.jitter(base), self.max_delay)
        delay = max(delay, self._last_delay)

        self._attempts += 1
        self._last_delay = delay
        return delay

    def reset(self) -> None:
        """Start again from the initial delay."""
        if self._attempts:
            logger.debug(f"Backoff reset after {self._attempts} attempts")
        self._attempts = 0
        self._last_delay = 0.0


async def exponential_backoff(
    func: Callable[[], Union[T, Awaitable[T]]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: tuple = (Exception,)
) -> T:
    """
    Execute a function with exponential backoff retry logic.

    Args:
        func: Async or sync function to execute
        max_attempts: Total number of attempts, the first one included
        initial_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        backoff_factor: Multiplier for delay after each failure
        jitter: Whether to add random jitter to delays
        exceptions: Tuple of exceptions to catch and retry on

    Returns:
        Result of the function call

    Raises:
        The last exception encountered if all retries fail
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay = initial_delay

    for attempt in range(max_attempts):
        try:
            if inspect.iscoroutinefunction(func):
                return await func()
            return func()
        except exceptions as e:
            if attempt == max_attempts - 1:
                logger.error(f"Function failed after {max_attempts} attempts: {e}")
                raise

            # Add jitter: ±25% of the delay
            if jitter:
                jitter_range = delay * 0.25
                actual_delay = delay + random.uniform(-jitter_range, jitter_range)
            else:
                actual_delay = delay

            actual_delay = min(actual_delay, max_delay)

            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed: {e}. "
                f"Retrying in {actual_delay:.2f} seconds..."
            )

            await asyncio.sleep(actual_delay)
            delay *= backoff_factor

    raise RuntimeError("unreachable")
