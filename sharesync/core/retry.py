"""Exponential backoff helpers."""
import functools
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type

from sharesync.core.logger import get_logger

logger = get_logger(__name__)


@dataclass
class BackoffPolicy:
    """Bounded exponential backoff with jitter.

    delay(n) = min(cap, base * 2**(n-1)), scaled by a random factor in
    [1 - jitter, 1 + jitter] and clamped to cap again.
    """

    base: float = 0.5
    cap: float = 30.0
    jitter: float = 0.2
    max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        return cls(
            base=settings.retry_base,
            cap=settings.retry_cap,
            jitter=settings.retry_jitter,
            max_attempts=settings.max_attempts,
        )

    def delay(self, attempt: int, rng: Optional[Callable[[float, float], float]] = None) -> float:
        """Return the wait before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        raw = min(self.cap, self.base * (2 ** (attempt - 1)))
        if self.jitter:
            uniform = rng or random.uniform
            raw *= uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, min(self.cap, raw))

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


def retry(
    max_attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay in seconds between attempts
        backoff: Multiplier applied to the delay after each failure
        exceptions: Exception types that trigger a retry
        sleep: Sleep function (injectable for tests)

    Example:
        @retry(max_attempts=5, delay=0.1, exceptions=(BackpressureError,))
        def publish(event):
            bus.publish(event)
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: {e}"
                        )
                        raise

                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_attempts}): {e}"
                    )
                    logger.debug(f"Retrying in {current_delay:.1f}s...")
                    sleep(current_delay)
                    current_delay *= backoff

            return None

        return wrapper

    return decorator
