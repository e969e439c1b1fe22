from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _never(_: BaseException) -> bool:
    return False


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempts: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with growing, jittered delays.

    Attempt 1 runs immediately; retry ``n`` waits
    ``base_delay * multiplier ** (n - 1)`` seconds (capped at ``max_delay``),
    scaled by a random factor in ``[1 - jitter, 1 + jitter]``. Only errors for
    which ``retryable`` returns True are retried; anything else propagates on
    the first occurrence.
    """

    max_attempts: int = 3
    base_delay: float = 5.0
    multiplier: float = 3.0
    max_delay: float = 60.0
    jitter: float = 0.1
    retryable: Callable[[BaseException], bool] = field(default=_never, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def delay(self, retry: int, *, rng: Callable[[], float] = random.random) -> float:
        """Seconds to wait before retry number ``retry`` (1-based)."""

        raw = min(self.max_delay, self.base_delay * (self.multiplier ** (retry - 1)))
        factor = 1.0 + self.jitter * (2.0 * rng() - 1.0)
        return max(0.0, raw * factor)

    def call(
        self,
        fn: Callable[[], T],
        *,
        describe: str = "operation",
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> T:
        last: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                wait = self.delay(attempt - 1, rng=rng)
                logger.info(
                    "Retry %d/%d for %s in %.1fs (%s)",
                    attempt - 1,
                    self.max_attempts - 1,
                    describe,
                    wait,
                    last,
                )
                sleep(wait)
            try:
                result = fn()
            except Exception as e:
                if not self.retryable(e):
                    raise
                last = e
                logger.warning("%s failed with retryable error (attempt %d/%d): %s", describe, attempt, self.max_attempts, e)
                continue
            if attempt > 1:
                logger.info("%s succeeded on retry %d", describe, attempt - 1)
            return result

        assert last is not None
        raise RetryExhausted(self.max_attempts, last)
