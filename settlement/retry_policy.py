# settlement/retry_policy.py

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, TypeVar

from settlement.errors import MaxRetryErrorsException, SettlementError

T = TypeVar("T")

logger = logging.getLogger("settlement_retry")

LINEAR = "linear"
EXPONENTIAL = "exponential"


def default_is_retryable(e: Exception) -> bool:
    # classified errors carry their own verdict; anything else (network
    # libraries, relay SDK errors) gets another attempt
    if isinstance(e, SettlementError):
        return e.retryable
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """
    One retry/backoff policy shared by every external call site.

    - linear:      delay = base_delay * attempt
    - exponential: delay = base_delay * 2 ** (attempt - 1)

    Non-retryable errors propagate immediately, untouched. Exhausting the
    attempts raises MaxRetryErrorsException chained to the last error.
    """
    max_attempts: int = 3
    base_delay: float = 2.0
    backoff: str = EXPONENTIAL
    max_delay: float | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        return replace(self, max_attempts=max_attempts)

    def delay_for(self, attempt: int) -> float:
        if self.backoff == LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def worst_case_seconds(self, call_timeout: float) -> float:
        """Every attempt timing out, plus every backoff sleep in between."""
        backoff = sum(self.delay_for(attempt) for attempt in range(1, self.max_attempts))
        return self.max_attempts * call_timeout + backoff

    def run(
        self,
        fn: Callable[[], T],
        *,
        label: str,
        is_retryable: Callable[[Exception], bool] = default_is_retryable,
    ) -> T:
        last_exception: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.debug("Attempting %s (attempt %d/%d)", label, attempt, self.max_attempts)
                result = fn()
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", label, attempt)
                return result
            except Exception as e:
                if not is_retryable(e):
                    raise
                last_exception = e
                logger.warning("%s failed on attempt %d: %s", label, attempt, e)

                if attempt == self.max_attempts:
                    break

                delay = self.delay_for(attempt)
                logger.info("Retrying %s in %.1fs...", label, delay)
                self.sleep(delay)

        raise MaxRetryErrorsException(
            f"{label} failed after {self.max_attempts} attempts: {last_exception}",
            last_exception,
        ) from last_exception
