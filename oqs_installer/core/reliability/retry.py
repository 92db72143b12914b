"""
Retry policy — bounded retries with fixed or exponential delay.

    delay before attempt n+1 = delay * backoff_multiplier ** (n - 1)

Used for everything that fails transiently (git clone, apt-get).
Builds are never retried: a failed compile is rarely transient.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from oqs_installer.core.errors import Cancelled, InstallerError
from oqs_installer.core.reliability.cancellation import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry.

    Args:
        max_attempts: Total attempts, including the first one.
        delay: Seconds to wait after the first failure.
        backoff_multiplier: Factor applied to the delay after each failure
            (1.0 = fixed delay).
    """

    max_attempts: int = 3
    delay: float = 5.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Sleep after failed attempt number ``attempt`` (1-based)."""
        return self.delay * self.backoff_multiplier ** (attempt - 1)

    def schedule(self) -> list[float]:
        """All sleeps taken when every attempt fails."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]

    @property
    def total_delay(self) -> float:
        return sum(self.schedule())


def retry_call(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    cancel: CancelToken | None = None,
    retry_on: tuple[type[BaseException], ...] = (InstallerError,),
    sleep: Callable[[float], None] | None = None,
    label: str = "operation",
) -> T:
    """Invoke ``operation`` until it succeeds or the policy is exhausted.

    Returns:
        The first successful return value.

    Raises:
        The last failure, with ``attempts`` set when it is an InstallerError.
        Cancelled as soon as the token fires (never retried).
    """
    if sleep is None:
        sleep = cancel.sleep if cancel is not None else time.sleep

    last_error: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return operation()
        except Cancelled:
            raise
        except retry_on as e:
            last_error = e
            if isinstance(e, InstallerError):
                e.attempts = attempt
            if attempt == policy.max_attempts:
                break
            wait = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label, attempt, policy.max_attempts, e, wait,
            )
            if cancel is not None:
                cancel.raise_if_cancelled()
            sleep(wait)

    assert last_error is not None
    logger.error("%s failed after %d attempts", label, policy.max_attempts)
    raise last_error
