"""Exponential backoff with full jitter for provider calls.

Only failures flagged as transient are retried; anything else propagates on the
first attempt. When the retry budget runs out the last transient error is
re-raised as a :class:`~utxoshell.errors.NetworkError`.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 4
    base: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base=config.backoff_base,
            max_delay=config.backoff_max,
        )


def backoff_delay(attempt: int, *, base: float, max_delay: float) -> float:
    """Full jitter delay for a 1-based ``attempt``: ``U(0, min(max_delay, base * 2**(attempt-1)))``."""

    if attempt < 1:
        attempt = 1
    cap = min(base * (2 ** (attempt - 1)), max_delay)
    return random.uniform(0.0, cap)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, NetworkError) and exc.transient


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str = "provider call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds, fails permanently, or the budget is spent."""

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except NetworkError as exc:
            if not is_transient(exc):
                raise
            if attempt > policy.max_retries:
                raise NetworkError(
                    f"{description} failed after {attempt} attempt(s): {exc.message}",
                    status_code=exc.status_code,
                ) from exc
            delay = backoff_delay(attempt, base=policy.base, max_delay=policy.max_delay)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt,
                policy.max_retries + 1,
                exc.message,
                delay,
            )
            sleep(delay)
