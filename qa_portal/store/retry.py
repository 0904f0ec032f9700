"""Bounded retry combinator for read-compute-write units."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from qa_portal.errors import VersionConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after the given 1-based failed attempt."""
        return self.base_delay_s * (self.multiplier ** (attempt - 1))


def run_with_retry(unit: Callable[[], T], policy: RetryPolicy, label: str = "") -> T:
    """Run ``unit`` until it stops raising ``VersionConflict`` or attempts run out.

    Every other exception propagates on the first occurrence.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return unit()
        except VersionConflict:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "version conflict on %s, retry budget exhausted after %d attempts",
                    label or "document",
                    attempt,
                    extra={"path": label, "attempt": attempt, "max_attempts": policy.max_attempts},
                )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "version conflict on %s, retrying in %.1fs (attempt %d/%d)",
                label or "document",
                delay,
                attempt,
                policy.max_attempts,
                extra={"path": label, "attempt": attempt, "max_attempts": policy.max_attempts},
            )
            policy.sleep(delay)
