"""
Exponential backoff for step retries.

The delay before retry ``n`` (1-based, the first retry is n=1) is
``base * 2 ** (n - 1)``, capped at ``max_delay``, plus optional
random jitter of up to ``jitter`` times the delay.
"""

from __future__ import annotations

import logging
import random

logger = logging.getLogger(__name__)

DEFAULT_MAX_DELAY = 300.0


def backoff_delay(
    retry: int,
    base: float,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = 0.0,
) -> float:
    """Seconds to wait before the given retry.

    Args:
        retry: Retry number, 1 for the first retry.
        base: Delay before the first retry.
        max_delay: Upper bound on the exponential part.
        jitter: Fraction of the delay added at random (0 disables).
    """
    if retry < 1 or base <= 0:
        return 0.0
    delay = min(base * (2 ** (retry - 1)), max_delay)
    if jitter > 0:
        delay += random.uniform(0, delay * jitter)
    return delay
