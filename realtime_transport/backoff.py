# =============================================================================
# Realtime Transport -- Backoff Policy
# =============================================================================
#
# Exponential backoff with positive jitter.  Jitter only ever adds delay, so
# the computed value stays within [base, base * (1 + jitter_factor)].
# =============================================================================

from __future__ import annotations

import random
from typing import Callable

from .constants import POLLING_JITTER_FACTOR


def base_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """Un-jittered delay for a 1-based *attempt*."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(initial_delay * (2 ** (attempt - 1)), max_delay)


def apply_jitter(
    delay: float,
    jitter_factor: float,
    *,
    rand: Callable[[], float] = random.random,
) -> float:
    """Add ``delay * jitter_factor * rand()`` and round to millisecond resolution."""
    upper = delay * (1 + jitter_factor)
    jittered = round(delay + delay * jitter_factor * rand(), 3)
    # rounding must not push the value outside [delay, upper]
    return min(max(jittered, delay), upper)


def compute_backoff(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    jitter_factor: float,
    *,
    rand: Callable[[], float] = random.random,
) -> float:
    """Reconnect delay in seconds for a 1-based *attempt*.

    Args:
        attempt: Attempt number, starting at 1.
        initial_delay: Delay of the first attempt.
        max_delay: Cap applied before jitter.
        jitter_factor: Upper bound of the random extra, as a fraction of the
            base delay.
        rand: Source of uniform values in ``[0, 1)``.
    """
    return apply_jitter(base_delay(attempt, initial_delay, max_delay), jitter_factor, rand=rand)


def polling_delay(
    interval: float,
    *,
    rand: Callable[[], float] = random.random,
) -> float:
    """Polling cadence with up to 10% positive jitter."""
    return apply_jitter(interval, POLLING_JITTER_FACTOR, rand=rand)
