"""
Reconnect backoff — pure delay computation.

No I/O, no clocks. The state machine feeds in its attempt counter and
gets back the delay to wait and the counter to store for next time.
"""

import random
from typing import Optional, Tuple

from pydantic import BaseModel


class BackoffPolicy(BaseModel):
    """Exponential backoff with a growth ceiling and a periodic counter reset.

    The exponent stops growing at `growth_limit` attempts, the delay never
    exceeds `cap` (before jitter), and every `reset_every` attempts the
    counter drops back to 1 so the delay returns to `base`.
    """

    base: float = 5.0
    growth: float = 1.1
    growth_limit: int = 20
    cap: float = 300.0
    jitter_max: float = 2.0
    reset_every: int = 100


DEFAULT_POLICY = BackoffPolicy()


def backoff_delay(
    attempt: int,
    policy: BackoffPolicy = DEFAULT_POLICY,
    jitter: Optional[float] = None,
) -> Tuple[float, int]:
    """Compute the delay before the next reconnect.

    Args:
        attempt: Consecutive unexpected failures seen so far.
        policy: Growth parameters.
        jitter: Fixed jitter in seconds. Drawn from [0, jitter_max) when None.

    Returns:
        (delay_seconds, next_attempt)
    """
    if jitter is None:
        jitter = random.random() * policy.jitter_max

    # Reset to 1 happens before the delay is computed, so this one is exactly base
    if attempt > 0 and attempt % policy.reset_every == 0:
        return policy.base + jitter, 2

    exponent = min(max(attempt, 0), policy.growth_limit)
    base_delay = min(policy.base * (policy.growth ** exponent), policy.cap)
    return base_delay + jitter, attempt + 1
