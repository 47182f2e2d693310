"""
RateLimiter — Token bucket throttle for outbound chat.

Keeps relayed Discord messages, payout /pay commands and slash-command chat
from tripping the server's spam kick. A kick would cost us the session, so
callers wait for a token instead of dropping the line.
"""

import time
import asyncio
import logging
from typing import Callable

logger = logging.getLogger('RateLimiter')


class RateLimiter:
    """Token bucket rate limiter.

    Allows bursts of up to `max_tokens` lines, refilling at `refill_rate`
    tokens per second. `await limiter.acquire()` sleeps until a token is
    free; `try_acquire()` returns False instead of waiting.

    Args:
        max_tokens: Maximum burst size.
        refill_rate: Tokens added per second.
        name: Label for logging.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        max_tokens: int = 4,
        refill_rate: float = 1.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.max_tokens = max_tokens
        self.refill_rate = refill_rate
        self.name = name
        self._clock = clock
        self.tokens = float(max_tokens)
        self.last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self):
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_acquire(self) -> bool:
        """Consume a token if one is free right now."""
        self._refill()
        if self.tokens < 1.0:
            return False
        self.tokens -= 1.0
        return True

    async def acquire(self):
        """Wait until a token is available, then consume one."""
        async with self._lock:
            self._refill()

            if self.tokens < 1.0:
                wait_time = (1.0 - self.tokens) / self.refill_rate
                logger.debug(f"[{self.name}] Throttled, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
                self._refill()

            self.tokens = max(0.0, self.tokens - 1.0)

    def reset(self):
        """Refill the bucket completely (new session, fresh allowance)."""
        self.tokens = float(self.max_tokens)
        self.last_refill = self._clock()

    @property
    def available(self) -> float:
        """Current number of available tokens (without consuming)."""
        self._refill()
        return self.tokens
