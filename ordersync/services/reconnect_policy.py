"""
Reconnect backoff policy for the push connection.

    delay(attempt) = min(base * 2^attempt, cap)    (+/- jitter, re-capped)

Retries stop once ``attempt >= max_retries``; the engine then reports a
degraded connection instead of retrying forever.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from ordersync.config import Settings

DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 30.0
DEFAULT_MAX_RETRIES = 5

# 2^64 seconds is far past any cap; avoids float overflow on huge attempt counts
_MAX_EXPONENT = 64


@dataclass(frozen=True)
class ReconnectPolicy:
    base: float = DEFAULT_BASE_DELAY_S
    cap: float = DEFAULT_MAX_DELAY_S
    max_retries: int = DEFAULT_MAX_RETRIES
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.base <= 0 or self.cap <= 0:
            raise ValueError("base and cap must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconnectPolicy":
        return cls(
            base=settings.reconnect_base_delay_s,
            cap=settings.reconnect_max_delay_s,
            max_retries=settings.reconnect_max_retries,
            jitter=settings.reconnect_jitter,
        )

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        attempt = max(0, attempt)
        if attempt >= _MAX_EXPONENT:
            delay = self.cap
        else:
            delay = min(self.base * (2 ** attempt), self.cap)
        if self.jitter:
            delay *= 1.0 + self.rng.uniform(-self.jitter, self.jitter)
            delay = min(delay, self.cap)
        return delay

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries
