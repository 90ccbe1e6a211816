"""
Exponential backoff for GitHub API calls.

    delay(attempt) = min(max_delay, initial_delay * multiplier ** attempt)

plus, when jitter is enabled, a uniform random amount up to that delay so that
concurrent callers do not retry in lockstep.
"""
import random
from dataclasses import dataclass, field

from ghpg import config


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry budget and delay growth (seconds)."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_config(cls) -> "BackoffPolicy":
        return cls(
            max_retries   = config.MAX_RETRIES,
            initial_delay = config.INITIAL_BACKOFF_MS / 1000.0,
            max_delay     = config.MAX_BACKOFF_MS / 1000.0,
            multiplier    = config.BACKOFF_MULTIPLIER,
            jitter        = config.BACKOFF_JITTER,
        )

    def base_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), without jitter."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        try:
            delay = self.initial_delay * (self.multiplier ** attempt)
        except OverflowError:
            delay = self.max_delay
        return min(self.max_delay, delay)

    def delay(self, attempt: int) -> float:
        base = self.base_delay(attempt)
        if self.jitter and base > 0:
            return base + random.uniform(0, base)
        return base


@dataclass
class BackoffState:
    """Attempt counter for one logical API call."""

    policy: BackoffPolicy
    attempt: int = field(default=0)

    def can_retry(self) -> bool:
        return self.attempt < self.policy.max_retries

    def next_delay(self) -> float:
        delay = self.policy.delay(self.attempt)
        self.attempt += 1
        return delay
