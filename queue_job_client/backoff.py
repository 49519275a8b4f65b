import random
from typing import Optional, Protocol

from queue_job_client.models import HARD_FLOOR_MS, BackoffOptions


class RandomSource(Protocol):
    def uniform(self, a: float, b: float) -> float: ...


def backoff_base(current_ms: Optional[float], options: BackoffOptions) -> float:
    """Deterministic part of the next interval: the grown base, capped at max_ms."""
    base = max(current_ms or options.initial_ms, options.initial_ms) * options.factor
    return min(base, options.max_ms)


def apply_jitter(capped_ms: float, jitter_ratio: float, rng: RandomSource) -> int:
    jitter = capped_ms * jitter_ratio * rng.uniform(-1.0, 1.0)
    return max(HARD_FLOOR_MS, round(capped_ms + jitter))


def next_backoff(
    current_ms: Optional[float],
    options: Optional[BackoffOptions] = None,
    rng: Optional[RandomSource] = None,
) -> int:
    """Calculates the next polling interval in milliseconds.

    Exponential growth from max(current_ms, initial_ms), capped at max_ms, with
    symmetric jitter of jitter_ratio * capped and a 250 ms floor.
    """
    options = options or BackoffOptions()
    capped = backoff_base(current_ms, options)
    return apply_jitter(capped, options.jitter_ratio, rng or random)


class BackoffState:
    """Per-run interval tracker.

    Only the deterministic base is carried between iterations, so jitter never
    pulls the base down while the job stays pending.
    """

    def __init__(self, options: Optional[BackoffOptions] = None):
        self.options = options or BackoffOptions()
        self.current_interval_ms: Optional[float] = None

    def advance(self, rng: Optional[RandomSource] = None) -> int:
        self.current_interval_ms = backoff_base(self.current_interval_ms, self.options)
        return apply_jitter(
            self.current_interval_ms, self.options.jitter_ratio, rng or random
        )
