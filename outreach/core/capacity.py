# outreach/core/capacity.py
"""
Capacity control for the dispatch loop.

- ``available_slots``: concurrent-call headroom for one run under the
  organization's ceiling.
- ``AdaptiveBatchSizer``: additive-increase / multiplicative-decrease
  controller over the batch size.
- ``ErrorStreak``: consecutive per-call error guard with capped backoff.
- ``DispatchTuning``: every threshold and wait the engine uses.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from outreach.core.domain import ActiveCallCounts, Organization, RunConfig


@dataclass(frozen=True)
class DispatchTuning:
    initial_batch_size: int = 10
    min_batch_size: int = 1
    max_batch_size: int = 20
    grow_threshold: float = 0.9
    shrink_threshold: float = 0.7
    shrink_factor: float = 0.75

    consecutive_error_limit: int = 3
    error_backoff_seconds: float = 5.0
    error_backoff_cap: int = 5

    default_calls_per_minute: int = 10
    min_call_interval_seconds: float = 1.0
    default_max_retries: int = 3
    default_concurrency_limit: int = 20

    outside_hours_wait_seconds: float = 900.0
    no_capacity_wait_seconds: float = 5.0
    idle_wait_seconds: float = 5.0
    processed_ids_ttl_seconds: float = 10.0

    stuck_row_timeout_seconds: int = 600
    reaper_interval_seconds: float = 60.0
    verify_delay_seconds: float = 3.0
    verify_window_seconds: int = 60

    metrics_debounce_seconds: float = 0.5

    @classmethod
    def from_settings(cls, s) -> "DispatchTuning":
        return cls(
            initial_batch_size=s.dispatch_initial_batch_size,
            min_batch_size=s.dispatch_min_batch_size,
            max_batch_size=s.dispatch_max_batch_size,
            grow_threshold=s.dispatch_grow_threshold,
            shrink_threshold=s.dispatch_shrink_threshold,
            shrink_factor=s.dispatch_shrink_factor,
            consecutive_error_limit=s.dispatch_consecutive_error_limit,
            error_backoff_seconds=s.dispatch_error_backoff_seconds,
            error_backoff_cap=s.dispatch_error_backoff_cap,
            default_calls_per_minute=s.dispatch_default_calls_per_minute,
            min_call_interval_seconds=s.dispatch_min_call_interval_seconds,
            default_max_retries=s.dispatch_default_max_retries,
            default_concurrency_limit=s.dispatch_default_concurrency_limit,
            outside_hours_wait_seconds=s.dispatch_outside_hours_wait_seconds,
            no_capacity_wait_seconds=s.dispatch_no_capacity_wait_seconds,
            idle_wait_seconds=s.dispatch_idle_wait_seconds,
            processed_ids_ttl_seconds=s.dispatch_processed_ids_ttl_seconds,
            stuck_row_timeout_seconds=s.dispatch_stuck_row_timeout_seconds,
            reaper_interval_seconds=s.dispatch_reaper_interval_seconds,
            verify_delay_seconds=s.dispatch_verify_delay_seconds,
            verify_window_seconds=s.dispatch_verify_window_seconds,
            metrics_debounce_seconds=s.metrics_debounce_seconds,
        )

    def call_interval(self, config: RunConfig) -> float:
        """Minimum seconds between two dispatches of the same run."""
        cpm = config.calls_per_minute or self.default_calls_per_minute
        if cpm <= 0:
            cpm = self.default_calls_per_minute
        return max(self.min_call_interval_seconds, 60.0 / cpm)

    def max_retries(self, config: RunConfig) -> int:
        if config.max_retries is None or config.max_retries < 1:
            return self.default_max_retries
        return config.max_retries

    def concurrency_limit(self, org: Optional[Organization]) -> int:
        if org is None or not org.concurrent_call_limit or org.concurrent_call_limit < 1:
            return self.default_concurrency_limit
        return org.concurrent_call_limit


# ============================================================================
# SLOT ALLOCATOR
# ============================================================================

def available_slots(ceiling: int, active: ActiveCallCounts) -> int:
    """
    Free concurrent-call slots for a run.

    The org-wide ceiling applies to the sum of all runs, and each run is
    capped at the same ceiling on its own. Never negative.
    """
    return max(0, min(ceiling - active.org, ceiling - active.run))


def next_batch_size(slots: int, adaptive_size: int, user_cap: Optional[int]) -> int:
    size = min(slots, adaptive_size)
    if user_cap is not None and user_cap > 0:
        size = min(size, user_cap)
    return max(0, size)


# ============================================================================
# ADAPTIVE BATCH SIZER
# ============================================================================

class AdaptiveBatchSizer:
    """
    Per-run batch size controller bounded to [minimum, maximum].

    success ratio >= grow_threshold  -> size + 1
    success ratio <  shrink_threshold -> floor(size * shrink_factor)
    """

    def __init__(
            self,
            initial: int = 10,
            minimum: int = 1,
            maximum: int = 20,
            grow_threshold: float = 0.9,
            shrink_threshold: float = 0.7,
            shrink_factor: float = 0.75,
    ):
        self.minimum = minimum
        self.maximum = maximum
        self.grow_threshold = grow_threshold
        self.shrink_threshold = shrink_threshold
        self.shrink_factor = shrink_factor
        self._size = self._clamp(initial)

    @classmethod
    def from_tuning(cls, tuning: DispatchTuning) -> "AdaptiveBatchSizer":
        return cls(
            initial=tuning.initial_batch_size,
            minimum=tuning.min_batch_size,
            maximum=tuning.max_batch_size,
            grow_threshold=tuning.grow_threshold,
            shrink_threshold=tuning.shrink_threshold,
            shrink_factor=tuning.shrink_factor,
        )

    @property
    def size(self) -> int:
        return self._size

    def _clamp(self, value: int) -> int:
        return min(self.maximum, max(self.minimum, value))

    def record_batch(self, successes: int, failures: int) -> int:
        """Feed one batch's outcome; returns the size for the next batch."""
        attempted = successes + failures
        if attempted <= 0:
            return self._size

        ratio = successes / attempted
        if ratio >= self.grow_threshold:
            self._size = self._clamp(self._size + 1)
        elif ratio < self.shrink_threshold:
            self.shrink()
        return self._size

    def shrink(self) -> int:
        self._size = self._clamp(math.floor(self._size * self.shrink_factor))
        return self._size


class ErrorStreak:
    """Counts consecutive per-call errors; trips at ``limit``."""

    def __init__(self, limit: int = 3, backoff_seconds: float = 5.0, backoff_cap: int = 5):
        self.limit = limit
        self.backoff_seconds = backoff_seconds
        self.backoff_cap = backoff_cap
        self.count = 0

    @classmethod
    def from_tuning(cls, tuning: DispatchTuning) -> "ErrorStreak":
        return cls(
            limit=tuning.consecutive_error_limit,
            backoff_seconds=tuning.error_backoff_seconds,
            backoff_cap=tuning.error_backoff_cap,
        )

    def record_success(self) -> None:
        self.count = 0

    def record_error(self) -> bool:
        """Returns True when the streak has reached the limit."""
        self.count += 1
        return self.count >= self.limit

    def backoff(self) -> float:
        """Doubles per error past the limit, capped at backoff_seconds * backoff_cap."""
        if self.count < self.limit:
            return 0.0
        exponent = min(self.count - self.limit, 16)
        return min(self.backoff_seconds * (2 ** exponent), self.backoff_seconds * self.backoff_cap)
