# tests/test_capacity.py
import pytest

from outreach.core.capacity import (
    AdaptiveBatchSizer,
    DispatchTuning,
    ErrorStreak,
    available_slots,
    next_batch_size,
)
from outreach.core.domain import ActiveCallCounts, Organization, RunConfig


class TestAvailableSlots:
    def test_org_budget_limits_run(self):
        # Other runs of the org already use 4 of 5
        assert available_slots(5, ActiveCallCounts(run=0, org=4)) == 1

    def test_run_budget_limits_run(self):
        assert available_slots(5, ActiveCallCounts(run=3, org=3)) == 2

    def test_never_negative(self):
        assert available_slots(5, ActiveCallCounts(run=2, org=9)) == 0

    def test_idle_org(self):
        assert available_slots(20, ActiveCallCounts(run=0, org=0)) == 20

    def test_org_over_ceiling(self):
        assert available_slots(20, ActiveCallCounts(run=0, org=25)) == 0

    def test_run_and_org_both_busy(self):
        slots = available_slots(5, ActiveCallCounts(run=3, org=4))
        assert slots == 1
        assert next_batch_size(slots, 10, None) <= 1


class TestNextBatchSize:
    def test_min_of_slots_and_adaptive(self):
        assert next_batch_size(3, 10, None) == 3
        assert next_batch_size(30, 10, None) == 10

    def test_user_cap(self):
        assert next_batch_size(30, 10, 4) == 4

    def test_zero_cap_ignored(self):
        assert next_batch_size(30, 10, 0) == 10


class TestAdaptiveBatchSizer:
    def test_starts_at_initial(self):
        assert AdaptiveBatchSizer().size == 10

    def test_grows_by_one_on_high_success(self):
        sizer = AdaptiveBatchSizer()
        assert sizer.record_batch(successes=9, failures=1) == 11

    def test_holds_between_thresholds(self):
        sizer = AdaptiveBatchSizer()
        assert sizer.record_batch(successes=8, failures=2) == 10

    def test_shrinks_on_low_success(self):
        sizer = AdaptiveBatchSizer()
        assert sizer.record_batch(successes=6, failures=4) == 7

    def test_bounded_above(self):
        sizer = AdaptiveBatchSizer(initial=20)
        assert sizer.record_batch(successes=5, failures=0) == 20

    def test_bounded_below(self):
        sizer = AdaptiveBatchSizer(initial=1)
        assert sizer.record_batch(successes=0, failures=5) == 1

    def test_empty_batch_keeps_size(self):
        sizer = AdaptiveBatchSizer()
        assert sizer.record_batch(successes=0, failures=0) == 10

    def test_repeated_shrink(self):
        sizer = AdaptiveBatchSizer()
        sizes = [sizer.shrink() for _ in range(5)]
        assert sizes == [7, 5, 3, 2, 1]

    def test_initial_is_clamped(self):
        assert AdaptiveBatchSizer(initial=50, maximum=20).size == 20

    def test_stays_within_bounds_for_any_sequence(self):
        import random

        rng = random.Random(42)
        sizer = AdaptiveBatchSizer(initial=10, minimum=1, maximum=20)
        for _ in range(500):
            attempted = rng.randint(0, 25)
            successes = rng.randint(0, attempted)
            size = sizer.record_batch(successes, attempted - successes)
            assert 1 <= size <= 20


class TestErrorStreak:
    def test_trips_at_limit(self):
        streak = ErrorStreak(limit=3)
        assert streak.record_error() is False
        assert streak.record_error() is False
        assert streak.record_error() is True

    def test_success_resets(self):
        streak = ErrorStreak(limit=3)
        streak.record_error()
        streak.record_error()
        streak.record_success()
        assert streak.record_error() is False

    def test_backoff_doubles_and_caps(self):
        streak = ErrorStreak(limit=3, backoff_seconds=5.0, backoff_cap=5)
        assert streak.backoff() == 0.0
        delays = []
        for _ in range(6):
            streak.record_error()
            delays.append(streak.backoff())
        assert delays == [0.0, 0.0, 5.0, 10.0, 20.0, 25.0]

    def test_backoff_stays_finite_for_long_streaks(self):
        streak = ErrorStreak(limit=1, backoff_seconds=1.0, backoff_cap=5)
        streak.count = 10_000
        assert streak.backoff() == 5.0


class TestDispatchTuning:
    def test_call_interval_from_rate(self):
        tuning = DispatchTuning()
        assert tuning.call_interval(RunConfig(calls_per_minute=30)) == pytest.approx(2.0)

    def test_call_interval_floor(self):
        tuning = DispatchTuning(min_call_interval_seconds=1.0)
        assert tuning.call_interval(RunConfig(calls_per_minute=600)) == 1.0

    def test_call_interval_default_rate(self):
        tuning = DispatchTuning(default_calls_per_minute=10)
        assert tuning.call_interval(RunConfig()) == pytest.approx(6.0)

    def test_max_retries(self):
        tuning = DispatchTuning(default_max_retries=3)
        assert tuning.max_retries(RunConfig()) == 3
        assert tuning.max_retries(RunConfig(max_retries=5)) == 5
        assert tuning.max_retries(RunConfig(max_retries=0)) == 3

    def test_concurrency_limit(self):
        tuning = DispatchTuning(default_concurrency_limit=20)
        assert tuning.concurrency_limit(None) == 20
        assert tuning.concurrency_limit(Organization(id="o")) == 20
        assert tuning.concurrency_limit(Organization(id="o", concurrent_call_limit=3)) == 3

    def test_from_settings(self):
        from outreach.config import Settings

        s = Settings(dispatch_max_batch_size=7, dispatch_idle_wait_seconds=1.5)
        tuning = DispatchTuning.from_settings(s)
        assert tuning.max_batch_size == 7
        assert tuning.idle_wait_seconds == 1.5
