# outreach/core/run_state.py
"""
In-process state owned per run.

One ``RunState`` holds everything the engine remembers about a run between
loop iterations: the batch sizer, the error streak, the last dispatch time,
recently processed row ids, the loop task and the scheduled-activation
timer. ``RunStateRegistry`` is the only shared map and is guarded by an
asyncio lock; its ``try_begin`` is the membership check that keeps a run
to one loop instance per process.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from outreach.core.capacity import AdaptiveBatchSizer, DispatchTuning, ErrorStreak


class RunState:
    def __init__(self, run_id: str, tuning: DispatchTuning, clock: Callable[[], float] = time.monotonic):
        self.run_id = run_id
        self.sizer = AdaptiveBatchSizer.from_tuning(tuning)
        self.streak = ErrorStreak.from_tuning(tuning)
        self.processing = False
        self.last_call_at: Optional[float] = None
        self.last_reap_at: float = clock()
        self.task: Optional[asyncio.Task] = None
        self.timer: Optional[asyncio.Task] = None

        self._clock = clock
        self._ttl = tuning.processed_ids_ttl_seconds
        self._processed: dict[str, float] = {}
        self._wake = asyncio.Event()

    # ----------------------------------------------------------------
    # Processed-id memory (guards against re-selecting within a tick)
    # ----------------------------------------------------------------

    def remember(self, row_id: str) -> None:
        self._processed[row_id] = self._clock()

    def recent_ids(self) -> list[str]:
        cutoff = self._clock() - self._ttl
        for row_id in [r for r, at in self._processed.items() if at < cutoff]:
            del self._processed[row_id]
        return list(self._processed)

    # ----------------------------------------------------------------
    # Rate limiting
    # ----------------------------------------------------------------

    def seconds_until_next_call(self, interval: float) -> float:
        if self.last_call_at is None:
            return 0.0
        return max(0.0, interval - (self._clock() - self.last_call_at))

    def mark_call(self) -> None:
        self.last_call_at = self._clock()

    def reaper_due(self, interval: float) -> bool:
        now = self._clock()
        if now - self.last_reap_at >= interval:
            self.last_reap_at = now
            return True
        return False

    # ----------------------------------------------------------------
    # Waiting / waking
    # ----------------------------------------------------------------

    async def nap(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``. Returns True if woken early by ``wake()``.
        """
        if seconds <= 0:
            await asyncio.sleep(0)
            return False
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        finally:
            self._wake.clear()
        return True

    def wake(self) -> None:
        self._wake.set()

    # ----------------------------------------------------------------
    # Timer
    # ----------------------------------------------------------------

    def cancel_timer(self) -> bool:
        timer, self.timer = self.timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            return True
        return False

    @property
    def idle(self) -> bool:
        return not self.processing and self.timer is None


class RunStateRegistry:
    """Concurrency-safe map of run id -> RunState."""

    def __init__(self, tuning: DispatchTuning, clock: Callable[[], float] = time.monotonic):
        self._tuning = tuning
        self._clock = clock
        self._states: dict[str, RunState] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, run_id: str) -> RunState:
        async with self._lock:
            state = self._states.get(run_id)
            if state is None:
                state = RunState(run_id, self._tuning, clock=self._clock)
                self._states[run_id] = state
            return state

    def get(self, run_id: str) -> Optional[RunState]:
        return self._states.get(run_id)

    async def try_begin(self, run_id: str) -> Optional[RunState]:
        """
        Mark the run as being processed. None if a loop already owns it.
        """
        async with self._lock:
            state = self._states.get(run_id)
            if state is None:
                state = RunState(run_id, self._tuning, clock=self._clock)
                self._states[run_id] = state
            if state.processing:
                return None
            state.processing = True
            return state

    async def finish(self, run_id: str) -> None:
        async with self._lock:
            state = self._states.get(run_id)
            if state is None:
                return
            state.processing = False
            state.task = None
            if state.idle:
                del self._states[run_id]

    async def discard_if_idle(self, run_id: str) -> None:
        async with self._lock:
            state = self._states.get(run_id)
            if state is not None and state.idle:
                del self._states[run_id]

    def is_processing(self, run_id: str) -> bool:
        state = self._states.get(run_id)
        return state is not None and state.processing

    def states(self) -> list[RunState]:
        return list(self._states.values())
