"""Periodic timers for the scheduler.

``TimerWheel`` keeps every armed timer in one heap served by a single timer
thread; due callbacks are handed to a shared worker pool, so a slow callback
never delays other timers. Timers are fixed-rate: when a tick is missed the
next one is moved to the following slot of the original phase, missed slots
are dropped rather than replayed.

``ManualTimerWheel`` has the same interface but only moves when ``advance`` is
called, running due callbacks inline on the caller's thread.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

LOG = logging.getLogger("copytrade.timers")

Callback = Callable[[], None]


class TimerHandle:
    __slots__ = ("interval", "callback", "name", "next_fire", "cancelled")

    def __init__(self, interval: float, callback: Callback, name: str, next_fire: float) -> None:
        self.interval = float(interval)
        self.callback = callback
        self.name = name
        self.next_fire = next_fire
        self.cancelled = False

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else f"next={self.next_fire:.3f}"
        return f"TimerHandle({self.name!r}, every {self.interval:g}s, {state})"


def _invoke(handle: TimerHandle) -> None:
    if handle.cancelled:
        return
    try:
        handle.callback()
    except Exception:
        LOG.exception("[timers] callback %s raised", handle.name)


def _next_slot(handle: TimerHandle, now: float) -> float:
    nxt = handle.next_fire + handle.interval
    if nxt > now:
        return nxt
    missed = math.floor((now - handle.next_fire) / handle.interval)
    LOG.debug("[timers] %s dropped %d missed tick(s)", handle.name, missed)
    return handle.next_fire + (missed + 1) * handle.interval


class TimerWheel:
    def __init__(self, max_workers: int = 4, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="copytrade-tick")
        self._thread: Optional[threading.Thread] = None
        self._stopped = False

    def arm(self, interval: float, callback: Callback, name: str = "timer") -> TimerHandle:
        if interval <= 0:
            raise ValueError("timer interval must be positive")
        with self._cond:
            if self._stopped:
                raise RuntimeError("timer wheel is shut down")
            handle = TimerHandle(interval, callback, name, self._clock() + interval)
            heapq.heappush(self._heap, (handle.next_fire, next(self._seq), handle))
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="copytrade-timer", daemon=True)
                self._thread.start()
            self._cond.notify()
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        with self._cond:
            handle.cancelled = True
            self._cond.notify()

    def active(self) -> int:
        with self._cond:
            return sum(1 for _, _, h in self._heap if not h.cancelled)

    def _next_due(self) -> Optional[TimerHandle]:
        """Block until a timer is due; ``None`` once shut down. Caller holds the condition."""
        while not self._stopped:
            while self._heap and self._heap[0][2].cancelled:
                heapq.heappop(self._heap)
            if not self._heap:
                self._cond.wait()
                continue
            now = self._clock()
            due = self._heap[0][0]
            if due > now:
                self._cond.wait(due - now)
                continue
            _, _, handle = heapq.heappop(self._heap)
            handle.next_fire = _next_slot(handle, now)
            heapq.heappush(self._heap, (handle.next_fire, next(self._seq), handle))
            return handle
        return None

    def _run(self) -> None:
        while True:
            with self._cond:
                handle = self._next_due()
            if handle is None:
                return
            try:
                self._pool.submit(_invoke, handle)
            except RuntimeError:
                # pool already shut down
                return

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._stopped = True
            for _, _, handle in self._heap:
                handle.cancelled = True
            self._heap.clear()
            self._cond.notify_all()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._pool.shutdown(wait=wait)


class ManualTimerWheel:
    """Simulated-clock timer wheel; time only moves through :meth:`advance`."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._stopped = False

    def arm(self, interval: float, callback: Callback, name: str = "timer") -> TimerHandle:
        if interval <= 0:
            raise ValueError("timer interval must be positive")
        with self._lock:
            if self._stopped:
                raise RuntimeError("timer wheel is shut down")
            handle = TimerHandle(interval, callback, name, self.now + interval)
            heapq.heappush(self._heap, (handle.next_fire, next(self._seq), handle))
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        with self._lock:
            handle.cancelled = True

    def active(self) -> int:
        with self._lock:
            return sum(1 for _, _, h in self._heap if not h.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every tick that falls due. Returns ticks fired."""
        target = self.now + float(seconds)
        fired = 0
        while True:
            with self._lock:
                while self._heap and self._heap[0][2].cancelled:
                    heapq.heappop(self._heap)
                if not self._heap or self._heap[0][0] > target:
                    break
                due, _, handle = heapq.heappop(self._heap)
                self.now = due
                handle.next_fire = due + handle.interval
                heapq.heappush(self._heap, (handle.next_fire, next(self._seq), handle))
            _invoke(handle)
            fired += 1
        self.now = target
        return fired

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._stopped = True
            for _, _, handle in self._heap:
                handle.cancelled = True
            self._heap.clear()


__all__ = ["TimerHandle", "TimerWheel", "ManualTimerWheel"]
