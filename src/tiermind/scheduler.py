"""Deferred and periodic background work with cancellable handles.

Nothing runs on its own until start() is called; run_pending() drains due
work synchronously, which is how tests drive it.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class Handle:
    name: str
    due: float
    interval: float | None = None
    cancelled: bool = False
    runs: int = 0
    _fn: Callable[[], Any] = field(default=lambda: None, repr=False)

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler:
    def __init__(self, clock: Callable[[], float] = time.time,
                 poll_interval: float = 0.05) -> None:
        self._clock = clock
        self._poll = poll_interval
        self._queue: list[tuple[float, int, Handle]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def defer(self, fn: Callable[..., Any], *args: Any, delay: float = 0.0,
              name: str | None = None) -> Handle:
        """Run ``fn(*args)`` once, ``delay`` seconds from now."""
        handle = Handle(
            name=name or getattr(fn, "__name__", "task"),
            due=self._clock() + delay,
            _fn=lambda: fn(*args),
        )
        self._push(handle)
        return handle

    def every(self, interval: float, fn: Callable[[], Any],
              name: str | None = None) -> Handle:
        """Run ``fn()`` every ``interval`` seconds; first run one interval from now."""
        if interval <= 0:
            raise ValueError("interval must be > 0")
        handle = Handle(
            name=name or getattr(fn, "__name__", "ticker"),
            due=self._clock() + interval,
            interval=interval,
            _fn=fn,
        )
        self._push(handle)
        return handle

    def _push(self, handle: Handle) -> None:
        with self._lock:
            heapq.heappush(self._queue, (handle.due, next(self._seq), handle))
        self._wake.set()

    def run_pending(self, now: float | None = None) -> int:
        """Run everything due at ``now``. Returns how many tasks ran."""
        now = self._clock() if now is None else now
        ran = 0
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > now:
                    break
                _, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._run(handle)
            ran += 1
            if handle.interval is not None and not handle.cancelled:
                handle.due = max(handle.due + handle.interval, now + 1e-9)
                self._push(handle)
        return ran

    def run_all(self) -> int:
        """Run every queued one-shot task regardless of due time. Tickers stay put."""
        ran = 0
        while True:
            with self._lock:
                ready = [h for _, _, h in self._queue
                         if h.interval is None and not h.cancelled]
                if not ready:
                    break
                self._queue = [item for item in self._queue if item[2].interval is not None]
                heapq.heapify(self._queue)
            for handle in sorted(ready, key=lambda h: h.due):
                self._run(handle)
                ran += 1
        return ran

    @staticmethod
    def _run(handle: Handle) -> None:
        handle.runs += 1
        try:
            handle._fn()
        except Exception:
            logger.exception("background task %s failed", handle.name)

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, h in self._queue if not h.cancelled)

    # ── background worker ──────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="tiermind-scheduler",
                                        daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def cancel_all(self) -> None:
        with self._lock:
            for _, _, handle in self._queue:
                handle.cancel()
            self._queue.clear()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_pending()
            with self._lock:
                next_due = self._queue[0][0] if self._queue else None
            wait = self._poll if next_due is None else max(0.0, min(self._poll, next_due - self._clock()))
            self._wake.wait(wait)
            self._wake.clear()
