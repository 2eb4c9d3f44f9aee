"""Per-context cooperative scheduling and off-loop request execution.

Each browsing context (control pane, preview) owns one Scheduler. Tasks run
one at a time to completion, so a handler's store mutations are atomic with
respect to every other handler in the same context.

// [LAW:single-enforcer] All deferred work (timers, message delivery, network
// completions) re-enters a context through its scheduler.
// [LAW:locality-or-seam] ManualScheduler is the deterministic seam for tests;
// ThreadedScheduler is the real-time implementation.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellable reference to a scheduled task (one-shot or periodic)."""

    def __init__(
        self,
        when: float,
        fn: Callable[..., object],
        args: tuple,
        interval: float | None = None,
    ) -> None:
        self.when = when
        self.fn = fn
        self.args = args
        self.interval = interval
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def run(self) -> None:
        self.fn(*self.args)


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_soon(self, fn: Callable[..., object], *args: object) -> TimerHandle: ...

    def call_later(self, delay: float, fn: Callable[..., object], *args: object) -> TimerHandle: ...

    def call_every(self, interval: float, fn: Callable[..., object], *args: object) -> TimerHandle: ...


class _TimerQueue:
    """Heap of timers ordered by (when, insertion order)."""

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def push(self, handle: TimerHandle) -> None:
        heapq.heappush(self._heap, (handle.when, next(self._seq), handle))

    def next_when(self) -> float | None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def pop_due(self, now: float) -> list[TimerHandle]:
        due: list[TimerHandle] = []
        while self._heap and self._heap[0][0] <= now:
            _, _, handle = heapq.heappop(self._heap)
            if not handle.cancelled:
                due.append(handle)
        return due


def _rearm(queue: _TimerQueue, handle: TimerHandle) -> None:
    if handle.interval is not None and not handle.cancelled:
        handle.when += handle.interval
        queue.push(handle)


class ManualScheduler:
    """Deterministic scheduler driven by advance()/run_pending().

    Time only moves when the caller advances it, so debounce windows,
    heartbeats and retry backoff are reproducible in tests.
    """

    def __init__(self, start: float = 0.0, *, raise_errors: bool = True) -> None:
        self._now = start
        self._ready: deque[TimerHandle] = deque()
        self._timers = _TimerQueue()
        self._raise_errors = raise_errors

    def now(self) -> float:
        return self._now

    def call_soon(self, fn: Callable[..., object], *args: object) -> TimerHandle:
        handle = TimerHandle(self._now, fn, args)
        self._ready.append(handle)
        return handle

    def call_later(self, delay: float, fn: Callable[..., object], *args: object) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), fn, args)
        self._timers.push(handle)
        return handle

    def call_every(self, interval: float, fn: Callable[..., object], *args: object) -> TimerHandle:
        if interval <= 0:
            raise ValueError(f"call_every interval must be positive, got {interval!r}")
        handle = TimerHandle(self._now + interval, fn, args, interval=interval)
        self._timers.push(handle)
        return handle

    def _execute(self, handle: TimerHandle) -> None:
        try:
            handle.run()
        except Exception:
            if self._raise_errors:
                raise
            logger.exception("Scheduled task failed")

    def run_pending(self) -> int:
        """Run ready tasks and timers due at the current time. Returns tasks run."""
        count = 0
        while True:
            for handle in self._timers.pop_due(self._now):
                self._ready.append(handle)
                _rearm(self._timers, handle)
            if not self._ready:
                return count
            handle = self._ready.popleft()
            if handle.cancelled:
                continue
            self._execute(handle)
            count += 1

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing timers in due order."""
        target = self._now + max(0.0, seconds)
        count = self.run_pending()
        while True:
            next_when = self._timers.next_when()
            if next_when is None or next_when > target:
                break
            self._now = max(self._now, next_when)
            count += self.run_pending()
        self._now = target
        count += self.run_pending()
        return count


class ThreadedScheduler:
    """Real-time scheduler: one worker thread drains tasks in order."""

    def __init__(self, name: str = "preview-sync") -> None:
        self._name = name
        self._cond = threading.Condition()
        self._ready: deque[TimerHandle] = deque()
        self._timers = _TimerQueue()
        self._stopped = False
        self._thread: threading.Thread | None = None

    def now(self) -> float:
        return time.monotonic()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def call_soon(self, fn: Callable[..., object], *args: object) -> TimerHandle:
        handle = TimerHandle(self.now(), fn, args)
        with self._cond:
            self._ready.append(handle)
            self._cond.notify()
        return handle

    def call_later(self, delay: float, fn: Callable[..., object], *args: object) -> TimerHandle:
        handle = TimerHandle(self.now() + max(0.0, delay), fn, args)
        with self._cond:
            self._timers.push(handle)
            self._cond.notify()
        return handle

    def call_every(self, interval: float, fn: Callable[..., object], *args: object) -> TimerHandle:
        if interval <= 0:
            raise ValueError(f"call_every interval must be positive, got {interval!r}")
        handle = TimerHandle(self.now() + interval, fn, args, interval=interval)
        with self._cond:
            self._timers.push(handle)
            self._cond.notify()
        return handle

    def _next_task(self) -> TimerHandle | None:
        with self._cond:
            while not self._stopped:
                for handle in self._timers.pop_due(self.now()):
                    self._ready.append(handle)
                    _rearm(self._timers, handle)
                if self._ready:
                    return self._ready.popleft()
                next_when = self._timers.next_when()
                timeout = None if next_when is None else max(0.0, next_when - self.now())
                self._cond.wait(timeout)
            return None

    def _run(self) -> None:
        while True:
            handle = self._next_task()
            if handle is None:
                return
            if handle.cancelled:
                continue
            try:
                handle.run()
            except Exception:
                logger.exception("Scheduled task failed in %s", self._name)


class Debounced:
    """Trailing-edge debounce bound to a scheduler; each call restarts the wait."""

    def __init__(self, scheduler: Scheduler, delay: float, fn: Callable[..., object]) -> None:
        self._scheduler = scheduler
        self._delay = delay
        self._fn = fn
        self._handle: TimerHandle | None = None

    def __call__(self, *args: object) -> None:
        self.cancel()
        self._handle = self._scheduler.call_later(self._delay, self._fire, args)

    def _fire(self, args: tuple) -> None:
        self._handle = None
        self._fn(*args)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def pending(self) -> bool:
        return self._handle is not None


# ─── Request execution ────────────────────────────────────────────────────────


ResultCallback = Callable[[object], object]
ErrorCallback = Callable[[Exception], object]


class RequestRunner(Protocol):
    def submit(
        self,
        fn: Callable[[], object],
        on_result: ResultCallback,
        on_error: ErrorCallback,
    ) -> None: ...


class InlineRunner:
    """Runs the request synchronously on the caller's turn."""

    def submit(
        self,
        fn: Callable[[], object],
        on_result: ResultCallback,
        on_error: ErrorCallback,
    ) -> None:
        try:
            result = fn()
        except Exception as e:
            on_error(e)
            return
        on_result(result)


class ThreadPoolRunner:
    """Runs requests on a worker pool; completions re-enter via the scheduler.

    // [LAW:single-enforcer] Callbacks never run on pool threads, only on the
    // owning context's scheduler.
    """

    def __init__(self, scheduler: Scheduler, max_workers: int = 4) -> None:
        self._scheduler = scheduler
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="preview-sync-io")

    def submit(
        self,
        fn: Callable[[], object],
        on_result: ResultCallback,
        on_error: ErrorCallback,
    ) -> None:
        future = self._executor.submit(fn)

        def _deliver(done: Future) -> None:
            error = done.exception()
            if error is not None:
                on_error(error)  # type: ignore[arg-type]
                return
            on_result(done.result())

        future.add_done_callback(lambda done: self._scheduler.call_soon(_deliver, done))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
