"""Schedulers — which execution context runs the next stage.

A scheduler answers three questions: what time is it, run this soon, run
this later. schedule_after() returns a Subscription so a pending timer is
cancelled the same way as a chain.

Thread model: call set_default_scheduler() once at startup if the stock
ImmediateScheduler is not what throttle/debounce/delay should use. Every
operator also accepts an explicit scheduler.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import queue
import threading
import time
from collections import deque
from typing import Callable, Protocol

from relayx.subscription import Subscription

logger = logging.getLogger("relayx.scheduler")

Action = Callable[[], None]


class Scheduler(Protocol):
    def now(self) -> float: ...

    def schedule(self, fn: Action) -> None: ...

    def schedule_after(self, delay: float, fn: Action) -> Subscription: ...


def _start_timer(delay: float, fn: Action) -> Subscription:
    """Daemon threading.Timer wrapped in a Subscription."""
    timer = threading.Timer(max(delay, 0.0), fn)
    timer.daemon = True
    timer.start()
    return Subscription(timer.cancel)


class ImmediateScheduler:
    """Runs actions inline on the calling thread. Delays fire on timer threads."""

    def now(self) -> float:
        return time.monotonic()

    def schedule(self, fn: Action) -> None:
        fn()

    def schedule_after(self, delay: float, fn: Action) -> Subscription:
        return _start_timer(delay, fn)

    def __repr__(self) -> str:
        return "ImmediateScheduler()"


class SerialScheduler:
    """A background context: one daemon worker draining a FIFO queue.

    Actions run in the order they were scheduled. Delayed actions join the
    queue when their timer fires. An action that raises is logged and the
    worker keeps going.
    """

    _STOP = object()

    def __init__(self, name: str = "relayx-serial") -> None:
        self.name = name
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def now(self) -> float:
        return time.monotonic()

    def schedule(self, fn: Action) -> None:
        if self._closed:
            logger.debug("%s is closed; dropping action %r", self.name, fn)
            return
        self._queue.put(fn)

    def schedule_after(self, delay: float, fn: Action) -> Subscription:
        return _start_timer(delay, lambda: self.schedule(fn))

    def is_current(self) -> bool:
        """Is the caller running on this scheduler's worker thread?"""
        return threading.current_thread() is self._thread

    def close(self, wait: bool = False) -> None:
        """Stop the worker after the actions already queued."""
        self._closed = True
        self._queue.put(self._STOP)
        if wait and not self.is_current():
            self._thread.join()

    def _run(self) -> None:
        while True:
            fn = self._queue.get()
            if fn is self._STOP:
                break
            try:
                fn()
            except Exception:
                logger.exception("Scheduled action failed on %s", self.name)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "running"
        return f"SerialScheduler({self.name!r}, {state})"


class CallbackScheduler:
    """Relocates execution through a post function owned by another thread.

    Create it on the owning thread:
        main = CallbackScheduler(loop.call_soon_threadsafe)

    Every action joins one FIFO queue that is only ever drained on the
    owning thread. Calls from the owning thread drain it synchronously, so
    they run after anything posted earlier from other threads, never ahead
    of it. Calls from anywhere else post a drain through post(fn). The
    owning thread never calls post itself.
    """

    def __init__(self, post: Callable[[Action], object]) -> None:
        self._post = post
        self._owner = threading.current_thread()
        self._queue: deque[Action] = deque()
        self._lock = threading.Lock()
        self._draining = False

    def now(self) -> float:
        return time.monotonic()

    def schedule(self, fn: Action) -> None:
        with self._lock:
            self._queue.append(fn)
        if threading.current_thread() is self._owner:
            self._drain()
        else:
            self._post(self._drain)

    def _drain(self) -> None:
        # Owner thread only. A nested schedule() while draining just queues.
        if self._draining:
            return
        self._draining = True
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        return
                    fn = self._queue.popleft()
                fn()
        finally:
            self._draining = False

    def schedule_after(self, delay: float, fn: Action) -> Subscription:
        return _start_timer(delay, lambda: self.schedule(fn))


class AsyncioScheduler:
    """Runs actions on an asyncio event loop. Safe to call from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def now(self) -> float:
        return self._loop.time()

    def schedule(self, fn: Action) -> None:
        self._loop.call_soon_threadsafe(fn)

    def schedule_after(self, delay: float, fn: Action) -> Subscription:
        lock = threading.Lock()
        handle: list[asyncio.TimerHandle | None] = [None]
        cancelled = [False]

        def _arm() -> None:
            with lock:
                if not cancelled[0]:
                    handle[0] = self._loop.call_later(max(delay, 0.0), fn)

        def _cancel() -> None:
            with lock:
                cancelled[0] = True
                if handle[0] is not None:
                    handle[0].cancel()

        self._loop.call_soon_threadsafe(_arm)
        return Subscription(_cancel)


class _VirtualAction:
    __slots__ = ("fn", "cancelled")

    def __init__(self, fn: Action) -> None:
        self.fn = fn
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualTimeScheduler:
    """Manual clock for deterministic tests.

    Nothing runs until the clock is moved. schedule() queues at the current
    time; advance()/advance_to() run everything due, in due-time then
    scheduling order, including actions scheduled while advancing.

    Usage:
        clock = VirtualTimeScheduler()
        stream = subject.throttle(0.5, scheduler=clock)
        subject.emit("a")
        clock.advance(0.5)
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._heap: list[tuple[float, int, _VirtualAction]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._now

    def schedule(self, fn: Action) -> None:
        self._push(self._now, fn)

    def schedule_after(self, delay: float, fn: Action) -> Subscription:
        action = self._push(self._now + max(delay, 0.0), fn)
        return Subscription(action.cancel)

    @property
    def pending_count(self) -> int:
        """Scheduled actions that are neither run nor cancelled."""
        with self._lock:
            return sum(1 for _, _, action in self._heap if not action.cancelled)

    def advance(self, seconds: float) -> None:
        self.advance_to(self._now + seconds)

    def advance_to(self, target: float) -> None:
        while True:
            entry = self._pop_due(target)
            if entry is None:
                break
            due, action = entry
            self._now = max(self._now, due)
            action.fn()
        self._now = max(self._now, target)

    def flush(self) -> None:
        """Run everything pending, moving the clock as far as needed."""
        while True:
            with self._lock:
                live = [due for due, _, action in self._heap if not action.cancelled]
            if not live:
                break
            self.advance_to(max(live))

    def _push(self, due: float, fn: Action) -> _VirtualAction:
        action = _VirtualAction(fn)
        with self._lock:
            heapq.heappush(self._heap, (due, next(self._seq), action))
        return action

    def _pop_due(self, target: float) -> tuple[float, _VirtualAction] | None:
        with self._lock:
            while self._heap and self._heap[0][0] <= target:
                due, _, action = heapq.heappop(self._heap)
                if not action.cancelled:
                    return due, action
        return None

    def __repr__(self) -> str:
        return f"VirtualTimeScheduler(now={self._now!r}, pending={self.pending_count})"


# ─── Default scheduler ───────────────────────────────────────────────────────
_default_scheduler: Scheduler = ImmediateScheduler()


def set_default_scheduler(scheduler: Scheduler) -> None:
    """Set the scheduler used by time-based operators when none is passed.

    Call once at startup:
        relayx.set_default_scheduler(SerialScheduler("search"))
    """
    global _default_scheduler
    _default_scheduler = scheduler


def default_scheduler() -> Scheduler:
    return _default_scheduler
