"""Operator stages — publishers that derive their output from another publisher.

Each operator is a thin Publisher holding its upstream and parameters.
subscribe() builds a fresh stage object, so mutable state (last forward
time, last-seen value, active inner subscription, pending timers) lives
exactly as long as one subscription.

Teardown rules shared by every stage:
- cancel() from downstream cancels upstream plus every timer and inner
  subscription the stage owns. Nothing is delivered afterwards.
- Upstream completion or failure releases the same resources and is
  forwarded downstream once.
- A raising user function (map fn, predicate, equality) or scheduler is
  fatal to that subscription: logged, torn down, sent downstream as failure.
"""

from __future__ import annotations

import logging
import threading
from abc import abstractmethod
from collections import deque
from typing import Any, Callable, TypeVar

from relayx.publisher import Publisher, Subscriber
from relayx.scheduler import Scheduler, default_scheduler
from relayx.subscription import Subscription

logger = logging.getLogger("relayx.operators")

T = TypeVar("T")
U = TypeVar("U")

_NONE = object()


def _same(a: Any, b: Any) -> bool:
    return a is b or a == b


class _Stage(Subscriber[T]):
    """Per-subscription state: upstream link, downstream target, teardown."""

    def __init__(self, downstream: Subscriber) -> None:
        self._downstream = downstream
        self._lock = threading.Lock()
        self._done = False
        self._upstream: Subscription | None = None
        self.subscription = Subscription(self._teardown)

    def attach(self, upstream: Publisher) -> Subscription:
        subscription = upstream.subscribe(self)
        with self._lock:
            stale = self._done or self._upstream is not None
            if not stale:
                self._upstream = subscription
        if stale:
            subscription.cancel()
        return self.subscription

    def on_complete(self, error: BaseException | None = None) -> None:
        self._finish(error)

    def _send(self, value: Any) -> None:
        if not self._done:
            self._downstream.on_value(value)

    def _finish(self, error: BaseException | None = None) -> None:
        """Terminate downstream exactly once and release everything."""
        with self._lock:
            if self._done:
                return
            self._done = True
            upstream, self._upstream = self._upstream, None
        self._release()
        if upstream is not None:
            upstream.cancel()
        self._downstream.on_complete(error)

    def _teardown(self) -> None:
        """Downstream cancelled: release silently."""
        with self._lock:
            self._done = True
            upstream, self._upstream = self._upstream, None
        self._release()
        if upstream is not None:
            upstream.cancel()

    def _release(self) -> None:
        """Drop stage-owned resources. Called without the lock held."""


class _Operator(Publisher[U]):
    def __init__(self, upstream: Publisher) -> None:
        self._upstream = upstream

    def subscribe(self, subscriber: Subscriber[U]) -> Subscription:
        return self._make_stage(subscriber).attach(self._upstream)

    @abstractmethod
    def _make_stage(self, downstream: Subscriber[U]) -> _Stage: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._upstream!r})"


def _resolve(scheduler: Scheduler | None) -> Scheduler:
    return scheduler if scheduler is not None else default_scheduler()


def _check_interval(interval: float) -> float:
    if interval < 0:
        raise ValueError(f"interval must be >= 0, got {interval!r}")
    return float(interval)


# ─── Map / Filter ────────────────────────────────────────────────────────────


class _MapStage(_Stage):
    def __init__(self, downstream, fn) -> None:
        super().__init__(downstream)
        self._fn = fn

    def on_value(self, value) -> None:
        if self._done:
            return
        try:
            result = self._fn(value)
        except Exception as error:
            logger.exception("map function failed on %r; cancelling subscription", value)
            self._finish(error)
            return
        self._send(result)


class Map(_Operator[U]):
    """Transform each value. fn runs synchronously and must not block.

    With a service call (fn returns a Publisher) the output is a publisher
    of publishers; flatten it with SwitchToLatest.
    """

    def __init__(self, upstream: Publisher[T], fn: Callable[[T], U]) -> None:
        super().__init__(upstream)
        self._fn = fn

    def _make_stage(self, downstream):
        return _MapStage(downstream, self._fn)


class _FilterStage(_Stage):
    def __init__(self, downstream, predicate) -> None:
        super().__init__(downstream)
        self._predicate = predicate

    def on_value(self, value) -> None:
        if self._done:
            return
        try:
            keep = self._predicate(value)
        except Exception as error:
            logger.exception("filter predicate failed on %r; cancelling subscription", value)
            self._finish(error)
            return
        if keep:
            self._send(value)


class Filter(_Operator[T]):
    def __init__(self, upstream: Publisher[T], predicate: Callable[[T], bool]) -> None:
        super().__init__(upstream)
        self._predicate = predicate

    def _make_stage(self, downstream):
        return _FilterStage(downstream, self._predicate)


# ─── Throttle / Debounce ─────────────────────────────────────────────────────


class _ThrottleStage(_Stage):
    def __init__(self, downstream, interval, scheduler, latest) -> None:
        super().__init__(downstream)
        self._interval = interval
        self._scheduler = scheduler
        self._latest = latest
        self._last_forward: float | None = None
        self._pending: Any = _NONE
        self._timer: Subscription | None = None

    def on_value(self, value) -> None:
        failure = None
        with self._lock:
            if self._done:
                return
            now = self._scheduler.now()
            idle = self._last_forward is None or now - self._last_forward >= self._interval
            if self._pending is _NONE and idle:
                self._last_forward = now
                forward = True
            else:
                forward = False
                if self._latest or self._pending is _NONE:
                    self._pending = value
                if self._timer is None:
                    delay = self._last_forward + self._interval - now
                    try:
                        self._timer = self._scheduler.schedule_after(delay, self._flush)
                    except Exception as error:
                        logger.exception("throttle could not schedule its forward")
                        failure = error
        if failure is not None:
            self._finish(failure)
        elif forward:
            self._scheduler.schedule(lambda: self._send(value))

    def _flush(self) -> None:
        with self._lock:
            self._timer = None
            if self._done or self._pending is _NONE:
                return
            value, self._pending = self._pending, _NONE
            self._last_forward = self._scheduler.now()
        self._send(value)

    def _release(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
            dropped, self._pending = self._pending, _NONE
        if timer is not None:
            timer.cancel()
        if dropped is not _NONE:
            logger.debug("throttle dropped buffered value %r on teardown", dropped)


class Throttle(_Operator[T]):
    """At most one value per interval, measured on scheduler's clock.

    A value arriving after a quiet interval is forwarded at once. Values
    arriving sooner are buffered (latest=True keeps the newest, latest=False
    the first) and forwarded at last_forward + interval. A buffered value is
    dropped, not flushed, when the subscription ends.

    All forwards run on scheduler, which is where the downstream stages
    execute.
    """

    def __init__(
        self,
        upstream: Publisher[T],
        interval: float,
        scheduler: Scheduler | None = None,
        *,
        latest: bool = True,
    ) -> None:
        super().__init__(upstream)
        self._interval = _check_interval(interval)
        self._scheduler = _resolve(scheduler)
        self._latest = latest

    def _make_stage(self, downstream):
        return _ThrottleStage(downstream, self._interval, self._scheduler, self._latest)


class _DebounceStage(_Stage):
    def __init__(self, downstream, interval, scheduler) -> None:
        super().__init__(downstream)
        self._interval = interval
        self._scheduler = scheduler
        self._timer: Subscription | None = None
        self._generation = 0

    def on_value(self, value) -> None:
        failure = None
        with self._lock:
            if self._done:
                return
            previous = self._timer
            self._generation += 1
            generation = self._generation
            try:
                self._timer = self._scheduler.schedule_after(
                    self._interval, lambda: self._fire(generation, value)
                )
            except Exception as error:
                logger.exception("debounce could not schedule its forward")
                self._timer = None
                failure = error
        if previous is not None:
            previous.cancel()
        if failure is not None:
            self._finish(failure)

    def _fire(self, generation: int, value) -> None:
        with self._lock:
            if self._done or generation != self._generation:
                return
            self._timer = None
        self._send(value)

    def _release(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()


class Debounce(_Operator[T]):
    """Coalesce bursts: forward a value once interval passes with no newer one.

    Each new value cancels the pending timer, so only the last value of a
    burst fires. The pending value is dropped when the subscription ends.
    """

    def __init__(self, upstream: Publisher[T], interval: float, scheduler: Scheduler | None = None) -> None:
        super().__init__(upstream)
        self._interval = _check_interval(interval)
        self._scheduler = _resolve(scheduler)

    def _make_stage(self, downstream):
        return _DebounceStage(downstream, self._interval, self._scheduler)


# ─── RemoveDuplicates ────────────────────────────────────────────────────────


class _RemoveDuplicatesStage(_Stage):
    def __init__(self, downstream, equals) -> None:
        super().__init__(downstream)
        self._equals = equals
        self._last: Any = _NONE

    def on_value(self, value) -> None:
        with self._lock:
            if self._done:
                return
            last, self._last = self._last, value
        if last is not _NONE:
            try:
                duplicate = self._equals(last, value)
            except Exception as error:
                logger.exception("remove_duplicates equality failed; cancelling subscription")
                self._finish(error)
                return
            if duplicate:
                return
        self._send(value)


class RemoveDuplicates(_Operator[T]):
    """Suppress consecutive equal values. A, A, B, A forwards A, B, A."""

    def __init__(self, upstream: Publisher[T], equals: Callable[[T, T], bool] | None = None) -> None:
        super().__init__(upstream)
        self._equals = equals or _same

    def _make_stage(self, downstream):
        return _RemoveDuplicatesStage(downstream, self._equals)


# ─── SwitchToLatest ──────────────────────────────────────────────────────────


class _InnerSubscriber(Subscriber):
    __slots__ = ("_stage", "_generation", "finished")

    def __init__(self, stage: _SwitchStage, generation: int) -> None:
        self._stage = stage
        self._generation = generation
        self.finished = False

    def on_value(self, value) -> None:
        self._stage._inner_value(self._generation, value)

    def on_complete(self, error: BaseException | None = None) -> None:
        self.finished = True
        self._stage._inner_complete(self._generation, error)


class _SwitchStage(_Stage):
    def __init__(self, downstream, propagate_errors) -> None:
        super().__init__(downstream)
        self._propagate_errors = propagate_errors
        self._generation = 0
        self._inner: Subscription | None = None
        # Serialized delivery: whichever thread finds _delivering unset drains
        # _pending; everyone else only queues. No lock is held downstream.
        self._pending: deque = deque()
        self._delivering = False

    def on_value(self, inner: Publisher) -> None:
        if not isinstance(inner, Publisher):
            error = TypeError(f"switch_to_latest expects a Publisher, got {type(inner).__name__}")
            logger.error("switch_to_latest: %s; cancelling subscription", error)
            self._finish(error)
            return
        with self._lock:
            if self._done:
                return
            self._generation += 1
            generation = self._generation
            previous, self._inner = self._inner, None
        if previous is not None:
            logger.debug("switch_to_latest: cancelling superseded inner %d", generation - 1)
            previous.cancel()

        receiver = _InnerSubscriber(self, generation)
        try:
            subscription = inner.subscribe(receiver)
        except Exception as error:
            logger.exception("switch_to_latest: subscribing to inner %d failed", generation)
            self._inner_complete(generation, error)
            return

        with self._lock:
            current = not self._done and not receiver.finished and generation == self._generation
            if current:
                self._inner = subscription
        if not current:
            subscription.cancel()

    def _inner_value(self, generation: int, value) -> None:
        self._enqueue(generation, value, None)

    def _inner_complete(self, generation: int, error: BaseException | None) -> None:
        with self._lock:
            if self._done or generation != self._generation:
                return  # superseded — routine, never reported
            finished, self._inner = self._inner, None
        if finished is not None:
            finished.cancel()
        if error is None:
            return
        if self._propagate_errors:
            self._enqueue(generation, _NONE, error)
            return
        logger.warning(
            "switch_to_latest: inner %d failed, waiting for the next upstream value",
            generation,
            exc_info=error,
        )

    def _enqueue(self, generation: int, value, error: BaseException | None) -> None:
        with self._lock:
            if self._done or generation != self._generation:
                return  # superseded
            self._pending.append((generation, value, error))
            if self._delivering:
                return
            self._delivering = True
        try:
            self._drain()
        except BaseException:
            with self._lock:
                self._delivering = False
            raise

    def _drain(self) -> None:
        while True:
            with self._lock:
                entry = None
                while self._pending:
                    generation, value, error = self._pending.popleft()
                    if not self._done and generation == self._generation:
                        entry = (value, error)
                        break
                if entry is None:
                    self._delivering = False
                    return
            value, error = entry
            if error is not None:
                self._finish(error)
            else:
                self._downstream.on_value(value)

    def _release(self) -> None:
        with self._lock:
            inner, self._inner = self._inner, None
            self._generation += 1
            self._pending.clear()
        if inner is not None:
            inner.cancel()


class SwitchToLatest(_Operator[Any]):
    """Flatten a publisher of publishers, keeping only the newest inner one live.

    A new inner publisher cancels the previous inner subscription (and the
    work behind it) before the new one is subscribed. Values a superseded
    inner still manages to emit are discarded. Inner completion is not
    forwarded; upstream completion cancels the live inner and completes.

    Inner failure: by default logged and dropped, and the pipeline keeps
    listening for the next upstream value. propagate_errors=True fails the
    flattened stream instead. An upstream value that is not a Publisher
    fails the subscription with TypeError.

    Deliveries from inner publishers on different threads are serialized
    through a queue; no lock is held while calling downstream.
    """

    def __init__(self, upstream: Publisher[Publisher[Any]], *, propagate_errors: bool = False) -> None:
        super().__init__(upstream)
        self._propagate_errors = propagate_errors

    def _make_stage(self, downstream):
        return _SwitchStage(downstream, self._propagate_errors)


# ─── ReceiveOn / Delay ───────────────────────────────────────────────────────


class _ReceiveOnStage(_Stage):
    def __init__(self, downstream, scheduler) -> None:
        super().__init__(downstream)
        self._scheduler = scheduler

    def on_value(self, value) -> None:
        if not self._done:
            self._scheduler.schedule(lambda: self._send(value))

    def on_complete(self, error: BaseException | None = None) -> None:
        if not self._done:
            self._scheduler.schedule(lambda: self._finish(error))


class ReceiveOn(_Operator[T]):
    """Scheduler hop: relocate delivery to scheduler without transforming values.

    Per-hop order is the scheduler's order, FIFO for every scheduler in
    relayx.scheduler. Values still queued when the subscription is
    cancelled are dropped.
    """

    def __init__(self, upstream: Publisher[T], scheduler: Scheduler) -> None:
        super().__init__(upstream)
        self._scheduler = scheduler

    def _make_stage(self, downstream):
        return _ReceiveOnStage(downstream, self._scheduler)


class _DelayStage(_Stage):
    def __init__(self, downstream, interval, scheduler) -> None:
        super().__init__(downstream)
        self._interval = interval
        self._scheduler = scheduler
        self._timers: set[Subscription] = set()

    def _later(self, fn) -> None:
        holder: list[Subscription] = []

        def _run() -> None:
            with self._lock:
                if holder:
                    self._timers.discard(holder[0])
            fn()

        failure = None
        with self._lock:
            if self._done:
                return
            try:
                timer = self._scheduler.schedule_after(self._interval, _run)
            except Exception as error:
                logger.exception("delay could not schedule a delivery")
                failure = error
            else:
                holder.append(timer)
                self._timers.add(timer)
        if failure is not None:
            self._finish(failure)

    def on_value(self, value) -> None:
        self._later(lambda: self._send(value))

    def on_complete(self, error: BaseException | None = None) -> None:
        self._later(lambda: self._finish(error))

    def _release(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, set()
        for timer in timers:
            timer.cancel()


class Delay(_Operator[T]):
    """Shift every value and the completion by interval on scheduler."""

    def __init__(self, upstream: Publisher[T], interval: float, scheduler: Scheduler | None = None) -> None:
        super().__init__(upstream)
        self._interval = _check_interval(interval)
        self._scheduler = _resolve(scheduler)

    def _make_stage(self, downstream):
        return _DelayStage(downstream, self._interval, self._scheduler)


# ─── Catch ───────────────────────────────────────────────────────────────────


class _CatchStage(_Stage):
    def __init__(self, downstream, handler) -> None:
        super().__init__(downstream)
        self._handler = handler
        self._recovering = False

    def on_value(self, value) -> None:
        self._send(value)

    def on_complete(self, error: BaseException | None = None) -> None:
        if error is None or self._recovering:
            self._finish(error)
            return
        self._recovering = True
        try:
            fallback = self._handler(error)
        except Exception as handler_error:
            logger.exception("catch handler failed")
            self._finish(handler_error)
            return
        logger.debug("catch: replacing failed upstream after %r", error)
        with self._lock:
            if self._done:
                return
            self._upstream = None
        subscription = fallback.subscribe(self)
        with self._lock:
            stale = self._done
            if not stale:
                self._upstream = subscription
        if stale:
            subscription.cancel()


class Catch(_Operator[T]):
    """On upstream failure, continue with the publisher handler(error) returns.

    Failures of the replacement publisher are forwarded as-is.
    """

    def __init__(self, upstream: Publisher[T], handler: Callable[[BaseException], Publisher[T]]) -> None:
        super().__init__(upstream)
        self._handler = handler

    def _make_stage(self, downstream):
        return _CatchStage(downstream, self._handler)
