"""Publishers — typed sources of values over time.

A Publisher is declarative: building a chain (subject.throttle(...).map(...))
does nothing until a terminal subscriber attaches. Each subscribe() call
creates an independent subscription with its own stage state.

Root publishers:
- PassthroughSubject: pushes emitted values, keeps nothing.
- CurrentValueSubject: a current-value cell. New subscribers get the
  current value first. Setting the value and emitting it are one call.

Completion is a single channel: on_complete(None) finishes normally,
on_complete(error) fails. Either is terminal.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, TypeVar

from relayx.subscription import Subscription

T = TypeVar("T")
U = TypeVar("U")


class Subscriber(ABC, Generic[T]):
    """Receives values, then at most one completion."""

    @abstractmethod
    def on_value(self, value: T) -> None: ...

    def on_complete(self, error: BaseException | None = None) -> None:
        pass


class Publisher(ABC, Generic[T]):
    """Base publisher with operator chaining. Each operator returns a new publisher."""

    @abstractmethod
    def subscribe(self, subscriber: Subscriber[T]) -> Subscription: ...

    # --- Operators ---

    def map(self, fn: Callable[[T], U]) -> Publisher[U]:
        """Transform each value through fn.

        When fn returns a Publisher (a service call), follow with
        switch_to_latest() or use switch_map().
        """
        from relayx.operators import Map

        return Map(self, fn)

    def filter(self, predicate: Callable[[T], bool]) -> Publisher[T]:
        from relayx.operators import Filter

        return Filter(self, predicate)

    def throttle(self, interval: float, scheduler=None, *, latest: bool = True) -> Publisher[T]:
        """At most one value per interval. Bursts forward their latest (or first) value."""
        from relayx.operators import Throttle

        return Throttle(self, interval, scheduler, latest=latest)

    def debounce(self, interval: float, scheduler=None) -> Publisher[T]:
        """Forward a value once interval passes without a newer one."""
        from relayx.operators import Debounce

        return Debounce(self, interval, scheduler)

    def remove_duplicates(self, equals: Callable[[T, T], bool] | None = None) -> Publisher[T]:
        from relayx.operators import RemoveDuplicates

        return RemoveDuplicates(self, equals)

    def switch_to_latest(self, *, propagate_errors: bool = False) -> Publisher[Any]:
        """Flatten a publisher of publishers, keeping only the newest inner one live."""
        from relayx.operators import SwitchToLatest

        return SwitchToLatest(self, propagate_errors=propagate_errors)

    def switch_map(
        self, fn: Callable[[T], Publisher[U]], *, propagate_errors: bool = False
    ) -> Publisher[U]:
        return self.map(fn).switch_to_latest(propagate_errors=propagate_errors)

    def receive_on(self, scheduler) -> Publisher[T]:
        """Deliver values and completion downstream on scheduler, in order."""
        from relayx.operators import ReceiveOn

        return ReceiveOn(self, scheduler)

    def delay(self, interval: float, scheduler=None) -> Publisher[T]:
        from relayx.operators import Delay

        return Delay(self, interval, scheduler)

    def catch(self, handler: Callable[[BaseException], Publisher[T]]) -> Publisher[T]:
        """On failure, continue with the publisher handler(error) returns."""
        from relayx.operators import Catch

        return Catch(self, handler)

    def replace_error(self, value: T) -> Publisher[T]:
        return self.catch(lambda _error: Just(value))

    def ignore_errors(self) -> Publisher[T]:
        """Turn a failure into a normal, empty completion."""
        return self.catch(lambda _error: Empty())

    # --- Terminal subscribers ---

    def sink(
        self,
        on_value: Callable[[T], None],
        on_complete: Callable[[BaseException | None], None] | None = None,
    ) -> Subscription:
        """Subscribe with callbacks. Returns the Subscription."""
        from relayx.subscribers import Sink

        return Sink(on_value, on_complete).attach(self)

    def assign(self, target: object, attr: str, *, alive: Callable[[Any], bool] | None = None) -> Subscription:
        """Write each value to target.attr, holding target weakly."""
        from relayx.subscribers import Assign

        return Assign(target, attr, alive=alive).attach(self)


class PassthroughSubject(Publisher[T]):
    """Root publisher that pushes values synchronously, in attachment order."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber[T]] = []
        self._done = False
        self._error: BaseException | None = None
        self._lock = threading.Lock()

    @property
    def completed(self) -> bool:
        return self._done

    def emit(self, value: T) -> None:
        """Push a value to every attached subscriber. No-op after completion."""
        with self._lock:
            if self._done:
                return
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.on_value(value)

    def complete(self, error: BaseException | None = None) -> None:
        """Terminate every subscriber. Late subscribers get the same completion."""
        with self._lock:
            if self._done:
                return
            self._done = True
            self._error = error
            subscribers, self._subscribers = self._subscribers, []
        for subscriber in subscribers:
            subscriber.on_complete(error)

    def subscribe(self, subscriber: Subscriber[T]) -> Subscription:
        with self._lock:
            done = self._done
            if not done:
                self._subscribers.append(subscriber)
        if done:
            subscriber.on_complete(self._error)
            return Subscription()
        return Subscription(lambda: self._remove(subscriber))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _remove(self, subscriber: Subscriber[T]) -> None:
        with self._lock:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass  # already removed by completion


class CurrentValueSubject(PassthroughSubject[T]):
    """Current-value cell: holds one value and replays it to new subscribers.

    Usage:
        query = CurrentValueSubject("")
        query.emit("ab")     # store and push
        query.value          # "ab"
    """

    def __init__(self, value: T) -> None:
        super().__init__()
        self._value = value
        self._version = 0

    @property
    def value(self) -> T:
        return self._value

    def emit(self, value: T) -> None:
        with self._lock:
            if self._done:
                return
            self._value = value
            self._version += 1
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.on_value(value)

    def subscribe(self, subscriber: Subscriber[T]) -> Subscription:
        # Replay before publishing the subscriber. If an emit lands during
        # the replay, replay the newer value too; the version check and the
        # append share one lock hold, so every emit reaches it exactly once.
        with self._lock:
            done = self._done
            current, version = self._value, self._version
        while not done:
            subscriber.on_value(current)
            with self._lock:
                done = self._done
                if not done and self._version == version:
                    self._subscribers.append(subscriber)
                    return Subscription(lambda: self._remove(subscriber))
                current, version = self._value, self._version
        subscriber.on_complete(self._error)
        return Subscription()

    def __repr__(self) -> str:
        return f"CurrentValueSubject({self._value!r})"


class Just(Publisher[T]):
    """Emits one value, then completes."""

    def __init__(self, value: T) -> None:
        self._value = value

    def subscribe(self, subscriber: Subscriber[T]) -> Subscription:
        subscriber.on_value(self._value)
        subscriber.on_complete(None)
        return Subscription()


class Empty(Publisher[Any]):
    """Completes immediately without a value."""

    def subscribe(self, subscriber: Subscriber[Any]) -> Subscription:
        subscriber.on_complete(None)
        return Subscription()


class Fail(Publisher[Any]):
    """Fails immediately with error."""

    def __init__(self, error: BaseException) -> None:
        self._error = error

    def subscribe(self, subscriber: Subscriber[Any]) -> Subscription:
        subscriber.on_complete(self._error)
        return Subscription()


class _CoroutinePublisher(Publisher[T]):
    def __init__(
        self,
        factory: Callable[[], Awaitable[T]],
        loop: asyncio.AbstractEventLoop | None,
    ) -> None:
        self._factory = factory
        self._loop = loop

    def subscribe(self, subscriber: Subscriber[T]) -> Subscription:
        if self._loop is None:
            loop = asyncio.get_running_loop()
            future = loop.create_task(self._factory())
            # Task.cancel is not thread-safe; the canceller may be a worker thread.
            subscription = Subscription(lambda: loop.call_soon_threadsafe(future.cancel))
        else:
            future = asyncio.run_coroutine_threadsafe(self._factory(), self._loop)
            subscription = Subscription(future.cancel)

        def _on_done(fut) -> None:
            if fut.cancelled() or subscription.cancelled:
                return  # superseded — silent
            error = fut.exception()
            if error is not None:
                subscriber.on_complete(error)
                return
            subscriber.on_value(fut.result())
            subscriber.on_complete(None)

        future.add_done_callback(_on_done)
        return subscription


def from_coroutine(
    factory: Callable[[], Awaitable[T]],
    loop: asyncio.AbstractEventLoop | None = None,
) -> Publisher[T]:
    """Wrap an async call as a cancellable single-value publisher.

    Each subscription starts a task from factory(). Cancelling the
    subscription cancels the task, which is how switch_to_latest() stops
    stale requests. Without loop, subscribe() must run inside the loop;
    with loop, it may run on any thread.

    Usage:
        def fetch(term):
            return from_coroutine(lambda: client.search(term), loop)

        query.switch_map(fetch)
    """
    return _CoroutinePublisher(factory, loop)
