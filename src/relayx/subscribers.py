"""Terminal subscribers — where values leave the pipeline.

Sink calls user callbacks. Assign writes into an attribute of an object it
does not own: the target is held through a weakref and checked for
liveness before every write.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Any, Callable, TypeVar

from relayx.publisher import Publisher, Subscriber
from relayx.subscription import Subscription

logger = logging.getLogger("relayx.subscribers")

T = TypeVar("T")


class _Terminal(Subscriber[T]):
    """Owns the outermost Subscription of a chain."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = False
        self._upstream: Subscription | None = None
        self.subscription = Subscription(self._teardown)

    def attach(self, publisher: Publisher[T]) -> Subscription:
        upstream = publisher.subscribe(self)
        with self._lock:
            stale = self._done
            if not stale:
                self._upstream = upstream
        if stale:
            upstream.cancel()
        return self.subscription

    def on_complete(self, error: BaseException | None = None) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
            self._upstream = None
        self._completed(error)

    def _completed(self, error: BaseException | None) -> None:
        pass

    def _teardown(self) -> None:
        with self._lock:
            self._done = True
            upstream, self._upstream = self._upstream, None
        if upstream is not None:
            upstream.cancel()


class Sink(_Terminal[T]):
    """Callback subscriber. Errors raised by the callbacks propagate."""

    def __init__(
        self,
        on_value: Callable[[T], None],
        on_complete: Callable[[BaseException | None], None] | None = None,
    ) -> None:
        super().__init__()
        self._on_value = on_value
        self._on_complete = on_complete

    def on_value(self, value: T) -> None:
        if not self._done:
            self._on_value(value)

    def _completed(self, error: BaseException | None) -> None:
        if self._on_complete is not None:
            self._on_complete(error)


def _default_alive(target: Any) -> bool:
    return not getattr(target, "is_destroyed", False)


class Assign(_Terminal[T]):
    """Write each value to target.<attr> without keeping target alive.

    Liveness: the weakref still resolves, and alive(target) is true when
    given, otherwise target.is_destroyed is falsy (or missing). A dead
    target turns the write into a no-op and cancels the subscription,
    which tears the whole chain down.

    Usage:
        query.switch_map(fetch).receive_on(main).assign(view, "results")
    """

    def __init__(
        self,
        target: object,
        attr: str,
        *,
        alive: Callable[[Any], bool] | None = None,
    ) -> None:
        super().__init__()
        self._target = weakref.ref(target)
        self._attr = attr
        self._alive = alive or _default_alive

    @property
    def target_alive(self) -> bool:
        target = self._target()
        return target is not None and bool(self._alive(target))

    def on_value(self, value: T) -> None:
        if self._done:
            return
        target = self._target()
        if target is None or not self._alive(target):
            logger.debug("assign target for %r is gone; cancelling subscription", self._attr)
            self.subscription.cancel()
            return
        setattr(target, self._attr, value)

    def __repr__(self) -> str:
        state = "live" if self.target_alive else "dead"
        return f"Assign({self._attr!r}, {state})"
