"""Subscriptions — the cancellable link between a publisher and a subscriber.

A Subscription owns exactly one teardown callback. cancel() runs it once;
every later call is a no-op. Schedulers hand out the same type for pending
timers, so "cancel a chain" and "cancel a timer" are one operation.
"""

from __future__ import annotations

import threading
from typing import Callable

Disposer = Callable[[], None]


class Subscription:
    """Idempotent, thread-safe cancellation handle."""

    __slots__ = ("_on_cancel", "_cancelled", "_lock")

    def __init__(self, on_cancel: Disposer | None = None) -> None:
        self._on_cancel = on_cancel
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Run the teardown callback. Safe to call any number of times."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()

    def store_in(self, bag: SubscriptionBag) -> Subscription:
        bag.add(self)
        return self

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"Subscription({state})"


class SubscriptionBag:
    """Owner-side container that keeps subscriptions and cancels them together.

    Usage:
        bag = SubscriptionBag()
        query.throttle(0.5).sink(print).store_in(bag)
        ...
        bag.cancel_all()  # owner going away
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def add(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.append(subscription)

    def cancel_all(self) -> None:
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            sub.cancel()

    def __len__(self) -> int:
        return len(self._subscriptions)
