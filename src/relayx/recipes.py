"""Prebuilt pipelines.

latest_lookup() wires the "search as you type" chain:

    source -> throttle -> remove_duplicates -> switch_map(fetch)
           -> receive_on(foreground) -> assign(target, attr)

At most one fetch per interval reaches the service, repeated input is
ignored, and a slow earlier result can never overwrite a later one.
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from relayx.publisher import Publisher
from relayx.scheduler import Scheduler
from relayx.subscription import Subscription

T = TypeVar("T")
U = TypeVar("U")


def latest_lookup(
    source: Publisher[T],
    fetch: Callable[[T], Publisher[U]],
    target: object,
    attr: str,
    *,
    interval: float,
    background: Scheduler,
    foreground: Scheduler,
    alive: Callable[[Any], bool] | None = None,
    propagate_errors: bool = False,
) -> Subscription:
    """Build the lookup chain and return its outermost Subscription.

    Throttling, deduplication and the service call run on background;
    the write to target.<attr> runs on foreground. Cancelling the returned
    subscription stops the pending throttle timer and any in-flight fetch.

    Usage:
        query = CurrentValueSubject("")
        sub = latest_lookup(
            query, api.search, view, "results",
            interval=0.5, background=SerialScheduler(), foreground=main,
        )
    """
    return (
        source.throttle(interval, background, latest=True)
        .remove_duplicates()
        .switch_map(fetch, propagate_errors=propagate_errors)
        .receive_on(foreground)
        .assign(target, attr, alive=alive)
    )
