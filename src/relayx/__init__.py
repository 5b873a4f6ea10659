"""relayx: a small push-based reactive pipeline engine for Python."""

from importlib.metadata import version as _version

__version__ = _version("relayx")

from relayx.subscription import Subscription, SubscriptionBag
from relayx.publisher import (
    Publisher,
    Subscriber,
    PassthroughSubject,
    CurrentValueSubject,
    Just,
    Empty,
    Fail,
    from_coroutine,
)
from relayx.operators import (
    Map,
    Filter,
    Throttle,
    Debounce,
    RemoveDuplicates,
    SwitchToLatest,
    ReceiveOn,
    Delay,
    Catch,
)
from relayx.scheduler import (
    Scheduler,
    ImmediateScheduler,
    SerialScheduler,
    CallbackScheduler,
    AsyncioScheduler,
    VirtualTimeScheduler,
    set_default_scheduler,
    default_scheduler,
)
from relayx.subscribers import Sink, Assign
from relayx.recipes import latest_lookup
# textual NOT auto-imported — opt-in only

__all__ = [
    "Subscription",
    "SubscriptionBag",
    "Publisher",
    "Subscriber",
    "PassthroughSubject",
    "CurrentValueSubject",
    "Just",
    "Empty",
    "Fail",
    "from_coroutine",
    "Map",
    "Filter",
    "Throttle",
    "Debounce",
    "RemoveDuplicates",
    "SwitchToLatest",
    "ReceiveOn",
    "Delay",
    "Catch",
    "Scheduler",
    "ImmediateScheduler",
    "SerialScheduler",
    "CallbackScheduler",
    "AsyncioScheduler",
    "VirtualTimeScheduler",
    "set_default_scheduler",
    "default_scheduler",
    "Sink",
    "Assign",
    "latest_lookup",
]
