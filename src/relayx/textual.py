"""Textual integration for relayx. Opt-in — requires textual.

// [LAW:single-enforcer] Guard + NoMatches + thread hop enforced here, not at callsites.
// [LAW:locality-or-seam] Textual coupling isolated in this module — core relayx stays agnostic.
// [LAW:no-shared-mutable-globals] _paused_apps has single owner (this module), explicit API
//   (pause/is_safe), documented invariant (id present ↔ inside pause context).
"""

from contextlib import contextmanager

from textual.css.query import NoMatches

from relayx.scheduler import CallbackScheduler
from relayx.subscribers import Assign, Sink

# Module-owned pause state — keyed by id(app) so multiple apps work in tests.
_paused_apps: set[int] = set()


@contextmanager
def pause(app):
    """Suspend guarded writes during widget replacement."""
    key = id(app)
    _paused_apps.add(key)
    try:
        yield
    finally:
        _paused_apps.discard(key)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused_apps


class AppScheduler(CallbackScheduler):
    """Scheduler hop onto the Textual app thread.

    Create it on the app thread. Off-thread deliveries go through
    app.call_from_thread; on-thread deliveries run inline once anything
    posted earlier has run.
    """

    def __init__(self, app) -> None:
        super().__init__(app.call_from_thread)
        self.app = app


class _GuardedAssign(Assign):
    def __init__(self, app, target, attr, *, alive=None) -> None:
        super().__init__(target, attr, alive=alive)
        self._app = app

    def on_value(self, value) -> None:
        if not is_safe(self._app):
            return
        try:
            super().on_value(value)
        except NoMatches:
            pass


class _GuardedSink(Sink):
    def __init__(self, app, on_value) -> None:
        super().__init__(on_value)
        self._app = app

    def on_value(self, value) -> None:
        if not is_safe(self._app):
            return
        try:
            super().on_value(value)
        except NoMatches:
            pass


def assign(app, publisher, target, attr, *, alive=None):
    """assign() that safely bridges a pipeline to Textual widgets.

    Hops onto the app thread, skips writes while paused/not running,
    catches NoMatches from widget queries. Returns the Subscription.
    """
    hopped = publisher.receive_on(AppScheduler(app))
    return _GuardedAssign(app, target, attr, alive=alive).attach(hopped)


def sink(app, publisher, on_value):
    """sink() with the same guards as assign()."""
    hopped = publisher.receive_on(AppScheduler(app))
    return _GuardedSink(app, on_value).attach(hopped)
