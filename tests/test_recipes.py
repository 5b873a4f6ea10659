"""End-to-end: the search-as-you-type pipeline built by latest_lookup().

Virtual milliseconds; throttle interval 500.
"""

import threading

from relayx import (
    CurrentValueSubject,
    ImmediateScheduler,
    Just,
    PassthroughSubject,
    SerialScheduler,
    VirtualTimeScheduler,
    latest_lookup,
)


class _ResultsView:
    """Slot owner that records every write."""

    def __init__(self):
        self.history = []
        self.is_destroyed = False

    @property
    def results(self):
        return self.history[-1] if self.history else None

    @results.setter
    def results(self, value):
        self.history.append(value)


class _Service:
    """Fake async service: a result per term after a per-term latency."""

    def __init__(self, clock, latency):
        self.clock = clock
        self.latency = latency
        self.calls = []

    def fetch(self, term):
        self.calls.append(term)
        return Just(f"result:{term}").delay(self.latency.get(term, 100), self.clock)


def _type(clock, source, t, text):
    clock.advance_to(t)
    source.emit(text)
    clock.advance_to(t)


class TestLatestLookup:
    def test_typing_scenario(self):
        clock = VirtualTimeScheduler()
        source = PassthroughSubject()
        service = _Service(clock, {"a": 2000})
        view = _ResultsView()
        latest_lookup(
            source, service.fetch, view, "results",
            interval=500, background=clock, foreground=clock,
        )

        _type(clock, source, 0, "a")
        _type(clock, source, 50, "ab")
        _type(clock, source, 600, "ab")
        _type(clock, source, 650, "abc")
        clock.advance_to(3000)

        # "ab" at 600 is superseded by "abc" in the throttle buffer
        assert service.calls == ["a", "ab", "abc"]
        # the slow "a" result resolves after "abc" was issued: never written
        assert view.history == ["result:ab", "result:abc"]
        assert clock.pending_count == 0

    def test_repeated_input_after_quiet_period_is_not_refetched(self):
        clock = VirtualTimeScheduler()
        source = PassthroughSubject()
        service = _Service(clock, {})
        view = _ResultsView()
        latest_lookup(
            source, service.fetch, view, "results",
            interval=500, background=clock, foreground=clock,
        )

        _type(clock, source, 0, "ab")
        _type(clock, source, 600, "ab")
        clock.flush()

        assert service.calls == ["ab"]
        assert view.history == ["result:ab"]

    def test_current_value_cell_seeds_first_lookup(self):
        clock = VirtualTimeScheduler()
        query = CurrentValueSubject("seed")
        service = _Service(clock, {})
        view = _ResultsView()
        latest_lookup(
            query, service.fetch, view, "results",
            interval=500, background=clock, foreground=clock,
        )
        clock.flush()
        assert view.history == ["result:seed"]

    def test_cancel_stops_everything(self):
        clock = VirtualTimeScheduler()
        source = PassthroughSubject()
        service = _Service(clock, {"a": 300})
        view = _ResultsView()
        sub = latest_lookup(
            source, service.fetch, view, "results",
            interval=500, background=clock, foreground=clock,
        )

        _type(clock, source, 0, "a")    # request in flight until 300
        _type(clock, source, 100, "ab")  # buffered until 500
        assert clock.pending_count > 0

        sub.cancel()

        assert clock.pending_count == 0
        assert source.subscriber_count == 0
        source.emit("abc")
        clock.flush()
        assert view.history == []

    def test_destroyed_view_tears_down_chain(self):
        clock = VirtualTimeScheduler()
        source = PassthroughSubject()
        service = _Service(clock, {})
        view = _ResultsView()
        sub = latest_lookup(
            source, service.fetch, view, "results",
            interval=500, background=clock, foreground=clock,
        )

        _type(clock, source, 0, "a")
        clock.advance_to(200)
        view.is_destroyed = True
        _type(clock, source, 1000, "b")
        clock.flush()

        assert view.history == ["result:a"]
        assert sub.cancelled
        assert source.subscriber_count == 0

    def test_failed_lookup_does_not_end_pipeline(self):
        clock = VirtualTimeScheduler()
        source = PassthroughSubject()
        view = _ResultsView()

        def fetch(term):
            if term == "bad":
                return Just(term).map(lambda t: 1 / 0)
            return Just(f"result:{term}")

        latest_lookup(
            source, fetch, view, "results",
            interval=500, background=clock, foreground=clock,
        )
        _type(clock, source, 0, "bad")
        _type(clock, source, 1000, "good")
        clock.flush()

        assert view.history == ["result:good"]


class TestLatestLookupThreads:
    def test_background_and_foreground_contexts(self):
        background = SerialScheduler("lookup")
        done = threading.Event()
        fetched_on = []

        def fetch(term):
            fetched_on.append(background.is_current())
            return Just(term.upper())

        class _Signal(_ResultsView):
            @_ResultsView.results.setter
            def results(self, value):
                self.history.append(value)
                done.set()

        view = _Signal()
        source = PassthroughSubject()
        try:
            latest_lookup(
                source, fetch, view, "results",
                interval=0.05, background=background, foreground=ImmediateScheduler(),
            )
            source.emit("x")
            assert done.wait(timeout=2)
            assert view.history == ["X"]
            assert fetched_on == [True]
        finally:
            background.close()
