"""Tests for map/filter/debounce/delay/catch and operator chaining."""

from relayx import (
    Fail,
    Just,
    PassthroughSubject,
    VirtualTimeScheduler,
    default_scheduler,
    set_default_scheduler,
)


class TestMap:
    def test_transforms_values(self):
        subject = PassthroughSubject()
        received = []
        subject.map(lambda v: v * 2).sink(received.append)
        subject.emit(3)
        subject.emit(5)
        assert received == [6, 10]

    def test_chained_maps(self):
        subject = PassthroughSubject()
        received = []
        subject.map(lambda v: v + 1).map(lambda v: v * 10).sink(received.append)
        subject.emit(2)
        assert received == [30]

    def test_service_map_emits_publishers(self):
        subject = PassthroughSubject()
        received = []
        subject.map(lambda v: Just(v)).sink(received.append)
        subject.emit("q")
        assert isinstance(received[0], Just)

    def test_raising_fn_fails_subscription(self, caplog):
        subject = PassthroughSubject()
        received, completions = [], []
        subject.map(lambda v: 10 // v).sink(received.append, completions.append)
        subject.emit(2)
        with caplog.at_level("ERROR", logger="relayx.operators"):
            subject.emit(0)
        subject.emit(5)
        assert received == [5]
        assert len(completions) == 1
        assert isinstance(completions[0], ZeroDivisionError)
        assert subject.subscriber_count == 0
        assert "map function failed" in caplog.text

    def test_completion_forwarded(self):
        subject = PassthroughSubject()
        completions = []
        subject.map(str).sink(lambda v: None, completions.append)
        subject.complete()
        assert completions == [None]


class TestFilter:
    def test_passes_matching_values(self):
        subject = PassthroughSubject()
        received = []
        subject.filter(lambda v: v % 2 == 0).sink(received.append)
        for v in range(1, 5):
            subject.emit(v)
        assert received == [2, 4]

    def test_filter_then_map(self):
        subject = PassthroughSubject()
        received = []
        subject.filter(lambda v: v > 0).map(lambda v: v * 10).sink(received.append)
        subject.emit(-1)
        subject.emit(3)
        assert received == [30]


class TestDebounce:
    def test_coalesces_burst(self):
        clock = VirtualTimeScheduler()
        subject = PassthroughSubject()
        received = []
        subject.debounce(50, clock).sink(received.append)
        for t, v in [(0, 1), (10, 2), (20, 3)]:
            clock.advance_to(t)
            subject.emit(v)
        clock.advance_to(69)
        assert received == []
        clock.advance_to(70)
        assert received == [3]

    def test_separate_bursts(self):
        clock = VirtualTimeScheduler()
        subject = PassthroughSubject()
        received = []
        subject.debounce(30, clock).sink(received.append)
        subject.emit("a")
        clock.advance(100)
        subject.emit("b")
        clock.advance(100)
        assert received == ["a", "b"]

    def test_cancel_drops_pending(self):
        clock = VirtualTimeScheduler()
        subject = PassthroughSubject()
        received = []
        sub = subject.debounce(30, clock).sink(received.append)
        subject.emit("a")
        sub.cancel()
        clock.flush()
        assert received == []
        assert clock.pending_count == 0


class TestDelay:
    def test_shifts_values_and_completion(self):
        clock = VirtualTimeScheduler()
        subject = PassthroughSubject()
        received, completions = [], []
        subject.delay(100, clock).sink(received.append, completions.append)
        subject.emit(1)
        subject.complete()
        clock.advance(99)
        assert received == []
        clock.advance(1)
        assert received == [1]
        assert completions == [None]

    def test_cancel_drops_pending(self):
        clock = VirtualTimeScheduler()
        subject = PassthroughSubject()
        received = []
        sub = subject.delay(100, clock).sink(received.append)
        subject.emit(1)
        subject.emit(2)
        sub.cancel()
        assert clock.pending_count == 0
        clock.flush()
        assert received == []

    def test_uses_default_scheduler(self):
        clock = VirtualTimeScheduler()
        old = default_scheduler()
        set_default_scheduler(clock)
        try:
            received = []
            Just("x").delay(10).sink(received.append)
            assert received == []
            clock.advance(10)
            assert received == ["x"]
        finally:
            set_default_scheduler(old)

    def test_scheduler_failure_fails_subscription(self, caplog):
        class _Broken(VirtualTimeScheduler):
            def schedule_after(self, delay, fn):
                raise RuntimeError("timer pool exhausted")

        subject = PassthroughSubject()
        received, completions = [], []
        subject.delay(10, _Broken()).sink(received.append, completions.append)
        subject.emit(1)
        subject.emit(2)
        assert received == []
        assert len(completions) == 1
        assert isinstance(completions[0], RuntimeError)
        assert subject.subscriber_count == 0
        assert "delay could not schedule a delivery" in caplog.text


class TestCatch:
    def test_replace_error(self):
        received, completions = [], []
        Fail(ValueError("boom")).replace_error("fallback").sink(received.append, completions.append)
        assert received == ["fallback"]
        assert completions == [None]

    def test_ignore_errors_completes_empty(self):
        received, completions = [], []
        Fail(ValueError("boom")).ignore_errors().sink(received.append, completions.append)
        assert received == []
        assert completions == [None]

    def test_values_before_failure_kept(self):
        subject = PassthroughSubject()
        received, completions = [], []
        subject.catch(lambda e: Just(type(e).__name__)).sink(received.append, completions.append)
        subject.emit(1)
        subject.complete(KeyError("k"))
        assert received == [1, "KeyError"]
        assert completions == [None]

    def test_switches_to_async_fallback(self):
        primary = PassthroughSubject()
        fallback = PassthroughSubject()
        received = []
        sub = primary.catch(lambda e: fallback).sink(received.append)
        primary.complete(RuntimeError("down"))
        fallback.emit("from fallback")
        assert received == ["from fallback"]
        sub.cancel()
        assert fallback.subscriber_count == 0

    def test_fallback_failure_forwarded(self):
        received, completions = [], []
        second = OSError("also down")
        Fail(RuntimeError("down")).catch(lambda e: Fail(second)).sink(received.append, completions.append)
        assert completions == [second]

    def test_normal_completion_passes_through(self):
        completions = []
        Just(1).catch(lambda e: Just(2)).sink(lambda v: None, completions.append)
        assert completions == [None]
