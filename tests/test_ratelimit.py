from __future__ import annotations

from typing import Callable

from live_eval.ratelimit import Debouncer, Throttler


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _FakeTimer:
    def __init__(self, interval: float, function: Callable[[], None], due: float) -> None:
        self.interval = interval
        self.function = function
        self.due = due
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.cancelled = True
            self.function()


class _Timers:
    def __init__(self, clock: _Clock | None = None) -> None:
        self.clock = clock or _Clock()
        self.created: list[_FakeTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> _FakeTimer:
        timer = _FakeTimer(interval, function, self.clock.now + interval)
        self.created.append(timer)
        return timer

    def pending(self) -> list[_FakeTimer]:
        return [t for t in self.created if t.started and not t.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.clock.now + seconds
        while True:
            due = [t for t in self.pending() if t.due <= target + 1e-12]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.clock.now = max(self.clock.now, timer.due)
            timer.fire()
        self.clock.now = target


def test_debounce_runs_once_with_latest_arguments() -> None:
    timers = _Timers()
    calls: list[str] = []
    debouncer = Debouncer(timer_factory=timers)

    for text in ("x", "x =", "x = 1"):
        debouncer.call(calls.append, 50, text)

    assert calls == []
    assert len(timers.pending()) == 1
    assert timers.created[-1].interval == 0.05

    timers.advance(0.05)

    assert calls == ["x = 1"]
    assert debouncer.pending is False


def test_debounce_cancels_exactly_the_previous_timer() -> None:
    timers = _Timers()
    debouncer = Debouncer(timer_factory=timers)

    debouncer.call(lambda: None, 10)
    debouncer.call(lambda: None, 10)

    assert timers.created[0].cancelled is True
    assert timers.created[1].cancelled is False


def test_debounce_zero_delay_runs_synchronously() -> None:
    timers = _Timers()
    calls: list[int] = []
    debouncer = Debouncer(timer_factory=timers)

    debouncer.call(calls.append, 0, 1)

    assert calls == [1]
    assert timers.created == []


def test_debounce_cancel_drops_pending_call() -> None:
    timers = _Timers()
    calls: list[int] = []
    debouncer = Debouncer(timer_factory=timers)

    debouncer.call(calls.append, 30, 1)
    debouncer.cancel()
    timers.advance(1.0)

    assert calls == []
    assert debouncer.pending is False


def test_debounce_superseded_timer_that_fires_anyway_is_ignored() -> None:
    timers = _Timers()
    calls: list[int] = []
    debouncer = Debouncer(timer_factory=timers)

    debouncer.call(calls.append, 30, 1)
    debouncer.call(calls.append, 30, 2)
    # A real timer can fire right as it is being cancelled.
    timers.created[0].function()
    timers.advance(0.03)

    assert calls == [2]


def test_throttle_runs_leading_call_immediately() -> None:
    timers = _Timers()
    calls: list[int] = []
    throttled = Throttler(calls.append, 50, timer_factory=timers, clock=timers.clock)

    throttled(1)

    assert calls == [1]
    assert timers.created == []


def test_throttle_coalesces_calls_inside_window_into_one_trailing_run() -> None:
    timers = _Timers()
    calls: list[int] = []
    throttled = Throttler(calls.append, 50, timer_factory=timers, clock=timers.clock)

    throttled(1)
    timers.advance(0.01)
    throttled(2)
    throttled(3)
    throttled(4)

    assert calls == [1]
    assert len(timers.created) == 1
    assert abs(timers.created[0].interval - 0.04) < 1e-9

    timers.advance(0.04)

    assert calls == [1, 4]


def test_throttle_bounds_runs_per_interval() -> None:
    timers = _Timers()
    run_times: list[float] = []
    values: list[int] = []

    def action(value: int) -> None:
        run_times.append(timers.clock.now)
        values.append(value)

    throttled = Throttler(action, 50, timer_factory=timers, clock=timers.clock)

    for index in range(200):
        throttled(index)
        timers.advance(0.001)
    timers.advance(0.1)

    assert len(values) <= 200 // 50 + 1
    assert values[-1] == 199
    gaps = [later - earlier for earlier, later in zip(run_times, run_times[1:])]
    assert all(gap >= 0.05 - 1e-6 for gap in gaps)


def test_throttle_zero_interval_runs_synchronously() -> None:
    timers = _Timers()
    calls: list[int] = []
    throttled = Throttler(calls.append, 0, timer_factory=timers)

    throttled(1)
    throttled(2)

    assert calls == [1, 2]
    assert timers.created == []


def test_throttle_cancel_drops_trailing_run() -> None:
    timers = _Timers()
    calls: list[int] = []
    throttled = Throttler(calls.append, 50, timer_factory=timers, clock=timers.clock)

    throttled(1)
    throttled(2)
    throttled.cancel()
    timers.created[0].function()

    assert calls == [1]
