from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class TimerLike(Protocol):
    def start(self) -> None:
        """Arm the timer.

        Example:
            ```python
            timer.start()
            ```
        """
        ...

    def cancel(self) -> None:
        """Disarm the timer if it has not fired yet.

        Example:
            ```python
            timer.cancel()
            ```
        """
        ...


TimerFactory = Callable[[float, Callable[[], None]], TimerLike]


def thread_timer(interval_seconds: float, function: Callable[[], None]) -> TimerLike:
    """Create a daemon `threading.Timer` so pending calls never block exit.

    Example:
        ```python
        timer = thread_timer(0.05, lambda: None)
        timer.start()
        ```
    """
    timer = threading.Timer(interval_seconds, function)
    timer.daemon = True
    return timer


class Debouncer:
    """Run an action only once a quiet period has passed since the last call.

    Example:
        ```python
        debouncer = Debouncer()
        debouncer.call(print, 300, "typing stopped")
        ```
    """

    def __init__(self, timer_factory: TimerFactory = thread_timer) -> None:
        """Create a debouncer with no pending call.

        Example:
            ```python
            debouncer = Debouncer(timer_factory=thread_timer)
            ```
        """
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: TimerLike | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        """Whether a call is waiting for its quiet period.

        Example:
            ```python
            assert debouncer.pending is False
            ```
        """
        with self._lock:
            return self._timer is not None

    def call(self, action: Callable[..., Any], delay_ms: float, *args: Any) -> None:
        """Schedule `action(*args)`, replacing any call still waiting.

        Example:
            ```python
            debouncer.call(session.evaluate, 300, event)
            ```
        """
        with self._lock:
            self._cancel_locked()
            if delay_ms <= 0:
                run_now = True
            else:
                run_now = False
                self._generation += 1
                generation = self._generation
                timer = self._timer_factory(
                    delay_ms / 1000.0,
                    lambda: self._fire(generation, action, args),
                )
                self._timer = timer
                timer.start()
        if run_now:
            action(*args)

    def cancel(self) -> None:
        """Drop the pending call, if any.

        Example:
            ```python
            debouncer.cancel()
            ```
        """
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        """Cancel exactly the one timer currently pending.

        Example:
            ```python
            with debouncer._lock:
                debouncer._cancel_locked()
            ```
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._generation += 1

    def _fire(self, generation: int, action: Callable[..., Any], args: tuple[Any, ...]) -> None:
        """Run the action unless a newer call or a cancel superseded this timer.

        Example:
            ```python
            debouncer._fire(1, print, ("done",))
            ```
        """
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
        action(*args)


class Throttler:
    """Run an action at most once per interval, keeping the latest arguments.

    Example:
        ```python
        throttled = Throttler(renderer.update, 50)
        throttled()
        ```
    """

    def __init__(
        self,
        action: Callable[..., Any],
        min_interval_ms: float,
        *,
        timer_factory: TimerFactory = thread_timer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wrap an action with a minimum interval between runs.

        Example:
            ```python
            throttled = Throttler(print, 50, clock=time.monotonic)
            ```
        """
        self._action = action
        self._interval = max(0.0, float(min_interval_ms)) / 1000.0
        self._timer_factory = timer_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._last_run: float | None = None
        self._timer: TimerLike | None = None
        self._pending_args: tuple[Any, ...] = ()
        self._generation = 0

    def __call__(self, *args: Any) -> None:
        """Run now if the interval has passed, otherwise coalesce into one trailing run.

        Example:
            ```python
            throttled("latest")
            ```
        """
        if self._interval <= 0:
            self._action(*args)
            return
        with self._lock:
            now = self._clock()
            if self._timer is not None:
                self._pending_args = args
                return
            wait = 0.0 if self._last_run is None else self._last_run + self._interval - now
            if wait <= 0:
                self._last_run = now
                run_now = True
            else:
                run_now = False
                self._pending_args = args
                generation = self._generation
                timer = self._timer_factory(wait, lambda: self._fire_trailing(generation))
                self._timer = timer
                timer.start()
        if run_now:
            self._action(*args)

    def cancel(self) -> None:
        """Drop the trailing run, if one is scheduled.

        Example:
            ```python
            throttled.cancel()
            ```
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            self._pending_args = ()

    def _fire_trailing(self, generation: int) -> None:
        """Run the coalesced call with the latest arguments.

        Example:
            ```python
            throttled._fire_trailing(0)
            ```
        """
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self._last_run = self._clock()
            args = self._pending_args
            self._pending_args = ()
        logger.debug("Running throttled call after coalescing")
        self._action(*args)
