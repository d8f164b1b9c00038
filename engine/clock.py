"""Time authority for backtests and live code.

Everything that needs the current time asks a clock instead of the system
timer. ``RealClock`` reads the wall clock; ``SimulatedClock`` only moves when
told to and notifies tick subscribers as simulated time passes. Both expose
the same interface, and ``create_clock`` picks one from a ``ClockMode`` tag.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from config import ms_to_iso
from engine.errors import InvalidModeError, ListenerError

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_MS = 2000

TickListener = Callable[[int], Any]


class ClockMode(str, Enum):
    REAL = "REAL"
    SIMULATED = "SIMULATED"


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class Timer:
    """Handle returned by ``set_timeout`` / ``set_interval``."""

    def __init__(self, cancel_fn: Callable[[], Any]) -> None:
        self._cancel_fn = cancel_fn
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._cancel_fn()


class _TickListeners:
    """Subscriber registry with per-listener failure isolation."""

    def __init__(self) -> None:
        self._listeners: list[TickListener] = []
        self.errors: list[ListenerError] = []

    def add(self, callback: TickListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def clear(self) -> None:
        self._listeners = []

    def __len__(self) -> int:
        return len(self._listeners)

    def notify(self, timestamp: int) -> None:
        # Iterate over a copy: listeners may unsubscribe themselves.
        for listener in list(self._listeners):
            call_isolated(listener, timestamp, self.errors)


def call_isolated(
    callback: Callable[..., Any],
    timestamp: int,
    errors: list[ListenerError],
    pass_timestamp: bool = True,
) -> None:
    """Invoke a callback, logging and recording any exception it raises."""
    try:
        if pass_timestamp:
            callback(timestamp)
        else:
            callback()
    except Exception as exc:
        err = ListenerError(callback, exc, timestamp)
        errors.append(err)
        logger.exception("Error in tick listener: %s", err)


class RealClock:
    """Wall-clock time. Time cannot be moved; timers are real threads."""

    mode = ClockMode.REAL

    def __init__(self, tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS) -> None:
        self._tick_interval_ms = tick_interval_ms
        self._listeners = _TickListeners()

    def now(self) -> int:
        return wall_clock_ms()

    def advance(self, milliseconds: int) -> None:
        raise InvalidModeError("Cannot advance time in real-time mode")

    def set_time(self, timestamp: int) -> None:
        raise InvalidModeError("Cannot set time in real-time mode")

    @property
    def is_simulation(self) -> bool:
        return False

    @property
    def is_realtime(self) -> bool:
        return True

    @property
    def tick_interval_ms(self) -> int:
        return self._tick_interval_ms

    def set_tick_interval(self, milliseconds: int) -> None:
        if milliseconds <= 0:
            raise ValueError(f"Tick interval must be positive, got {milliseconds}")
        self._tick_interval_ms = int(milliseconds)

    @property
    def listener_errors(self) -> list[ListenerError]:
        return list(self._listeners.errors)

    def on_tick(self, callback: TickListener) -> Callable[[], None]:
        return self._listeners.add(callback)

    def clear_listeners(self) -> None:
        self._listeners.clear()

    def trigger_tick(self, timestamp: Optional[int] = None) -> None:
        """Notify subscribers; a live host calls this from its own loop."""
        self._listeners.notify(self.now() if timestamp is None else timestamp)

    def sleep(self, milliseconds: int) -> None:
        time.sleep(milliseconds / 1000.0)

    def set_timeout(self, milliseconds: int, callback: Callable[[], Any]) -> Timer:
        thread_timer = threading.Timer(milliseconds / 1000.0, callback)
        thread_timer.daemon = True
        thread_timer.start()
        return Timer(thread_timer.cancel)

    def set_interval(self, milliseconds: int, callback: Callable[[], Any]) -> Timer:
        stop = threading.Event()

        def _run() -> None:
            while not stop.wait(milliseconds / 1000.0):
                callback()

        worker = threading.Thread(target=_run, daemon=True)
        worker.start()
        return Timer(stop.set)

    def elapsed(self, timestamp: int) -> int:
        return self.now() - timestamp

    def to_iso(self) -> str:
        return ms_to_iso(self.now())

    def reset(self) -> None:
        self._listeners.clear()
        self._listeners.errors.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "current_time": self.now(),
            "simulated_time": None,
            "tick_interval_ms": self._tick_interval_ms,
            "listener_count": len(self._listeners),
            "timer_count": 0,
            "listener_errors": len(self._listeners.errors),
            "is_simulation": False,
        }


@dataclass
class _SimulatedTimer:
    target: int
    callback: Callable[[], Any]
    interval_ms: Optional[int] = None
    cancelled: bool = field(default=False)


class SimulatedClock:
    """Simulated time that only moves through ``advance`` / ``set_time``.

    Every ``advance`` checks the time since the last tick notification; once
    it reaches ``tick_interval_ms`` all subscribers are notified exactly once,
    however many intervals were crossed. Timers fire when simulated time
    reaches their target.
    Until time is first set, ``now()`` returns the wall clock reading taken at
    construction or at the last ``reset``.
    """

    mode = ClockMode.SIMULATED

    def __init__(
        self,
        start_time: Optional[int] = None,
        tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS,
    ) -> None:
        self._time: Optional[int] = None
        # Frozen wall-clock reading served by now() until time is first set.
        self._anchor = wall_clock_ms()
        self._last_tick_time: Optional[int] = None
        self._tick_interval_ms = tick_interval_ms
        self._listeners = _TickListeners()
        self._timers: list[_SimulatedTimer] = []
        if start_time is not None:
            self.set_time(start_time)

    def now(self) -> int:
        if self._time is None:
            return self._anchor
        return self._time

    @property
    def simulated_time(self) -> Optional[int]:
        return self._time

    @property
    def last_tick_time(self) -> Optional[int]:
        return self._last_tick_time

    @property
    def is_simulation(self) -> bool:
        return True

    @property
    def is_realtime(self) -> bool:
        return False

    def advance(self, milliseconds: int) -> None:
        if milliseconds < 0:
            raise ValueError(f"Cannot advance by a negative amount: {milliseconds}")
        if self._time is None:
            self._time = self._anchor
        self._time += int(milliseconds)
        self._check_and_trigger_tick()
        self._fire_due_timers()

    def set_time(self, timestamp: int) -> None:
        timestamp = int(timestamp)
        if self._time is not None and timestamp < self._time:
            raise ValueError(
                f"Cannot move simulated time backwards ({timestamp} < {self._time}); "
                "reset() the clock first"
            )
        self._time = timestamp
        self._last_tick_time = timestamp
        self._fire_due_timers()

    def _check_and_trigger_tick(self) -> None:
        current = self.now()
        if self._last_tick_time is None:
            self._last_tick_time = current
            return
        if current - self._last_tick_time >= self._tick_interval_ms:
            self._listeners.notify(current)
            self._last_tick_time = current

    def _fire_due_timers(self) -> None:
        current = self.now()
        for timer in list(self._timers):
            if timer.cancelled:
                continue
            if current < timer.target:
                continue
            call_isolated(timer.callback, current, self._listeners.errors, pass_timestamp=False)
            if timer.interval_ms is None:
                timer.cancelled = True
            else:
                timer.target = current + timer.interval_ms
        self._timers = [t for t in self._timers if not t.cancelled]

    @property
    def tick_interval_ms(self) -> int:
        return self._tick_interval_ms

    def set_tick_interval(self, milliseconds: int) -> None:
        if milliseconds <= 0:
            raise ValueError(f"Tick interval must be positive, got {milliseconds}")
        self._tick_interval_ms = int(milliseconds)

    @property
    def listener_errors(self) -> list[ListenerError]:
        return list(self._listeners.errors)

    def on_tick(self, callback: TickListener) -> Callable[[], None]:
        return self._listeners.add(callback)

    def clear_listeners(self) -> None:
        self._listeners.clear()

    def trigger_tick(self, timestamp: Optional[int] = None) -> None:
        self._listeners.notify(self.now() if timestamp is None else timestamp)

    def sleep(self, milliseconds: int) -> None:
        self.advance(milliseconds)

    def set_timeout(self, milliseconds: int, callback: Callable[[], Any]) -> Timer:
        timer = _SimulatedTimer(target=self.now() + int(milliseconds), callback=callback)
        self._timers.append(timer)
        return Timer(lambda: setattr(timer, "cancelled", True))

    def set_interval(self, milliseconds: int, callback: Callable[[], Any]) -> Timer:
        if milliseconds <= 0:
            raise ValueError(f"Interval must be positive, got {milliseconds}")
        timer = _SimulatedTimer(
            target=self.now() + int(milliseconds),
            callback=callback,
            interval_ms=int(milliseconds),
        )
        self._timers.append(timer)
        return Timer(lambda: setattr(timer, "cancelled", True))

    def elapsed(self, timestamp: int) -> int:
        return self.now() - timestamp

    def to_iso(self) -> str:
        return ms_to_iso(self.now())

    def reset(self) -> None:
        self._time = None
        self._anchor = wall_clock_ms()
        self._last_tick_time = None
        self._listeners.clear()
        self._listeners.errors.clear()
        self._timers = []

    def get_stats(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "current_time": self.now(),
            "simulated_time": self._time,
            "tick_interval_ms": self._tick_interval_ms,
            "listener_count": len(self._listeners),
            "timer_count": len([t for t in self._timers if not t.cancelled]),
            "listener_errors": len(self._listeners.errors),
            "is_simulation": True,
        }


Clock = Union[RealClock, SimulatedClock]


def create_clock(
    mode: ClockMode | str = ClockMode.SIMULATED,
    start_time: Optional[int] = None,
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS,
) -> Clock:
    """Build the clock variant for ``mode``."""
    mode = ClockMode(mode)
    if mode is ClockMode.SIMULATED:
        return SimulatedClock(start_time=start_time, tick_interval_ms=tick_interval_ms)
    if start_time is not None:
        raise InvalidModeError("A real-time clock cannot start at an arbitrary time")
    return RealClock(tick_interval_ms=tick_interval_ms)


class ClockView:
    """Read/subscribe-only handle given to strategies."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    @property
    def mode(self) -> ClockMode:
        return self._clock.mode

    @property
    def tick_interval_ms(self) -> int:
        return self._clock.tick_interval_ms

    def now(self) -> int:
        return self._clock.now()

    def elapsed(self, timestamp: int) -> int:
        return self._clock.elapsed(timestamp)

    def to_iso(self) -> str:
        return self._clock.to_iso()

    def on_tick(self, callback: TickListener) -> Callable[[], None]:
        return self._clock.on_tick(callback)

    def set_timeout(self, milliseconds: int, callback: Callable[[], Any]) -> Timer:
        return self._clock.set_timeout(milliseconds, callback)

    def set_interval(self, milliseconds: int, callback: Callable[[], Any]) -> Timer:
        return self._clock.set_interval(milliseconds, callback)
