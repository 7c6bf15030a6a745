"""
Fixed-interval, bounded wait primitive shared by every polling component.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class WaitResult:
    """Typed outcome of a bounded wait."""
    done: bool
    value: Any
    attempts: int
    elapsed: float
    cancelled: bool = False

    @property
    def timed_out(self) -> bool:
        return not self.done and not self.cancelled


class Waiter:
    """
    Poll an observer on a fixed interval until a predicate holds or time runs out.

    The observer always runs at least once. Setting ``cancel_event`` stops local
    polling only; whatever remote operation is being observed keeps going.
    """

    def __init__(
        self,
        interval: float = 15.0,
        timeout: float = 600.0,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if interval < 0 or timeout < 0:
            raise ValueError("interval and timeout must be non-negative")
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep or time.sleep
        self._clock = clock or time.monotonic
        self.cancel_event = cancel_event

    def with_timeout(self, timeout: float) -> "Waiter":
        """Return a copy of this waiter with a different budget."""
        return Waiter(
            interval=self.interval,
            timeout=timeout,
            sleep=self._sleep,
            clock=self._clock,
            cancel_event=self.cancel_event,
        )

    def wait_for(
        self,
        observe: Callable[[], Any],
        done: Callable[[Any], bool],
        on_poll: Optional[Callable[[Any, float], None]] = None,
    ) -> WaitResult:
        """
        Run ``observe`` until ``done(value)`` is true.

        Args:
            observe: Zero-argument callable returning the observed value
            done: Predicate deciding whether the observed value is final
            on_poll: Optional callback receiving (value, elapsed) after each
                non-final poll, used for progress logging

        Returns:
            WaitResult with the last observed value
        """
        start = self._clock()
        attempts = 0

        while True:
            value = observe()
            attempts += 1
            elapsed = self._clock() - start

            if done(value):
                return WaitResult(done=True, value=value, attempts=attempts, elapsed=elapsed)

            if elapsed + self.interval > self.timeout:
                logger.debug(f"Wait budget of {self.timeout}s exhausted after {attempts} polls")
                return WaitResult(done=False, value=value, attempts=attempts, elapsed=elapsed)

            if on_poll:
                on_poll(value, elapsed)

            if self._pause():
                return WaitResult(
                    done=False, value=value, attempts=attempts,
                    elapsed=self._clock() - start, cancelled=True,
                )

    def _pause(self) -> bool:
        """Sleep one interval. Returns True when cancelled."""
        if self.cancel_event is not None:
            return self.cancel_event.wait(self.interval)
        self._sleep(self.interval)
        return False
