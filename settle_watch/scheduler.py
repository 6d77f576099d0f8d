"""Periodic flush trigger that only runs while there is pending work.

The scheduler owns one reusable background thread. It is started lazily by
:meth:`FlushScheduler.activate` and winds down on its own once
:meth:`FlushScheduler.deactivate` is called, so an idle watcher holds no
running timer.

Key Invariants:
    - ``activate``/``deactivate`` only touch the scheduler's own condition and
      never call back into the caller, so they are safe to invoke while the
      caller holds its own lock.
    - The tick callback runs with the condition released.
    - After ``stop`` returns, no tick is running and none will start.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["FlushScheduler"]


class FlushScheduler:
    """Invoke a callback once per interval while active.

    Attributes:
        interval (float): Seconds between two ticks.
        callback (Callable[[], None]): Invoked on every tick.
    """

    __slots__ = (
        "interval",
        "callback",
        "_condition",
        "_next_tick",
        "_active",
        "_stopped",
        "_thread",
        "_ticks",
    )

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        """Initialize an idle scheduler.

        Args:
            interval (float): Seconds between two ticks. Must be positive.
            callback (Callable[[], None]): The function to call on every tick.

        Raises:
            ValueError: If ``interval`` is not positive.
        """
        if interval <= 0:
            raise ValueError(f"Tick interval must be positive, got {interval}")
        self.interval = interval
        self.callback = callback
        self._condition = threading.Condition()
        self._next_tick = 0.0
        self._active = False
        self._stopped = False
        self._thread: Optional[threading.Thread] = None
        self._ticks = 0

    @property
    def is_active(self) -> bool:
        with self._condition:
            return self._active

    @property
    def is_stopped(self) -> bool:
        with self._condition:
            return self._stopped

    @property
    def tick_count(self) -> int:
        with self._condition:
            return self._ticks

    def activate(self) -> None:
        """Enter the running state; the first tick fires one interval from now.

        Activating an already running scheduler keeps its current cadence.
        """
        with self._condition:
            if self._stopped or self._active:
                return
            self._active = True
            self._next_tick = time.monotonic() + self.interval
            self._start_thread()
            self._condition.notify_all()

    def deactivate(self) -> None:
        """Return to idle. The timer thread exits at its next wake-up."""
        with self._condition:
            if not self._active:
                return
            self._active = False
            self._condition.notify_all()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop permanently and wait for the timer thread to finish.

        Safe to call more than once and from inside the tick callback (the
        thread does not join itself in that case).

        Args:
            timeout (Optional[float]): Seconds to wait for the thread to exit.
        """
        with self._condition:
            self._stopped = True
            self._active = False
            thread = self._thread
            self._condition.notify_all()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Flush scheduler thread did not terminate within timeout.")

    def __repr__(self) -> str:
        return f"<FlushScheduler interval={self.interval} active={self._active} stopped={self._stopped}>"

    def _start_thread(self) -> None:
        # Caller holds the condition.
        if self._thread is None or not self._thread.is_alive():
            try:
                self._thread = threading.Thread(target=self._run, name="FlushScheduler")
                self._thread.daemon = True
                self._thread.start()
            except Exception:
                self._active = False
                self._thread = None
                logger.error("Failed to start FlushScheduler thread", exc_info=True)

    def _run(self) -> None:
        with self._condition:
            while self._active and not self._stopped:
                wait_time = self._next_tick - time.monotonic()
                if wait_time > 0:
                    self._condition.wait(wait_time)
                    continue

                self._ticks += 1
                self._condition.release()
                try:
                    self.callback()
                except Exception:
                    logger.error("Error in flush tick", exc_info=True)
                finally:
                    self._condition.acquire()
                self._next_tick = time.monotonic() + self.interval

            if self._thread is threading.current_thread():
                self._thread = None
