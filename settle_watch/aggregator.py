"""Debounce aggregator: turns raw change events into per-path settlements.

Responsibility:
    Track which paths have outstanding, unsettled activity and decide, on each
    flush, which of them have been quiet for at least the quiescence window.
    The aggregator never touches the filesystem and never invokes the
    settlement callback itself; it only returns the settled paths.

Design:
    - **Batch model**: a single shared periodic flush (see
      :class:`settle_watch.scheduler.FlushScheduler`) scans all pending paths,
      bounding timer resources to one regardless of how many files are active.
      Worst-case settlement latency is ``tick_interval + quiescence_window``.
    - **Delete cancels**: a path deleted before it settles is dropped silently,
      so temp-file churn (create, write, delete) produces no output.

Key Invariants:
    - A path is pending iff it received a created/changed/renamed-target event
      more recently than its last settlement and no delete since.
    - The scheduler is active iff the pending set is non-empty. Both are
      changed inside the same critical section.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from settle_watch.events import EventKind, RawEvent

if TYPE_CHECKING:
    from settle_watch.scheduler import FlushScheduler

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DebounceAggregator", "DEFAULT_QUIESCENCE_WINDOW"]

DEFAULT_QUIESCENCE_WINDOW = 0.05  # seconds


class DebounceAggregator:
    """Coalesce raw events into one settlement per path and quiet period.

    Attributes:
        quiescence_window (float): Seconds a path must stay quiet to settle.
        scheduler (Optional[FlushScheduler]): Activated when work appears and
            deactivated when the pending set drains.

    Example:
        >>> agg = DebounceAggregator(quiescence_window=0.05)
        >>> agg.ingest(RawEvent.changed("/tmp/a.txt", observed_at=0.0))
        >>> agg.ingest(RawEvent.changed("/tmp/a.txt", observed_at=0.01))
        >>> agg.flush(now=10.0)
        ['/tmp/a.txt']
        >>> agg.flush(now=20.0)
        []
    """

    def __init__(
        self,
        quiescence_window: float = DEFAULT_QUIESCENCE_WINDOW,
        scheduler: Optional[FlushScheduler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty aggregator.

        Args:
            quiescence_window (float): Minimum idle time in seconds before a
                path is considered settled. Must be non-negative.
            scheduler (Optional[FlushScheduler]): Periodic trigger to
                activate/deactivate alongside the pending set.
            clock (Callable[[], float]): Time source used when ``flush`` is
                called without an explicit ``now``. Must match the clock that
                stamps ``RawEvent.observed_at``.

        Raises:
            ValueError: If ``quiescence_window`` is negative.
        """
        if quiescence_window < 0:
            raise ValueError(f"Quiescence window must be non-negative, got {quiescence_window}")
        self.quiescence_window = quiescence_window
        self.scheduler = scheduler
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Dict[str, float] = {}

        self.events_ingested = 0
        self.settled = 0
        self.cancelled_by_delete = 0
        self.renames = 0

    def ingest(self, event: RawEvent) -> None:
        """Apply one raw event to the pending set.

        Created and changed events set or refresh the path's timestamp.
        Renames move the entry from ``old_path`` to ``path`` in one locked
        step. Deletes drop the entry without any settlement.

        Args:
            event (RawEvent): The event to apply.

        Returns:
            None
        """
        with self._lock:
            self.events_ingested += 1
            kind = event.kind

            if kind is EventKind.DELETED:
                if self._pending.pop(event.path, None) is not None:
                    self.cancelled_by_delete += 1
                    if logger.isEnabledFor(logging.DEBUG):
                        logger.debug(f"Pending change cancelled by delete: {event.path}")
                if not self._pending:
                    self._deactivate()
                return

            if kind is EventKind.RENAMED and event.old_path is not None:
                self._pending.pop(event.old_path, None)
                self.renames += 1

            self._touch(event.path, event.observed_at)
            self._activate()

    def flush(self, now: Optional[float] = None) -> List[str]:
        """Remove and return every path that has been quiet long enough.

        Args:
            now (Optional[float]): Current monotonic time. Defaults to the
                aggregator clock.

        Returns:
            List[str]: Settled paths, in no significant order.
        """
        if now is None:
            now = self._clock()

        with self._lock:
            settled = [
                path
                for path, last_seen in self._pending.items()
                if now - last_seen >= self.quiescence_window
            ]
            for path in settled:
                del self._pending[path]
            self.settled += len(settled)

            if not self._pending:
                self._deactivate()

        if settled and logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Flush settled {len(settled)} path(s), {self.pending_count} still pending")
        return settled

    def clear(self) -> None:
        """Drop all pending entries and put the scheduler to rest."""
        with self._lock:
            self._pending.clear()
            self._deactivate()

    def is_pending(self, path: str) -> bool:
        with self._lock:
            return path in self._pending

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def pending_paths(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def get_statistics(self) -> Dict[str, Any]:
        """Return aggregation counters.

        Returns:
            Dict[str, Any]: ``events_ingested``, ``settled``,
            ``cancelled_by_delete``, ``renames`` and ``pending``.
        """
        with self._lock:
            return {
                "events_ingested": self.events_ingested,
                "settled": self.settled,
                "cancelled_by_delete": self.cancelled_by_delete,
                "renames": self.renames,
                "pending": len(self._pending),
            }

    def __repr__(self) -> str:
        return f"<DebounceAggregator quiescence={self.quiescence_window} pending={len(self._pending)}>"

    def _touch(self, path: str, observed_at: float) -> None:
        # Late deliveries never move the timestamp backwards.
        previous = self._pending.get(path)
        if previous is None or observed_at > previous:
            self._pending[path] = observed_at

    def _activate(self) -> None:
        if self.scheduler is not None:
            self.scheduler.activate()

    def _deactivate(self) -> None:
        if self.scheduler is not None:
            self.scheduler.deactivate()
