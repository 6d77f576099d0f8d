"""Directory watching built on watchdog, with debounced per-file settlement.

Responsibility:
    This module wires a notification source (by default a ``watchdog``
    observer) into a :class:`~settle_watch.aggregator.DebounceAggregator` and a
    :class:`~settle_watch.scheduler.FlushScheduler`, and reports each settled
    path to the caller exactly once per burst of activity.

Design:
    - **Event-Driven**: raw events come from ``watchdog``; no directory polling.
    - **Pluggable Source**: anything implementing :class:`NotificationSource`
      can feed the watcher, which keeps the core testable without a real
      filesystem.
    - **Best-Effort Monitoring**: source faults and callback faults are logged
      and counted, never raised into the delivery threads.

Key Invariants:
    - Settlement callbacks run outside every lock.
    - After :meth:`DirectoryWatcher.stop` returns, no callback is invoked and
      no thread owned by the watcher is left running.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from settle_watch.aggregator import DEFAULT_QUIESCENCE_WINDOW, DebounceAggregator
from settle_watch.config import Config, InvalidConfigurationError
from settle_watch.events import RawEvent
from settle_watch.scheduler import FlushScheduler

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "DEFAULT_TICK_INTERVAL",
    "DirectoryWatcher",
    "NotificationSource",
    "RawEventHandler",
    "WatchdogSource",
]

DEFAULT_TICK_INTERVAL = 10.0  # seconds
MATCH_ALL_FILTERS = {"", "*", "*.*"}

EventSink = Callable[[RawEvent], None]
ErrorSink = Callable[[str], None]


class NotificationSource(Protocol):
    """Anything that can deliver raw events and fault messages."""

    def start(self, on_event: EventSink, on_error: ErrorSink) -> None:
        ...

    def stop(self) -> None:
        ...


def _matches_filter(path: str, extension_filter: str) -> bool:
    if extension_filter in MATCH_ALL_FILTERS:
        return True
    return fnmatch.fnmatch(os.path.basename(path), extension_filter)


class RawEventHandler(FileSystemEventHandler):
    """Translate watchdog events into :class:`RawEvent` objects.

    Directory events are ignored and file names are matched against a single
    glob such as ``"*.txt"``.

    Attributes:
        extension_filter (str): Glob applied to the file name.
        on_event (EventSink): Receives translated events.
        on_error (ErrorSink): Receives fault messages.
    """

    def __init__(
        self,
        on_event: EventSink,
        on_error: ErrorSink,
        extension_filter: str = "*",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self.on_event = on_event
        self.on_error = on_error
        self.extension_filter = extension_filter
        self._clock = clock

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if not _matches_filter(path, self.extension_filter):
            return
        logger.info(f"File: {path} created.")
        self._deliver(RawEvent.created(path, self._clock()))

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if not _matches_filter(path, self.extension_filter):
            return
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"File: {path} modified.")
        self._deliver(RawEvent.changed(path, self._clock()))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = os.fsdecode(event.src_path)
        if not _matches_filter(path, self.extension_filter):
            return
        logger.info(f"File: {path} deleted.")
        self._deliver(RawEvent.deleted(path, self._clock()))

    def on_moved(self, event: FileMovedEvent) -> None:
        """Handle renames.

        A move whose destination passes the filter becomes a rename. A move
        that only leaves the filter (``a.txt`` -> ``a.txt.bak``) is reported
        as a delete of the source.
        """
        if event.is_directory:
            return
        src_path = os.fsdecode(event.src_path)
        dest_path = os.fsdecode(event.dest_path)
        now = self._clock()

        if _matches_filter(dest_path, self.extension_filter):
            logger.info(f"File: {src_path} renamed to {dest_path}.")
            self._deliver(RawEvent.renamed(src_path, dest_path, now))
        elif _matches_filter(src_path, self.extension_filter):
            logger.info(f"File: {src_path} moved out of filter to {dest_path}.")
            self._deliver(RawEvent.deleted(src_path, now))

    def _deliver(self, event: RawEvent) -> None:
        try:
            self.on_event(event)
        except Exception as e:
            logger.debug("Event sink raised", exc_info=True)
            self.on_error(f"Failed to deliver {event}: {e}")

    def __repr__(self) -> str:
        return f"<RawEventHandler filter={self.extension_filter!r}>"


class WatchdogSource:
    """Notification source backed by a ``watchdog`` observer.

    Restarts the observer if it dies and reports the death on the error
    channel. The observer is scheduled recursively unless told otherwise.

    Attributes:
        root_path (Path): Directory being observed.
        extension_filter (str): Glob applied to file names.
        recursive (bool): Whether subdirectories are observed.
        health_check_interval (float): Seconds between observer health checks.
    """

    def __init__(
        self,
        root_path: Union[str, Path],
        extension_filter: str = "*",
        recursive: bool = True,
        health_check_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.root_path = Path(root_path).absolute()
        self.extension_filter = extension_filter
        self.recursive = recursive
        self.health_check_interval = health_check_interval
        self._clock = clock
        self._observer: Optional[Observer] = None
        self._handler: Optional[RawEventHandler] = None
        self._on_error: Optional[ErrorSink] = None
        self._health_check_timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._started = False
        self._stopping = False
        self._root_existed = True
        self._last_observer_restart_attempt = 0.0

    def start(self, on_event: EventSink, on_error: ErrorSink) -> None:
        """Begin observing and delivering events.

        Faults found while starting are reported after the internal lock is
        released, so ``on_error`` may call :meth:`stop`.

        Args:
            on_event (EventSink): Receives every translated event.
            on_error (ErrorSink): Receives fault messages.

        Raises:
            RuntimeError: If the observer cannot be started.
        """
        faults: List[str] = []
        with self._lock:
            if self._started:
                return
            self._handler = RawEventHandler(
                on_event, on_error, extension_filter=self.extension_filter, clock=self._clock
            )
            self._on_error = on_error
            self._started = True
            self._stopping = False
            fault = self._start_observer()
            if fault:
                faults.append(fault)
            failed = self._observer is None or not self._observer.is_alive()
            if failed:
                self._started = False

        self._report(faults)
        if failed:
            raise RuntimeError(f"Failed to start watchdog observer for {self.root_path}")
        self._schedule_health_check()

    def stop(self) -> None:
        """Stop the observer and the health check. Idempotent.

        May be called from the error channel, including from the health check
        thread itself.
        """
        with self._lock:
            self._stopping = True
            self._started = False
            timer, self._health_check_timer = self._health_check_timer, None
            observer, self._observer = self._observer, None

        current = threading.current_thread()
        if timer is not None:
            timer.cancel()
            if timer is not current:
                timer.join(timeout=5.0)
                if timer.is_alive():
                    logger.warning("Health check did not finish within timeout.")
        if observer is not None:
            try:
                if observer.is_alive():
                    observer.stop()
                    if observer is not current:
                        observer.join(timeout=5.0)
                        if observer.is_alive():
                            logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                logger.error(f"Error stopping observer: {e}")

    @property
    def is_alive(self) -> bool:
        observer = self._observer
        return observer is not None and observer.is_alive()

    def check_health(self) -> None:
        """Report and repair a dead observer or a vanished root directory."""
        faults: List[str] = []
        with self._lock:
            if not self._started or self._stopping:
                return

            try:
                root_exists = self.root_path.is_dir()
            except OSError:
                root_exists = False
            if not root_exists and self._root_existed:
                faults.append(f"Watched directory is no longer available: {self.root_path}")
            elif root_exists and not self._root_existed:
                logger.info(f"Watched directory reappeared: {self.root_path}. Restarting observer.")
                self._discard_observer()
            self._root_existed = root_exists

            if root_exists and (self._observer is None or not self._observer.is_alive()):
                if self._observer is not None:
                    faults.append("Watchdog observer found dead; restarting.")
                    self._discard_observer()
                now = time.monotonic()
                if now - self._last_observer_restart_attempt > self.health_check_interval:
                    fault = self._start_observer()
                    if fault:
                        faults.append(fault)

        self._report(faults)

    def _start_observer(self, max_retries: int = 3) -> Optional[str]:
        """Start the observer, retrying on failure.

        Caller holds ``self._lock``. Returns a fault message instead of
        reporting it, since the error channel must not run under the lock.
        """
        for attempt in range(max_retries):
            if self._stopping:
                return None
            try:
                if self._observer is None or not self._observer.is_alive():
                    self._observer = Observer()
                self._observer.schedule(self._handler, str(self.root_path), recursive=self.recursive)
                self._observer.start()
                logger.info(f"Observer started ({type(self._observer).__name__}) on {self.root_path}")
                if attempt > 0:
                    logger.info(f"Observer recovered on attempt {attempt + 1}")
                self._last_observer_restart_attempt = time.monotonic()
                return None
            except OSError as e:
                logger.error(
                    f"OS Error starting observer (attempt {attempt + 1}/{max_retries}): {e} (Check inotify limits?)"
                )
            except Exception as e:
                logger.error(f"Failed to start observer (attempt {attempt + 1}/{max_retries}): {e}")
            self._observer = None
            if attempt < max_retries - 1:
                time.sleep(0.5)

        self._last_observer_restart_attempt = time.monotonic()
        return "Could not start observer after retries."

    def _discard_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            if observer.is_alive():
                observer.stop()
            observer.join(timeout=1.0)
        except Exception as e:
            logger.debug(f"Error joining observer: {e}")

    def _report(self, messages: List[str]) -> None:
        # Never called with self._lock held.
        for message in messages:
            if self._on_error is not None:
                try:
                    self._on_error(message)
                except Exception:
                    logger.error("Error channel raised", exc_info=True)
            else:
                logger.error(message)

    def _schedule_health_check(self) -> None:
        with self._lock:
            if self._stopping or not self._started:
                return
            self._health_check_timer = threading.Timer(self.health_check_interval, self._run_health_check)
            self._health_check_timer.daemon = True
            self._health_check_timer.start()

    def _run_health_check(self) -> None:
        try:
            self.check_health()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
        finally:
            self._schedule_health_check()

    def __repr__(self) -> str:
        return f"<WatchdogSource root={self.root_path} observer={'alive' if self.is_alive else 'down'}>"


class DirectoryWatcher:
    """Watch a directory tree and report each file once it has settled.

    Ties a :class:`NotificationSource`, a :class:`DebounceAggregator` and a
    :class:`FlushScheduler` together and owns their lifecycle.

    Attributes:
        root_path (Path): The directory being watched.
        on_settled (Callable[[str], None]): Invoked once per settled path.
        aggregator (DebounceAggregator): Pending path state.
        scheduler (FlushScheduler): Periodic flush trigger.
        source (NotificationSource): Raw event producer.

    Example:
        >>> def report(path):
        ...     print(f"settled: {path}")
        >>> with DirectoryWatcher("/srv/data", report, extension_filter="*.csv"):
        ...     ...
    """

    def __init__(
        self,
        root_path: Union[str, Path],
        on_settled: Callable[[str], None],
        extension_filter: str = "*",
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        quiescence_window: float = DEFAULT_QUIESCENCE_WINDOW,
        recursive: bool = True,
        source: Optional[NotificationSource] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_event: Optional[EventSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Build a stopped watcher.

        Args:
            root_path (Union[str, Path]): Directory to watch.
            on_settled (Callable[[str], None]): Settlement callback.
            extension_filter (str): Single glob applied to file names.
            tick_interval (float): Seconds between flush passes.
            quiescence_window (float): Seconds a file must stay quiet.
            recursive (bool): Watch subdirectories too.
            source (Optional[NotificationSource]): Raw event producer.
                Defaults to a :class:`WatchdogSource` for ``root_path``.
            on_error (Optional[Callable[[str], None]]): Also notified of
                source faults, after they are logged.
            on_event (Optional[EventSink]): Sees every raw event after it has
                been ingested, on the source's delivery thread.
            clock (Callable[[], float]): Monotonic time source shared by the
                aggregator and the default source.
        """
        self.root_path = Path(root_path).absolute()
        self.on_settled = on_settled
        self.on_error = on_error
        self.on_event = on_event
        self.scheduler = FlushScheduler(tick_interval, self._on_tick)
        self.aggregator = DebounceAggregator(quiescence_window, scheduler=self.scheduler, clock=clock)
        if source is None:
            source = WatchdogSource(
                self.root_path, extension_filter=extension_filter, recursive=recursive, clock=clock
            )
        self.source = source

        self._state_lock = threading.Lock()
        self._callbacks_done = threading.Condition(self._state_lock)
        # Idents of threads currently inside on_settled.
        self._callback_threads: List[int] = []
        self._started = False
        self._stopped = False
        self.callback_errors = 0
        self.source_errors = 0

    @classmethod
    def from_config(
        cls,
        config: Config,
        on_settled: Callable[[str], None],
        **kwargs: Any,
    ) -> DirectoryWatcher:
        """Build a watcher from a loaded :class:`~settle_watch.config.Config`."""
        return cls(
            config.root_path,
            on_settled,
            extension_filter=config.extension_filter,
            tick_interval=config.tick_interval,
            quiescence_window=config.quiescence_window,
            recursive=config.recursive,
            **kwargs,
        )

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._started and not self._stopped

    def start(self) -> None:
        """Start receiving raw events. No-op if already started.

        Raises:
            InvalidConfigurationError: If the root path is not a directory.
            RuntimeError: If the watcher was already stopped, or the source
                fails to start.
        """
        with self._state_lock:
            if self._stopped:
                raise RuntimeError("Watcher has been stopped and cannot be restarted")
            if self._started:
                return
            if not self.root_path.is_dir():
                raise InvalidConfigurationError(f"Directory: {self.root_path} path is not valid.")
            self._started = True

        logger.info(f"Starting watcher on path: {self.root_path}")
        try:
            self.source.start(self.ingest, self.on_source_error)
        except Exception:
            with self._state_lock:
                self._started = False
            raise

    def stop(self) -> None:
        """Release every resource: scheduler, pending state, then the source.

        Safe to call repeatedly, from any thread, and before :meth:`start`.
        Settlement callbacks already running on other threads (the scheduler
        or a concurrent :meth:`flush_now`) are waited for.
        """
        with self._state_lock:
            if self._stopped:
                return
            self._stopped = True
            was_started = self._started

        self.scheduler.stop()
        self._wait_for_callbacks()
        self.aggregator.clear()
        try:
            self.source.stop()
        except Exception as e:
            logger.error(f"Error stopping notification source: {e}")
        if was_started:
            logger.info("Watcher stopped.")

    close = stop

    def ingest(self, event: RawEvent) -> None:
        """Feed one raw event. Events arriving after :meth:`stop` are dropped."""
        if self._stopped:
            return
        self.aggregator.ingest(event)
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception:
                logger.error(f"Event hook failed for {event}", exc_info=True)

    def on_source_error(self, message: str) -> None:
        """Record a non-fatal notification source fault; ingestion continues."""
        if not message:
            return
        with self._state_lock:
            self.source_errors += 1
        logger.error(f"Notification source error: {message}")
        if self.on_error is not None:
            try:
                self.on_error(message)
            except Exception:
                logger.error("Error handler raised", exc_info=True)

    def flush_now(self) -> List[str]:
        """Run one flush pass immediately and emit what settled."""
        settled = self.aggregator.flush()
        self._emit(settled)
        return settled

    def get_statistics(self) -> Dict[str, Any]:
        """Return aggregation counters plus callback/source fault counts."""
        stats = self.aggregator.get_statistics()
        with self._state_lock:
            stats["callback_errors"] = self.callback_errors
            stats["source_errors"] = self.source_errors
        stats["ticks"] = self.scheduler.tick_count
        stats["scheduler_active"] = self.scheduler.is_active
        return stats

    def _on_tick(self) -> None:
        self._emit(self.aggregator.flush())

    def _emit(self, paths: List[str]) -> None:
        me = threading.get_ident()
        for path in paths:
            with self._state_lock:
                if self._stopped:
                    return
                self._callback_threads.append(me)
            try:
                self.on_settled(path)
            except Exception:
                with self._state_lock:
                    self.callback_errors += 1
                logger.error(f"Settlement callback failed for {path}", exc_info=True)
            finally:
                with self._callbacks_done:
                    self._callback_threads.remove(me)
                    self._callbacks_done.notify_all()

    def _wait_for_callbacks(self, timeout: float = 5.0) -> None:
        # A callback may call stop() itself; never wait on our own thread.
        me = threading.get_ident()
        deadline = time.monotonic() + timeout
        with self._callbacks_done:
            while any(ident != me for ident in self._callback_threads):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Settlement callbacks still running after stop timeout.")
                    return
                self._callbacks_done.wait(remaining)

    def __enter__(self) -> DirectoryWatcher:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    def __repr__(self) -> str:
        state = "running" if self.is_running else "stopped"
        return f"<DirectoryWatcher path={self.root_path} {state}>"
