from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Generator, List, Optional
from unittest.mock import MagicMock, patch

import pytest

from settle_watch.events import RawEvent
from settle_watch.watcher import DirectoryWatcher


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeSource:
    """In-memory notification source recording its lifecycle calls."""

    def __init__(self) -> None:
        self.on_event: Optional[Callable[[RawEvent], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.start_calls = 0
        self.stop_calls = 0

    def start(self, on_event: Callable[[RawEvent], None], on_error: Callable[[str], None]) -> None:
        self.start_calls += 1
        self.on_event = on_event
        self.on_error = on_error

    def stop(self) -> None:
        self.stop_calls += 1

    def emit(self, event: RawEvent) -> None:
        assert self.on_event is not None, "source not started"
        self.on_event(event)

    def fail(self, message: str) -> None:
        assert self.on_error is not None, "source not started"
        self.on_error(message)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(start=1000.0)


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def settled() -> List[str]:
    """Collects paths passed to the settlement callback."""
    return []


@pytest.fixture
def watcher_factory(
    temp_dir: Path, fake_source: FakeSource, fake_clock: FakeClock, settled: List[str]
) -> Generator[Callable[..., DirectoryWatcher], None, None]:
    """Build DirectoryWatchers on a fake source and clock; stops them all afterwards.

    The default tick interval is an hour so tests drive flushes explicitly.
    """
    created: List[DirectoryWatcher] = []

    def factory(**kwargs: Any) -> DirectoryWatcher:
        kwargs.setdefault("on_settled", settled.append)
        kwargs.setdefault("tick_interval", 3600.0)
        kwargs.setdefault("quiescence_window", 0.05)
        kwargs.setdefault("source", fake_source)
        kwargs.setdefault("clock", fake_clock)
        watcher = DirectoryWatcher(temp_dir, **kwargs)
        created.append(watcher)
        return watcher

    yield factory

    for watcher in created:
        watcher.stop()


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("settle_watch.watcher.Observer") as mock:
        mock.return_value.is_alive.return_value = True
        yield mock


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run in an empty cwd with no settle-watch env vars or config files."""
    monkeypatch.chdir(tmp_path)
    empty_config = tmp_path / "empty_config"
    empty_config.mkdir()
    for name in list(os.environ):
        if name.startswith("SETTLE_WATCH_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(empty_config))
    return tmp_path
