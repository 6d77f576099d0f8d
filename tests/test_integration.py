"""Integration tests for settle-watch against a real watchdog observer.

Covers:
- A burst of writes settles once
- Create-then-delete and moves out of the filter never settle
- Renames report only the new name
- Extension filter and recursion
- Nothing is reported after stop
"""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import Generator, List

import pytest

from settle_watch.config import load_config
from settle_watch.watcher import DirectoryWatcher

from tests.conftest import wait_for

TICK = 0.2
QUIET = 0.05


class Recorder:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.paths: List[str] = []

    def __call__(self, path: str) -> None:
        with self._lock:
            self.paths.append(path)

    @property
    def names(self) -> List[str]:
        with self._lock:
            return [Path(p).name for p in self.paths]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def running_watcher(temp_dir: Path, recorder: Recorder) -> Generator[DirectoryWatcher, None, None]:
    watcher = DirectoryWatcher(
        temp_dir, recorder, extension_filter="*.txt", tick_interval=TICK, quiescence_window=QUIET
    )
    watcher.start()
    # Give the observer a moment to register its watches.
    time.sleep(0.1)
    yield watcher
    watcher.stop()


def _settle_time() -> None:
    time.sleep(TICK * 3 + QUIET)


def test_burst_of_writes_settles_once(temp_dir: Path, running_watcher: DirectoryWatcher, recorder: Recorder) -> None:
    target = temp_dir / "report.txt"
    with open(target, "w", encoding="utf-8") as f:
        for i in range(20):
            f.write(f"line {i}\n")
            f.flush()
            os.fsync(f.fileno())

    assert wait_for(lambda: "report.txt" in recorder.names)
    _settle_time()
    assert recorder.names == ["report.txt"]
    assert not running_watcher.scheduler.is_active


def test_each_burst_is_a_new_episode(temp_dir: Path, running_watcher: DirectoryWatcher, recorder: Recorder) -> None:
    target = temp_dir / "log.txt"
    target.write_text("first\n")
    assert wait_for(lambda: recorder.names == ["log.txt"])

    target.write_text("second\n")
    assert wait_for(lambda: recorder.names == ["log.txt", "log.txt"])


def test_create_then_delete_is_not_reported(
    temp_dir: Path, running_watcher: DirectoryWatcher, recorder: Recorder
) -> None:
    scratch = temp_dir / "scratch.txt"
    scratch.write_text("temporary")
    scratch.unlink()

    _settle_time()
    assert recorder.names == []
    assert running_watcher.aggregator.pending_count == 0


def test_rename_reports_new_name_only(temp_dir: Path, running_watcher: DirectoryWatcher, recorder: Recorder) -> None:
    source = temp_dir / "draft.txt"
    source.write_text("content")
    source.rename(temp_dir / "final.txt")

    assert wait_for(lambda: "final.txt" in recorder.names)
    _settle_time()
    assert "draft.txt" not in recorder.names


def test_atomic_save_into_filter(temp_dir: Path, running_watcher: DirectoryWatcher, recorder: Recorder) -> None:
    """Editors often write a temp file and rename it over the target."""
    tmp = temp_dir / "doc.txt.tmp"
    tmp.write_text("saved")
    os.replace(tmp, temp_dir / "doc.txt")

    assert wait_for(lambda: "doc.txt" in recorder.names)
    _settle_time()
    assert recorder.names.count("doc.txt") == 1


def test_extension_filter(temp_dir: Path, running_watcher: DirectoryWatcher, recorder: Recorder) -> None:
    (temp_dir / "ignored.log").write_text("x")
    (temp_dir / "kept.txt").write_text("y")

    assert wait_for(lambda: "kept.txt" in recorder.names)
    _settle_time()
    assert "ignored.log" not in recorder.names


def test_subdirectories_are_watched(temp_dir: Path, running_watcher: DirectoryWatcher, recorder: Recorder) -> None:
    nested = temp_dir / "a" / "b"
    nested.mkdir(parents=True)
    time.sleep(0.1)
    (nested / "deep.txt").write_text("z")

    assert wait_for(lambda: "deep.txt" in recorder.names)
    assert all(Path(p).is_absolute() for p in recorder.paths)


def test_nothing_reported_after_stop(temp_dir: Path, recorder: Recorder) -> None:
    watcher = DirectoryWatcher(temp_dir, recorder, tick_interval=TICK, quiescence_window=QUIET)
    watcher.start()
    time.sleep(0.1)
    (temp_dir / "pending.txt").write_text("x")
    time.sleep(0.05)

    watcher.stop()
    (temp_dir / "after.txt").write_text("y")
    _settle_time()

    assert recorder.names == []
    assert not watcher.source.is_alive


def test_from_loaded_config(temp_dir: Path, recorder: Recorder, isolated_env: Path) -> None:
    config = load_config(
        {"root_path": str(temp_dir), "extension_filter": "*.csv", "tick_interval": TICK, "recursive": False}
    )
    with DirectoryWatcher.from_config(config, recorder) as watcher:
        time.sleep(0.1)
        (temp_dir / "sub").mkdir()
        time.sleep(0.1)
        (temp_dir / "sub" / "hidden.csv").write_text("1")
        (temp_dir / "top.csv").write_text("2")

        assert wait_for(lambda: "top.csv" in recorder.names)
        _settle_time()
        assert "hidden.csv" not in recorder.names
        assert watcher.get_statistics()["callback_errors"] == 0
