"""Tests for glob filtering, debouncing and the watchdog-backed PathWatcher."""

import threading
import time

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)
from watchdog.observers.polling import PollingObserver

from feedloop.errors import WatchError
from feedloop.watcher import Debouncer, GlobSet, PathWatcher, _RelevantChangeHandler


def wait_for(predicate, timeout=5.0, interval=0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def polling_observer():
    return PollingObserver(timeout=0.1)


class OpenedEvent:
    """An access-only event, as emitted by inotify on open."""

    event_type = "opened"
    is_directory = False

    def __init__(self, src_path):
        self.src_path = src_path


class TestGlobSet:
    """Include/exclude matching, exclude wins."""

    @pytest.fixture
    def globs(self):
        return GlobSet(["**/*.go", "**/*.sh", "!**/node_modules/**", "!**/.git/**"])

    @pytest.mark.parametrize("path", ["main.go", "dal/dal.go", "ping/sub/ping2.go", "test.sh", "./main.go"])
    def test_included(self, globs, path):
        assert globs.matches(path)

    @pytest.mark.parametrize("path", [
        "README.md",
        "dal/pinghist.db",
        "node_modules/pkg/index.go",
        "web/node_modules/pkg/build.sh",
        ".git/hooks/pre-commit.sh",
    ])
    def test_not_included(self, globs, path):
        assert not globs.matches(path)

    def test_bang_patterns_become_excludes(self, globs):
        assert globs.include == ("**/*.go", "**/*.sh")
        assert globs.exclude == ("**/node_modules/**", "**/.git/**")

    def test_exclude_takes_precedence(self):
        globs = GlobSet(["*.go"], exclude=["*_test.go"])
        assert globs.matches("dal.go")
        assert not globs.matches("dal_test.go")

    def test_same_pattern_in_both_is_excluded(self):
        globs = GlobSet(["*.go"], exclude=["*.go"])
        assert not globs.matches("main.go")

    def test_single_star_stays_in_one_directory(self):
        globs = GlobSet(["*.go"])
        assert globs.matches("main.go")
        assert not globs.matches("pkg/deep/x.go")

    def test_single_star_exclude_keeps_subdirectories(self):
        globs = GlobSet(["**/*.go"], exclude=["vendor/*"])
        assert not globs.matches("vendor/lib.go")
        assert globs.matches("vendor/sub/lib.go")

    def test_double_star_exclude_covers_subtree(self):
        globs = GlobSet(["**/*.go"], exclude=["vendor/**"])
        assert not globs.matches("vendor/sub/lib.go")
        assert globs.matches("dal/dal.go")


class TestDebouncer:
    """A burst of pokes yields exactly one callback."""

    def test_burst_collapses_to_one_fire(self):
        fired = []
        done = threading.Event()

        def on_fire(count):
            fired.append((count, time.monotonic()))
            done.set()

        debouncer = Debouncer(0.1, on_fire)
        for _ in range(3):
            debouncer.poke()
            last_poke = time.monotonic()
            time.sleep(0.01)

        assert done.wait(2)
        time.sleep(0.3)
        assert len(fired) == 1
        count, fired_at = fired[0]
        assert count == 3
        assert fired_at - last_poke >= 0.09

    def test_separate_bursts_fire_separately(self):
        fired = []
        debouncer = Debouncer(0.05, fired.append)

        debouncer.poke()
        assert wait_for(lambda: len(fired) == 1)
        debouncer.poke()
        debouncer.poke()
        assert wait_for(lambda: len(fired) == 2)
        assert fired == [1, 2]

    def test_each_poke_restarts_the_window(self):
        fired = []
        debouncer = Debouncer(0.15, fired.append)

        for _ in range(5):
            debouncer.poke()
            time.sleep(0.05)
        # 250ms elapsed since the first poke, but only 50ms since the last
        assert fired == []
        assert wait_for(lambda: fired == [5])

    def test_cancel_drops_pending_burst(self):
        fired = []
        debouncer = Debouncer(0.05, fired.append)

        debouncer.poke()
        assert debouncer.pending
        debouncer.cancel()
        time.sleep(0.2)

        assert fired == []
        assert not debouncer.pending


class TestRelevantChangeHandler:
    """Raw watchdog events are filtered before debouncing."""

    @pytest.fixture
    def handler(self, tmp_path):
        self.calls = []
        return _RelevantChangeHandler(tmp_path, GlobSet(["**/*.go"]), lambda: self.calls.append(1))

    def test_matching_file_event(self, handler, tmp_path):
        handler.dispatch(FileModifiedEvent(str(tmp_path / "dal" / "dal.go")))
        assert self.calls == [1]

    def test_non_matching_file_event(self, handler, tmp_path):
        handler.dispatch(FileModifiedEvent(str(tmp_path / "notes.txt")))
        assert self.calls == []

    def test_directory_event_ignored(self, handler, tmp_path):
        handler.dispatch(DirModifiedEvent(str(tmp_path / "dal")))
        assert self.calls == []

    def test_open_event_ignored(self, handler, tmp_path):
        handler.on_any_event(OpenedEvent(str(tmp_path / "main.go")))
        assert self.calls == []

    def test_move_into_watched_name(self, handler, tmp_path):
        handler.dispatch(FileMovedEvent(str(tmp_path / "main.go.tmp"), str(tmp_path / "main.go")))
        assert self.calls == [1]

    def test_path_outside_root(self, handler, tmp_path):
        handler.dispatch(FileCreatedEvent(str(tmp_path.parent / "elsewhere.go")))
        assert self.calls == []


class FailingObserver:
    """Observer double whose scheduling fails like an exhausted inotify."""

    def schedule(self, handler, path, recursive=False):
        raise OSError(28, "inotify watch limit reached")

    def start(self):
        pass

    def stop(self):
        pass

    def is_alive(self):
        return False


class DyingObserver(FailingObserver):
    """Observer double that starts but is immediately dead."""

    def schedule(self, handler, path, recursive=False):
        pass


class TestPathWatcher:
    """End-to-end watching with a polling observer."""

    def test_burst_of_edits_yields_one_trigger(self, tmp_path):
        triggers = []
        watcher = PathWatcher(tmp_path, GlobSet(["**/*.go"]), debounce_ms=300, observer_factory=polling_observer)
        watcher.start(triggers.append)
        try:
            for name in ("a.go", "b.go", "c.go"):
                (tmp_path / name).write_text("package main\n")
                time.sleep(0.01)
            assert wait_for(lambda: len(triggers) >= 1)
            time.sleep(0.6)
        finally:
            watcher.stop()

        assert len(triggers) == 1
        assert triggers[0].event_count >= 1

    def test_irrelevant_changes_do_not_trigger(self, tmp_path):
        triggers = []
        watcher = PathWatcher(tmp_path, GlobSet(["**/*.go"]), debounce_ms=50, observer_factory=polling_observer)
        watcher.start(triggers.append)
        try:
            (tmp_path / "notes.txt").write_text("hello")
            time.sleep(0.5)
        finally:
            watcher.stop()

        assert triggers == []

    def test_start_twice_rejected(self, tmp_path):
        watcher = PathWatcher(tmp_path, GlobSet(["*.go"]), observer_factory=polling_observer)
        watcher.start(lambda trigger: None)
        try:
            with pytest.raises(WatchError):
                watcher.start(lambda trigger: None)
        finally:
            watcher.stop()

    def test_start_failure_raises_watch_error(self, tmp_path):
        watcher = PathWatcher(tmp_path, GlobSet(["*.go"]), observer_factory=FailingObserver)
        with pytest.raises(WatchError, match="inotify"):
            watcher.start(lambda trigger: None)
        assert not watcher.is_running

    def test_triggers_is_lazy_and_restartable(self, tmp_path):
        watcher = PathWatcher(
            tmp_path, GlobSet(["*.go"]), debounce_ms=50,
            observer_factory=polling_observer, health_check_seconds=0.1,
        )
        for attempt in range(2):
            triggers = watcher.triggers()
            assert not watcher.is_running

            received = []
            consumer = threading.Thread(target=lambda: received.append(next(triggers)), daemon=True)
            consumer.start()
            assert wait_for(lambda: watcher.is_running)
            (tmp_path / f"main{attempt}.go").write_text("package main\n")
            consumer.join(timeout=5)

            assert len(received) == 1
            triggers.close()
            assert not watcher.is_running

    @pytest.mark.parametrize("broken", [FailingObserver, DyingObserver])
    def test_recovers_from_watch_failure(self, tmp_path, caplog, broken):
        attempts = []

        def factory():
            attempts.append(1)
            return broken() if len(attempts) == 1 else polling_observer()

        watcher = PathWatcher(
            tmp_path, GlobSet(["*.go"]), debounce_ms=50, observer_factory=factory,
            backoff_seconds=0.01, health_check_seconds=0.1,
        )
        triggers = watcher.triggers()
        received = []
        consumer = threading.Thread(target=lambda: received.append(next(triggers)), daemon=True)
        consumer.start()

        assert wait_for(lambda: len(attempts) == 2 and watcher.is_running)
        (tmp_path / "main.go").write_text("package main\n")
        consumer.join(timeout=5)
        triggers.close()

        assert len(received) == 1
        assert any(getattr(r, "event", None) == "watch_error" for r in caplog.records)
