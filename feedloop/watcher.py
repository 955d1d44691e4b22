"""
File watching for feedloop.

PathWatcher turns raw watchdog events into coalesced Triggers:

    watchdog event -> GlobSet filter -> Debouncer -> Trigger

A burst of N relevant edits within the debounce window yields exactly one
Trigger. The watcher never stops the process: if the observer cannot be
started or dies, the failure is logged and watching is re-established after
an exponential backoff.
"""

import logging
import os
import re
import threading
import time
from pathlib import Path, PurePath
from queue import Empty, Queue
from typing import Callable, Iterable, Iterator, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .config import DEFAULT_DEBOUNCE_MS
from .errors import WatchError
from .pipeline import Trigger
from .utils import backoff_delays, translate_glob

logger = logging.getLogger(__name__)

# Opened/closed-without-write events never change file content
RELEVANT_EVENT_TYPES = frozenset({
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
})


class GlobSet:
    """
    Include/exclude glob patterns. Exclude always wins.

    Patterns are matched against POSIX paths relative to the watch root.
    '*' stays within one directory and '**' crosses directories. Include
    entries written as '!pattern' are excludes.
    """

    def __init__(self, include: Iterable[str], exclude: Iterable[str] = ()):
        include = list(include)
        self.include = tuple(p for p in include if not p.startswith("!"))
        self.exclude = tuple(exclude) + tuple(p[1:] for p in include if p.startswith("!"))
        self._include_res = [re.compile(translate_glob(p)) for p in self.include]
        self._exclude_res = [re.compile(translate_glob(p)) for p in self.exclude]

    def matches(self, path: str) -> bool:
        """True if path matches an include pattern and no exclude pattern."""
        path = PurePath(path).as_posix()
        if path.startswith("./"):
            path = path[2:]
        if any(regex.match(path) for regex in self._exclude_res):
            return False
        return any(regex.match(path) for regex in self._include_res)

    def __repr__(self) -> str:
        return f"GlobSet(include={list(self.include)}, exclude={list(self.exclude)})"


class Debouncer:
    """
    Collapses bursts of pokes into one callback.

    The first poke starts a timer of window_seconds; each further poke
    restarts it. When the timer fires with no newer poke, callback(count) is
    invoked once with the number of pokes it absorbed.
    """

    def __init__(self, window_seconds: float, callback: Callable[[int], None]):
        self.window_seconds = window_seconds
        self.callback = callback
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._pending = 0

    def poke(self) -> None:
        with self._lock:
            self._pending += 1
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.window_seconds, self._fire, args=(self._generation,))
            self._timer.daemon = True
            self._timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A poke raced in after this timer expired
            if generation != self._generation:
                return
            count = self._pending
            self._pending = 0
            self._timer = None
        self.callback(count)

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            self._pending = 0
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending > 0


class _RelevantChangeHandler(FileSystemEventHandler):
    """Forwards file events that match the GlobSet."""

    def __init__(self, root: Path, globs: GlobSet, on_relevant: Callable[[], None]):
        super().__init__()
        self.root = root
        self.globs = globs
        self.on_relevant = on_relevant

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in RELEVANT_EVENT_TYPES:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(self.is_relevant(p) for p in paths if p):
            logger.debug(f"Change: {event.event_type} {event.src_path}", extra={"event": "fs_change"})
            self.on_relevant()

    def is_relevant(self, path) -> bool:
        try:
            rel = Path(os.fsdecode(path)).relative_to(self.root)
        except ValueError:
            return False
        return self.globs.matches(rel.as_posix())


class PathWatcher:
    """
    Watches a directory tree and emits debounced Triggers.

    Args:
        root: Directory to watch recursively
        globs: Include/exclude patterns relative to root
        debounce_ms: Quiet period that ends a burst
        observer_factory: Callable returning a watchdog observer
        backoff_seconds: First delay before re-establishing a failed watch
        max_backoff_seconds: Cap for the restart delay
        health_check_seconds: How often triggers() checks the observer is alive
    """

    def __init__(
        self,
        root: Path,
        globs: GlobSet,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        observer_factory: Callable[[], object] = Observer,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        health_check_seconds: float = 1.0,
    ):
        self.root = Path(root).resolve()
        self.globs = globs
        self.debounce_ms = debounce_ms
        self.observer_factory = observer_factory
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.health_check_seconds = health_check_seconds
        self._observer = None
        self._debouncer: Optional[Debouncer] = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self, callback: Callable[[Trigger], None]) -> None:
        """
        Start watching; callback receives each Trigger on a timer thread.

        Raises:
            WatchError: If the observer cannot be scheduled or started
        """
        if self._observer is not None:
            raise WatchError(f"Already watching {self.root}")

        debouncer = Debouncer(
            self.debounce_ms / 1000.0,
            lambda count: callback(Trigger(event_count=count)),
        )
        handler = _RelevantChangeHandler(self.root, self.globs, debouncer.poke)
        observer = self.observer_factory()
        try:
            observer.schedule(handler, str(self.root), recursive=True)
            observer.start()
        except OSError as e:
            debouncer.cancel()
            observer.stop()
            raise WatchError(f"Cannot watch {self.root}: {e}") from e

        self._debouncer = debouncer
        self._observer = observer
        logger.info(
            f"Watching {self.root}",
            extra={"event": "watch_started", "metadata": {"globs": repr(self.globs)}},
        )

    def stop(self) -> None:
        """Stop watching and drop any pending (unfired) burst."""
        if self._debouncer is not None:
            self._debouncer.cancel()
            self._debouncer = None
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=5)

    def triggers(self) -> Iterator[Trigger]:
        """
        Lazy, infinite sequence of Triggers.

        Watching starts on first iteration and stops when the generator is
        closed; calling triggers() again starts a fresh watch.
        """
        queue: Queue = Queue()
        delays: Optional[Iterator[float]] = None
        try:
            while True:
                if self._observer is not None and not self._observer.is_alive():
                    logger.error(
                        str(WatchError(f"Observer for {self.root} stopped unexpectedly")),
                        extra={"event": "watch_error"},
                    )
                    self.stop()

                if self._observer is None:
                    try:
                        self.start(queue.put)
                        delays = None
                    except WatchError as e:
                        if delays is None:
                            delays = backoff_delays(self.backoff_seconds, 2.0, self.max_backoff_seconds)
                        delay = next(delays)
                        logger.error(
                            f"{e}. Retrying in {delay:.1f}s",
                            extra={"event": "watch_error", "metadata": {"retry_in": delay}},
                        )
                        time.sleep(delay)
                        continue

                try:
                    trigger = queue.get(timeout=self.health_check_seconds)
                except Empty:
                    continue
                yield trigger
        finally:
            self.stop()
