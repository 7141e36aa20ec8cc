"""Watch mode: re-sync when the annotation database changes.

Three inputs drive sync passes: change notifications for the annotation
database (debounced), a periodic timer, and cancellation. They all arrive on
one queue consumed by a single loop, and passes run inline on that loop, so
two passes never overlap. A trigger that arrives while a pass is running
waits in the queue and is handled on the next iteration.

The watchdog observer thread and signal handlers only put events on the
queue. queue.SimpleQueue.put is reentrant, which makes it safe to call from
a signal handler.
"""

import logging
import os
import queue
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from booksync.annotations import AnnotationStore
from booksync.exporter import Exporter
from booksync.state import State
from booksync.sync import SyncResult, run_sync

log = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 2.0
DEFAULT_SYNC_INTERVAL = 15 * 60.0

IDLE = "idle"
DEBOUNCE_PENDING = "debounce_pending"
SHUTTING_DOWN = "shutting_down"

CANCELLED = "cancelled"


@dataclass(frozen=True)
class FileChanged:
    path: str


@dataclass(frozen=True)
class WatchError:
    error: BaseException


@dataclass(frozen=True)
class Cancel:
    pass


def _same_file(a: Union[str, bytes], b: str) -> bool:
    if isinstance(a, bytes):
        a = os.fsdecode(a)
    return os.path.realpath(a) == b


class AnnotationFileHandler(FileSystemEventHandler):
    """Forwards writes to one file as FileChanged events.

    Other files in the watched directory (including the database's -wal and
    -shm companions) are ignored. A move onto the file counts as a create,
    which is how atomic replacements show up.
    """

    def __init__(self, path: Union[str, Path], events) -> None:
        super().__init__()
        self.path = os.path.realpath(path)
        self._events = events

    def dispatch(self, event: FileSystemEvent) -> None:
        try:
            super().dispatch(event)
        except Exception as e:
            self._events.put(WatchError(e))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and _same_file(event.src_path, self.path):
            self._events.put(FileChanged(self.path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and _same_file(event.src_path, self.path):
            self._events.put(FileChanged(self.path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory and _same_file(event.dest_path, self.path):
            self._events.put(FileChanged(self.path))


def start_observer(path: Union[str, Path], events) -> Observer:
    """Start watching the directory containing path for changes to path.

    Returns the Observer instance (call .stop() to shut down).
    """
    handler = AnnotationFileHandler(path, events)
    observer = Observer()
    observer.schedule(handler, os.path.dirname(handler.path), recursive=False)
    observer.daemon = True
    observer.start()
    log.info("Watching %s for changes", handler.path)
    return observer


class Coalescer:
    """Turns change notifications and timer ticks into serialized sync passes.

    States:
      idle              no change notification waiting
      debounce_pending  a change arrived; a pass fires once `debounce`
                        seconds pass without another change
      shutting_down     cancelled; no more passes

    The periodic timer runs independently of the debounce state. When the
    debounce deadline and a tick fall due together, one pass serves both.
    Ticks missed while a pass was running are dropped.

    watch_alive, when set, is polled whenever a deadline passes; a file watch
    that died on its own is reported once as a WatchError.
    """

    def __init__(
        self,
        sync: Callable[[], object],
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        interval: float = DEFAULT_SYNC_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        events=None,
        watch_alive: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._sync = sync
        self.debounce = debounce
        self.interval = interval
        self.clock = clock
        self.events = events if events is not None else queue.SimpleQueue()
        self.watch_alive = watch_alive
        self._watch_lost = False
        self.state = IDLE
        self.passes = 0
        self._debounce_deadline: Optional[float] = None
        self._next_tick: Optional[float] = None

    # -- Inputs (safe from any thread or a signal handler) --

    def notify_change(self, path: str) -> None:
        self.events.put(FileChanged(path))

    def cancel(self) -> None:
        self.events.put(Cancel())

    # -- Transitions --

    def _handle(self, event) -> None:
        if isinstance(event, Cancel):
            log.info("Cancellation received, shutting down")
            self.state = SHUTTING_DOWN
            self._debounce_deadline = None
            self._next_tick = None
        elif self.state == SHUTTING_DOWN:
            return
        elif isinstance(event, FileChanged):
            log.debug("Change detected on %s", event.path)
            self.state = DEBOUNCE_PENDING
            self._debounce_deadline = self.clock() + self.debounce
        elif isinstance(event, WatchError):
            log.error("Watcher error: %s", event.error)
        else:
            log.warning("Ignoring unknown watch event %r", event)

    def _drain(self) -> None:
        """Handle every event already queued, without blocking."""
        while self.state != SHUTTING_DOWN:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return
            self._handle(event)

    def _check_watch(self) -> None:
        """Report, once, a file watch that stopped without a handler error."""
        if self.watch_alive is None or self._watch_lost or self.watch_alive():
            return
        self._watch_lost = True
        self._handle(WatchError(RuntimeError(
            "file watch stopped, only the periodic timer will trigger syncs"
        )))

    def _due(self, now: float) -> Optional[str]:
        """Consume whichever deadlines have passed and name the trigger."""
        reasons = []
        if self._debounce_deadline is not None and now >= self._debounce_deadline:
            self._debounce_deadline = None
            self.state = IDLE
            reasons.append("file change")
        if self._next_tick is not None and now >= self._next_tick:
            while self._next_tick <= now:
                self._next_tick += self.interval
            reasons.append("timer")
        return " + ".join(reasons) or None

    def _next_deadline(self) -> float:
        deadlines = [
            d for d in (self._debounce_deadline, self._next_tick) if d is not None
        ]
        return min(deadlines)

    def _run_pass(self, reason: str) -> None:
        log.info("Sync triggered by %s", reason)
        self.passes += 1
        try:
            self._sync()
        except Exception:
            log.exception("Sync pass failed, will retry on the next trigger")

    def run(self) -> str:
        """Run one pass, then serve triggers until cancelled.

        Returns CANCELLED; pass failures are logged and never end the loop.
        """
        self._run_pass("startup")
        self._next_tick = self.clock() + self.interval

        while True:
            self._drain()
            if self.state == SHUTTING_DOWN:
                break

            now = self.clock()
            reason = self._due(now)
            if reason:
                self._run_pass(reason)
                continue

            timeout = max(0.0, self._next_deadline() - now)
            try:
                event = self.events.get(timeout=timeout)
            except queue.Empty:
                self._check_watch()
                continue
            self._handle(event)

        log.info("Watcher stopped after %d pass(es)", self.passes)
        return CANCELLED


def install_signal_handlers(coalescer: Coalescer) -> Callable[[], None]:
    """Route SIGINT and SIGTERM to the coalescer's cancel input.

    Must be called from the main thread. Returns a function that restores
    the previous handlers.
    """
    previous = {}

    def _handler(signum, frame):
        coalescer.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)

    def restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return restore


def watch_and_sync(
    source: AnnotationStore,
    exporter: Exporter,
    state: State,
    watch_path: Union[str, Path],
    debounce: float = DEFAULT_DEBOUNCE_SECONDS,
    interval: float = DEFAULT_SYNC_INTERVAL,
    on_result: Optional[Callable[[SyncResult], None]] = None,
) -> str:
    """Keep the vault in sync until SIGINT/SIGTERM.

    The file watch starts before the startup pass so that no change made
    during that pass is missed.
    """
    def _sync() -> None:
        result = run_sync(source, exporter, state)
        if on_result is not None:
            on_result(result)

    coalescer = Coalescer(_sync, debounce=debounce, interval=interval)
    observer = start_observer(watch_path, coalescer.events)
    coalescer.watch_alive = observer.is_alive
    restore = install_signal_handlers(coalescer)
    try:
        return coalescer.run()
    finally:
        restore()
        observer.stop()
        observer.join()
