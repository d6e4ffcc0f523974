"""
Shared file watching.

One watchdog observer per project tree is multiplexed across any number of
subscribers, each with its own pattern set. Events are dispatched only to the
subscribers whose patterns match the changed path.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

import watchdog.observers
from watchdog.events import FileSystemEvent, FileSystemEventHandler

from code_index.core.models import ChangeType, FileChangeEvent
from code_index.core.utils import is_ignored_path, matches_any

ChangeHandler = Callable[[FileChangeEvent], None]
ErrorListener = Callable[[Exception], None]


@dataclass
class Subscription:
    subscriber_id: str
    patterns: List[str]
    handler: ChangeHandler


class WatcherHandler(FileSystemEventHandler):
    def __init__(self, notifier: "ChangeNotifier"):
        self.notifier = notifier

    def _emit(self, change_type: ChangeType, path: str) -> None:
        self.notifier.dispatch(FileChangeEvent(type=change_type, path=path, timestamp=time.time()))

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._emit(ChangeType.ADD, str(event.src_path))

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._emit(ChangeType.CHANGE, str(event.src_path))

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self._emit(ChangeType.REMOVE, str(event.src_path))

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self._emit(ChangeType.REMOVE, str(event.src_path))
            self._emit(ChangeType.ADD, str(event.dest_path))


class ChangeNotifier:
    """
    Multi-subscriber wrapper around a single watchdog observer.

    Watching stops automatically when the last subscriber leaves. Observer
    failures are reported to error listeners rather than raised.
    """

    def __init__(self, ignored_patterns: Optional[List[str]] = None, observer_factory=None):
        self.ignored_patterns = list(ignored_patterns or [])
        self._observer_factory = observer_factory or watchdog.observers.Observer
        self._subscriptions: Dict[str, Subscription] = {}
        self._error_listeners: List[ErrorListener] = []
        self._observer = None
        self._root: Optional[Path] = None
        self._lock = threading.RLock()

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    @property
    def root(self) -> Optional[Path]:
        return self._root

    def all_patterns(self) -> List[str]:
        with self._lock:
            patterns: List[str] = []
            for sub in self._subscriptions.values():
                for pattern in sub.patterns:
                    if pattern not in patterns:
                        patterns.append(pattern)
            return patterns

    def subscribe(self, subscriber_id: str, patterns: List[str], handler: ChangeHandler) -> None:
        with self._lock:
            if subscriber_id in self._subscriptions:
                logging.info(f"Replacing watcher subscription {subscriber_id}")
            self._subscriptions[subscriber_id] = Subscription(subscriber_id, list(patterns), handler)
        logging.info(f"Watcher subscriber {subscriber_id} registered for {len(patterns)} patterns")

    def unsubscribe(self, subscriber_id: str) -> bool:
        with self._lock:
            removed = self._subscriptions.pop(subscriber_id, None) is not None
            empty = not self._subscriptions
        if removed:
            logging.info(f"Watcher subscriber {subscriber_id} removed")
        if removed and empty and self.is_watching:
            logging.info("No watcher subscribers left, stopping")
            self.stop()
        return removed

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def remove_error_listener(self, listener: ErrorListener) -> None:
        if listener in self._error_listeners:
            self._error_listeners.remove(listener)

    def _emit_error(self, error: Exception) -> None:
        logging.error(f"File watcher error: {error}")
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                logging.error(f"Watcher error listener failed: {e}")

    def start(self, root_path) -> bool:
        """
        Begin watching ``root_path``. Same root again is a no-op; a different
        root replaces the current watch. Returns whether a watch is active.
        """
        root = Path(root_path).resolve()
        with self._lock:
            if self.is_watching and self._root == root:
                return True
            replacing = self.is_watching
        if replacing:
            self.stop()
        with self._lock:
            if not self.all_patterns():
                logging.info("No watcher patterns registered, not starting")
                return False
            observer = self._observer_factory()
            try:
                observer.schedule(WatcherHandler(self), str(root), recursive=True)
                observer.start()
            except (OSError, RuntimeError, ValueError) as e:
                self._emit_error(e)
                return False
            self._observer = observer
            self._root = root
        logging.info(f"Watching {root} for {len(self.all_patterns())} patterns")
        return True

    def stop(self) -> None:
        with self._lock:
            observer = self._observer
            self._observer = None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join()
        except RuntimeError as e:
            # join() on an observer that never started
            logging.debug(f"Observer stop: {e}")
        logging.info("File watcher stopped")

    def restart(self) -> bool:
        root = self._root
        self.stop()
        if root is None:
            return False
        return self.start(root)

    def get_status(self) -> Dict[str, object]:
        with self._lock:
            return {
                "watching": self.is_watching,
                "root": str(self._root) if self._root else None,
                "subscribers": len(self._subscriptions),
                "patterns": self.all_patterns(),
            }

    def dispatch(self, event: FileChangeEvent) -> int:
        """Hand ``event`` to each matching subscriber. Returns how many received it."""
        path = Path(event.path)
        root = self._root
        if is_ignored_path(path if root is None else _relative_or_self(path, root), self.ignored_patterns):
            return 0
        relative = str(_relative_or_self(path, root)) if root else str(path)
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        delivered = 0
        for sub in subscriptions:
            if not matches_any(relative, sub.patterns):
                continue
            try:
                sub.handler(event)
                delivered += 1
            except Exception as e:
                logging.error(f"Watcher subscriber {sub.subscriber_id} failed on {event.path}: {e}")
        return delivered


def _relative_or_self(path: Path, root: Path) -> Path:
    try:
        return path.resolve().relative_to(root)
    except ValueError:
        return path


BatchProcessor = Callable[[List[FileChangeEvent]], Awaitable[None]]


class ChangeQueue:
    """
    Debounced queue of pending changes keyed by path.

    Events may be enqueued from any thread. Repeated events for one path
    collapse into the latest one, and the batch is processed on ``loop``
    once ``delay`` seconds pass without new events.
    """
    def __init__(self, process_batch: BatchProcessor, loop: asyncio.AbstractEventLoop, delay: float = 2.0):
        self.process_batch = process_batch
        self.loop = loop
        self.delay = delay
        self._pending: Dict[str, FileChangeEvent] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._processing = False
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def enqueue(self, event: FileChangeEvent) -> None:
        with self._lock:
            self._pending[event.path] = event
        if self.loop.is_closed():
            logging.debug("Dropping change event: event loop is closed")
            return
        self.loop.call_soon_threadsafe(self._reschedule)

    def _reschedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.loop.call_later(self.delay, self._start_flush)

    def _start_flush(self) -> None:
        self._timer = None
        self._task = self.loop.create_task(self.flush())
        self._task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task) -> None:
        if task is self._task:
            self._task = None
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logging.error(f"Processing queued file changes failed: {error}", exc_info=error)
        if len(self):
            # events that arrived behind the failed batch
            self._reschedule()

    async def flush(self) -> int:
        """Process everything pending now. Returns the number of events handled."""
        if self._processing:
            # The running flush picks up new events when it finishes.
            return 0
        self._processing = True
        handled = 0
        try:
            while True:
                with self._lock:
                    batch = list(self._pending.values())
                    self._pending.clear()
                if not batch:
                    break
                await self.process_batch(batch)
                handled += len(batch)
        finally:
            self._processing = False
        return handled

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        with self._lock:
            self._pending.clear()
