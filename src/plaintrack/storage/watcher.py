"""
StoreWatcher - keeps a Store current while a long-lived process runs.

watchdog delivers raw filesystem events on its own thread. They are bridged
into a bounded queue and drained by a worker thread that:

1. Debounces a burst of events into one batch of distinct paths.
2. Reconciles each path against the Store (re-read and upsert, or remove).
3. Retries files that failed to parse, since editors are often caught mid-write.
4. Notifies subscribers with StoreEvent values.

When the queue overflows or too many paths pile up, per-path work is dropped
and a single full rescan is done instead.

One-shot commands never start a watcher; they call Store.load() instead.
"""

import os
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from plaintrack.core.config import settings, get_logger
from plaintrack.core.errors import WatcherError
from plaintrack.core.types import ReconcileOutcome, StoreEvent
from plaintrack.storage.store import Store

logger = get_logger("storage.watcher")

Subscriber = Callable[[StoreEvent], None]

_RELEVANT_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}

# Upper bound on a single blocking wait so stop() is noticed promptly.
_POLL_SECONDS = 0.25


class _EventBridge(FileSystemEventHandler):
    """Forwards watchdog events for markdown files into the watcher's queue."""
    
    def __init__(self, watcher: "StoreWatcher"):
        super().__init__()
        self.watcher = watcher
    
    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELEVANT_EVENTS:
            return
        
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        
        for raw in paths:
            path = Path(os.fsdecode(raw))
            if path.suffix == ".md":
                self.watcher.enqueue(path)


@dataclass
class _RetryEntry:
    attempts: int
    next_retry: float


class RetryQueue:
    """
    Files that failed to parse, waiting for another attempt.
    
    Only the first failure and the final give-up are logged per file.
    """
    
    def __init__(self, delay: float, max_attempts: int):
        self.delay = delay
        self.max_attempts = max_attempts
        self.entries: dict[Path, _RetryEntry] = {}
    
    def schedule(self, path: Path, now: float | None = None) -> bool:
        """Schedule a retry. Returns False once the path has used up its attempts."""
        now = time.monotonic() if now is None else now
        entry = self.entries.setdefault(path, _RetryEntry(attempts=0, next_retry=now))
        entry.attempts += 1
        
        if entry.attempts > self.max_attempts:
            logger.warning(f"Giving up on parsing {path} after {self.max_attempts} attempts")
            del self.entries[path]
            return False
        
        if entry.attempts == 1:
            logger.warning(f"Failed to parse {path} (will retry)")
        entry.next_retry = now + self.delay
        return True
    
    def cancel(self, path: Path) -> None:
        self.entries.pop(path, None)
    
    def next_deadline(self) -> float | None:
        if not self.entries:
            return None
        return min(e.next_retry for e in self.entries.values())
    
    def take_ready(self, now: float | None = None) -> list[Path]:
        now = time.monotonic() if now is None else now
        return [p for p, e in self.entries.items() if e.next_retry <= now]
    
    def __contains__(self, path: object) -> bool:
        return path in self.entries
    
    def __len__(self) -> int:
        return len(self.entries)


class StoreWatcher:
    """
    Watches a Store's root directory and reconciles it as files change.
    
    Usage:
        with StoreWatcher(store) as watcher:
            watcher.subscribe(lambda event: print(event))
            ...
    """
    
    def __init__(
        self,
        store: Store,
        debounce_ms: int | None = None,
        retry_delay_ms: int | None = None,
        max_retries: int | None = None,
        queue_capacity: int | None = None,
        pending_cap: int | None = None,
        recently_edited_ttl: float | None = None,
        observer_factory: Callable[[], object] = Observer,
    ):
        self.store = store
        self.debounce = (debounce_ms if debounce_ms is not None else settings.watch_debounce_ms) / 1000
        self.pending_cap = pending_cap or settings.watch_pending_cap
        self.recently_edited_ttl = (
            recently_edited_ttl if recently_edited_ttl is not None else settings.recently_edited_ttl_seconds
        )
        self.retries = RetryQueue(
            delay=(retry_delay_ms if retry_delay_ms is not None else settings.watch_retry_delay_ms) / 1000,
            max_attempts=max_retries if max_retries is not None else settings.watch_max_retries,
        )
        
        self._queue: queue.Queue[Path] = queue.Queue(maxsize=queue_capacity or settings.watch_queue_capacity)
        self._rescan_needed = threading.Event()
        self._stop = threading.Event()
        self._observer_factory = observer_factory
        self._observer = None
        self._thread: threading.Thread | None = None
        
        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()
        self._recently_edited: dict[str, float] = {}
        self._recently_edited_lock = threading.Lock()
    
    # ==========================================
    # Lifecycle
    # ==========================================
    
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
    
    def start(self) -> "StoreWatcher":
        """
        Start the observer and the worker thread.
        
        If the root directory does not exist yet, nothing is watched: the
        process must be restarted once the repository has been created.
        """
        if self.running:
            raise WatcherError("watcher is already running")
        
        self._stop.clear()
        root = self.store.root
        
        if root.is_dir():
            try:
                observer = self._observer_factory()
                observer.schedule(_EventBridge(self), str(root), recursive=True)
                observer.start()
            except OSError as e:
                raise WatcherError(f"failed to create filesystem watcher: {e}") from e
            self._observer = observer
            logger.info(f"Watching {root}")
        else:
            logger.warning(f"{root} not found, file watching is disabled until restart")
        
        self._thread = threading.Thread(target=self._run, name="plaintrack-watcher", daemon=True)
        self._thread.start()
        return self
    
    def stop(self) -> None:
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        logger.info("Watcher stopped")
    
    def __enter__(self) -> "StoreWatcher":
        return self.start()
    
    def __exit__(self, *exc) -> None:
        self.stop()
    
    # ==========================================
    # Subscribers
    # ==========================================
    
    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for store change events. Returns an unsubscribe function."""
        with self._subscribers_lock:
            self._subscribers.append(callback)
        
        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        
        return unsubscribe
    
    def _notify(self, events: set[StoreEvent]) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for event in sorted(events, key=lambda e: e.value, reverse=True):
            for callback in subscribers:
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Subscriber failed handling {event.value}")
    
    def mark_recently_edited(self, record_id: str) -> None:
        """Suppress notifications for a record this process just wrote itself."""
        with self._recently_edited_lock:
            self._recently_edited[record_id] = time.monotonic()
    
    def is_recently_edited(self, record_id: str) -> bool:
        now = time.monotonic()
        with self._recently_edited_lock:
            expired = [k for k, t in self._recently_edited.items() if now - t > self.recently_edited_ttl]
            for key in expired:
                del self._recently_edited[key]
            return record_id in self._recently_edited
    
    # ==========================================
    # Event intake
    # ==========================================
    
    def enqueue(self, path: Path) -> None:
        """Called from the observer thread. Never blocks."""
        try:
            self._queue.put_nowait(path)
        except queue.Full:
            if not self._rescan_needed.is_set():
                logger.warning("Watcher queue is full, scheduling a full rescan")
            self._rescan_needed.set()
    
    def _wait_timeout(self) -> float:
        deadline = self.retries.next_deadline()
        if deadline is None:
            return _POLL_SECONDS
        return max(0.0, min(_POLL_SECONDS, deadline - time.monotonic()))
    
    def _collect_batch(self) -> set[Path]:
        """Block for a first event, then keep reading until the debounce window is quiet."""
        pending: set[Path] = set()
        try:
            pending.add(self._queue.get(timeout=self._wait_timeout()))
        except queue.Empty:
            return pending
        
        while not self._stop.is_set():
            try:
                pending.add(self._queue.get(timeout=self.debounce))
            except queue.Empty:
                break
            if len(pending) > self.pending_cap:
                logger.warning(f"More than {self.pending_cap} pending paths, scheduling a full rescan")
                self._rescan_needed.set()
                pending.clear()
        return pending
    
    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._step()
            except Exception:
                logger.exception("Watcher batch failed, continuing")
    
    def _step(self) -> None:
        batch = self._collect_batch()
        if self._stop.is_set():
            return
        
        if self._rescan_needed.is_set():
            self._drain_queue()
            self._rescan_needed.clear()
            self.full_rescan()
            return
        
        events = self.process_batch(batch) if batch else set()
        events |= self.process_retries()
        if events:
            self._notify(events)
    
    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return
    
    # ==========================================
    # Reconciliation
    # ==========================================
    
    def _reconcile(self, path: Path, changed: set[StoreEvent]) -> None:
        outcome = self.store.reconcile_path(path)
        
        if outcome is ReconcileOutcome.PARSE_FAILED:
            self.retries.schedule(path)
            return
        self.retries.cancel(path)
        if outcome not in (ReconcileOutcome.UPDATED, ReconcileOutcome.REMOVED):
            return
        
        if self.store.files.is_plan_path(path):
            changed.add(StoreEvent.PLANS_CHANGED)
        elif not self.is_recently_edited(path.stem):
            changed.add(StoreEvent.RECORDS_CHANGED)
    
    def process_batch(self, paths: set[Path]) -> set[StoreEvent]:
        """Reconcile a debounced batch. A fresh event for a path cancels its pending retry."""
        changed: set[StoreEvent] = set()
        for path in sorted(paths):
            self.retries.cancel(path)
            self._reconcile(path, changed)
        if paths:
            logger.debug(f"Reconciled {len(paths)} paths")
        return changed
    
    def process_retries(self, now: float | None = None) -> set[StoreEvent]:
        changed: set[StoreEvent] = set()
        for path in self.retries.take_ready(now):
            self._reconcile(path, changed)
        return changed
    
    def full_rescan(self) -> None:
        """Reload every file and drop entries whose file is gone, then notify."""
        self.retries.entries.clear()
        self.store.rescan()
        self._notify({StoreEvent.RECORDS_CHANGED, StoreEvent.PLANS_CHANGED})
