"""
Background indexing queue for Marginalia.

Document events are debounced per path, then handed to a single worker that
indexes one path at a time. Failures are retried with a growing delay until
the retry ceiling, after which the path is left alone until restart.
"""

from __future__ import annotations

import threading
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Set

from config import MarginaliaConfig
from errors import ChunkPlanningFailure, ServiceUnavailable
from indexer import normalize_path
from services import DocumentIndexer, IndexResult


class PathState(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    PROCESSING = "processing"
    RETRY_SCHEDULED = "retry_scheduled"
    ABANDONED = "abandoned"


def _start_timer(delay: float, callback: Callable, *args) -> threading.Timer:
    timer = threading.Timer(delay, callback, args=args)
    timer.daemon = True
    timer.start()
    return timer


class IndexingQueue:
    """Debounced, single-worker indexing queue with retry/backoff."""

    def __init__(
        self,
        config: MarginaliaConfig,
        indexer: DocumentIndexer,
        scheduler: Callable = _start_timer,
    ):
        """
        Initialize the queue.

        Args:
            config: Backend configuration (debounce, sweep, retry tunables)
            indexer: DocumentIndexer doing the per-path work
            scheduler: `scheduler(delay, callback, *args)` returning an object with
                `cancel()`; defaults to a daemon `threading.Timer`
        """
        self.config = config
        self.indexer = indexer
        self._schedule = scheduler

        self._lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        self._stop = threading.Event()
        self._enabled = bool(config.indexing_enabled)

        self._states: Dict[str, PathState] = {}
        self._retries: Dict[str, int] = {}
        self._timers: Dict[str, object] = {}
        self._ready: Deque[str] = deque()
        self._ready_set: Set[str] = set()

        self._worker: Optional[threading.Thread] = None
        self._sweeper: Optional[threading.Thread] = None
        self.last_results: Dict[str, IndexResult] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stop.clear()
            self._worker = threading.Thread(target=self._run_worker, name="marginalia-indexer", daemon=True)
            self._sweeper = threading.Thread(target=self._run_sweeper, name="marginalia-sweep", daemon=True)
            self._worker.start()
            self._sweeper.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        with self._lock:
            self._cancel_timers()
            self._wakeup.notify_all()
        for thread in (self._worker, self._sweeper):
            if thread is not None and thread.is_alive():
                thread.join(timeout)

    def pause(self) -> None:
        """Stop scheduling new work; in-flight work stops at its next checkpoint."""
        with self._lock:
            self._enabled = False
            self._cancel_timers()
            for path in list(self._ready):
                self._states[path] = PathState.IDLE
            self._ready.clear()
            self._ready_set.clear()

    def resume(self) -> int:
        with self._lock:
            self._enabled = True
        return self.sweep()

    def is_active(self) -> bool:
        return self._enabled and not self._stop.is_set()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def notify_changed(self, path: str) -> bool:
        """(Re)start the debounce timer for `path`. Returns False if ignored."""
        key = normalize_path(path)
        with self._lock:
            if not self.is_active() or not self.config.is_included(key):
                return False
            if self._states.get(key) == PathState.ABANDONED:
                return False
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            if key not in self._ready_set and self._states.get(key) != PathState.PROCESSING:
                self._states[key] = PathState.QUEUED
            self._timers[key] = self._schedule(self.config.debounce_seconds, self._debounce_expired, key)
            return True

    def notify_deleted(self, path: str) -> None:
        key = normalize_path(path)
        with self._lock:
            self._forget(key)
        self.indexer.store.remove(key)

    def notify_renamed(self, old_path: str, new_path: str) -> None:
        old_key, new_key = normalize_path(old_path), normalize_path(new_path)
        with self._lock:
            self._forget(old_key)
        self.indexer.store.rename(old_key, new_key)
        self.notify_changed(new_key)

    def sweep(self) -> int:
        """Queue every included document that is stale or was never indexed."""
        if not self.is_active():
            return 0
        queued = 0
        documents = set(self.indexer.vault.list_documents())
        for path in sorted(documents):
            if not self.config.is_included(path):
                continue
            if self.indexer.needs_indexing(path) and self.enqueue_now(path):
                queued += 1
        for entry in self.indexer.store.entries():
            if normalize_path(entry.source_path) not in documents:
                self.indexer.store.remove(entry.source_path)
        return queued

    def enqueue_now(self, path: str) -> bool:
        """Put `path` on the ready queue unless it is already waiting or abandoned."""
        key = normalize_path(path)
        with self._lock:
            if not self.is_active():
                return False
            state = self._states.get(key)
            if state == PathState.ABANDONED or key in self._ready_set:
                return False
            self._ready.append(key)
            self._ready_set.add(key)
            # A path being processed keeps its state and runs again afterwards.
            if state != PathState.PROCESSING:
                self._states[key] = PathState.QUEUED
            self._wakeup.notify()
            return True

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def process_next(self) -> Optional[IndexResult]:
        """Index the next ready path, if any. Runs on the worker thread."""
        with self._lock:
            if not self.is_active() or not self._ready:
                return None
            path = self._ready.popleft()
            self._ready_set.discard(path)
            self._states[path] = PathState.PROCESSING

        try:
            result = self.indexer.index_path(path, should_continue=self.is_active)
        except (ChunkPlanningFailure, ServiceUnavailable) as exc:
            self._handle_failure(path, exc)
            return None
        except Exception as exc:
            print(f"Indexing failed for {path}: {exc}")
            with self._lock:
                self._states[path] = PathState.IDLE
            return None

        with self._lock:
            self._retries.pop(path, None)
            if path not in self._ready_set:
                self._states[path] = PathState.IDLE
            else:
                self._states[path] = PathState.QUEUED
            self.last_results[path] = result
        return result

    def run_pending(self) -> List[IndexResult]:
        """Drain the ready queue synchronously."""
        results = []
        while True:
            with self._lock:
                if not self._ready or not self.is_active():
                    return results
            result = self.process_next()
            if result is not None:
                results.append(result)

    def _handle_failure(self, path: str, exc: Exception) -> None:
        with self._lock:
            count = self._retries.get(path, 0) + 1
            self._retries[path] = count
            if count >= self.config.max_retries:
                self._states[path] = PathState.ABANDONED
                print(
                    f"Warning: giving up on {path} after {count} failed attempts, "
                    f"it stays un-indexed until restart: {exc}"
                )
                return
            delay = self.config.retry_base_delay * count
            self._states[path] = PathState.RETRY_SCHEDULED
            print(f"Indexing {path} failed ({exc}), retry {count} in {delay:.0f}s")
            self._timers[path] = self._schedule(delay, self._retry_due, path)

    def _debounce_expired(self, path: str) -> None:
        with self._lock:
            self._timers.pop(path, None)
        self.enqueue_now(path)

    def _retry_due(self, path: str) -> None:
        with self._lock:
            self._timers.pop(path, None)
            if self._states.get(path) != PathState.RETRY_SCHEDULED:
                return
            self._states[path] = PathState.IDLE
        self.enqueue_now(path)

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            with self._lock:
                while not self._stop.is_set() and not (self._ready and self._enabled):
                    self._wakeup.wait(timeout=1.0)
            if self._stop.is_set():
                return
            self.process_next()
            # Throttle successive items.
            self._stop.wait(self.config.throttle_delay)

    def _run_sweeper(self) -> None:
        self.sweep()
        while not self._stop.wait(self.config.sweep_interval):
            self.sweep()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _cancel_timers(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for path, state in list(self._states.items()):
            if state == PathState.RETRY_SCHEDULED:
                self._states[path] = PathState.IDLE

    def _forget(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if key in self._ready_set:
            self._ready_set.discard(key)
            self._ready = deque(p for p in self._ready if p != key)
        self._states.pop(key, None)
        self._retries.pop(key, None)

    def state(self, path: str) -> PathState:
        with self._lock:
            return self._states.get(normalize_path(path), PathState.IDLE)

    def retry_count(self, path: str) -> int:
        with self._lock:
            return self._retries.get(normalize_path(path), 0)

    def status(self) -> Dict:
        with self._lock:
            return {
                "enabled": self._enabled,
                "pending": list(self._ready),
                "paths": {
                    path: {"state": state.value, "retries": self._retries.get(path, 0)}
                    for path, state in self._states.items()
                },
            }
