"""
Unit tests for the IndexingQueue.
"""

import os
import sys
import time
from datetime import datetime, timezone
from unittest.mock import Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from config import MarginaliaConfig
from errors import ChunkPlanningFailure, ServiceUnavailable
from indexing_queue import IndexingQueue, PathState
from models import DocumentEmbeddingEntry
from services import IndexOutcome, IndexResult


class FakeTimer:
    def __init__(self, delay, callback, args):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.callback(*self.args)


class FakeScheduler:
    """Collects timers instead of starting threads."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback, *args):
        timer = FakeTimer(delay, callback, args)
        self.timers.append(timer)
        return timer

    @property
    def last(self):
        return self.timers[-1]


def make_indexer(documents=(), entries=()):
    indexer = Mock()
    indexer.vault.list_documents.return_value = list(documents)
    indexer.store.entries.return_value = list(entries)
    indexer.needs_indexing.return_value = True
    indexer.index_path.side_effect = lambda path, should_continue=None: IndexResult(
        path, IndexOutcome.INDEXED, 1
    )
    return indexer


def make_entry(path):
    return DocumentEmbeddingEntry(
        embedding_id=path, source_path=path, last_indexed=datetime(2024, 1, 1, tzinfo=timezone.utc)
    )


class TestIndexingQueue:
    """Test suite for the IndexingQueue class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config = MarginaliaConfig()
        self.scheduler = FakeScheduler()
        self.indexer = make_indexer()
        self.queue = IndexingQueue(self.config, self.indexer, scheduler=self.scheduler)

    def teardown_method(self):
        self.queue.stop()

    def test_change_is_debounced(self):
        """Test that repeated changes restart the debounce timer."""
        assert self.queue.notify_changed("a.md")
        assert self.queue.notify_changed("a.md")

        first, second = self.scheduler.timers
        assert first.cancelled and not second.cancelled
        assert second.delay == self.config.debounce_seconds
        assert self.queue.state("a.md") == PathState.QUEUED
        assert self.queue.process_next() is None

        second.fire()
        result = self.queue.process_next()

        assert result.outcome == IndexOutcome.INDEXED
        self.indexer.index_path.assert_called_once()
        assert self.indexer.index_path.call_args[0][0] == "a.md"
        assert self.queue.state("a.md") == PathState.IDLE

    def test_excluded_path_is_ignored(self):
        self.config.included_paths = ["notes"]
        assert not self.queue.notify_changed("other/a.md")
        assert self.queue.notify_changed("notes/a.md")

    def test_enqueue_deduplicates(self):
        assert self.queue.enqueue_now("a.md")
        assert not self.queue.enqueue_now("./a.md")
        assert self.queue.run_pending() == [IndexResult("a.md", IndexOutcome.INDEXED, 1)]

    def test_failures_back_off_then_abandon(self):
        """Test retry delays grow linearly and the path is abandoned at the ceiling."""
        self.indexer.index_path.side_effect = ChunkPlanningFailure("hallucinated")
        self.queue.enqueue_now("a.md")

        self.queue.process_next()
        assert self.queue.state("a.md") == PathState.RETRY_SCHEDULED
        assert self.queue.retry_count("a.md") == 1
        assert self.scheduler.last.delay == 5.0

        self.scheduler.last.fire()
        self.queue.process_next()
        assert self.queue.retry_count("a.md") == 2
        assert self.scheduler.last.delay == 10.0

        timers = len(self.scheduler.timers)
        self.scheduler.last.fire()
        self.queue.process_next()
        assert self.queue.state("a.md") == PathState.ABANDONED
        assert len(self.scheduler.timers) == timers
        assert self.indexer.index_path.call_count == 3

        assert not self.queue.notify_changed("a.md")
        assert not self.queue.enqueue_now("a.md")

    def test_abandoned_path_eligible_after_restart(self):
        self.indexer.index_path.side_effect = ServiceUnavailable("down")
        for _ in range(self.config.max_retries):
            self.queue.enqueue_now("a.md")
            self.queue.process_next()
        assert self.queue.state("a.md") == PathState.ABANDONED

        fresh = IndexingQueue(self.config, self.indexer, scheduler=self.scheduler)
        assert fresh.notify_changed("a.md")

    def test_success_resets_retries(self):
        results = [ChunkPlanningFailure("bad"), IndexResult("a.md", IndexOutcome.INDEXED, 2)]

        def index_path(path, should_continue=None):
            outcome = results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        self.indexer.index_path.side_effect = index_path
        self.queue.enqueue_now("a.md")
        self.queue.process_next()
        self.scheduler.last.fire()
        self.queue.process_next()

        assert self.queue.retry_count("a.md") == 0
        assert self.queue.state("a.md") == PathState.IDLE
        assert self.queue.last_results["a.md"].chunks == 2

    def test_unexpected_error_returns_to_idle(self):
        self.indexer.index_path.side_effect = RuntimeError("disk on fire")
        self.queue.enqueue_now("a.md")
        assert self.queue.process_next() is None
        assert self.queue.state("a.md") == PathState.IDLE
        assert self.queue.retry_count("a.md") == 0

    def test_pause_cancels_pending_work(self):
        self.queue.notify_changed("a.md")
        self.queue.enqueue_now("b.md")

        self.queue.pause()

        assert self.scheduler.last.cancelled
        assert self.queue.state("b.md") == PathState.IDLE
        assert self.queue.process_next() is None
        assert not self.queue.notify_changed("a.md")
        assert not self.queue.is_active()

    def test_resume_sweeps(self):
        self.indexer.vault.list_documents.return_value = ["a.md"]
        self.queue.pause()
        assert self.queue.resume() == 1
        assert self.queue.status()["pending"] == ["a.md"]

    def test_stop_checkpoint_is_passed_to_indexer(self):
        self.queue.enqueue_now("a.md")
        self.queue.process_next()
        should_continue = self.indexer.index_path.call_args.kwargs["should_continue"]
        assert should_continue()
        self.queue.pause()
        assert not should_continue()

    def test_sweep_queues_stale_documents_and_drops_deleted(self):
        """Test the periodic sweep."""
        self.indexer.vault.list_documents.return_value = ["a.md", "b.md", "notes/c.md"]
        self.indexer.needs_indexing.side_effect = lambda path: path != "b.md"
        self.indexer.store.entries.return_value = [make_entry("a.md"), make_entry("gone.md")]

        assert self.queue.sweep() == 2
        assert self.queue.status()["pending"] == ["a.md", "notes/c.md"]
        self.indexer.store.remove.assert_called_once_with("gone.md")

    def test_sweep_respects_included_paths(self):
        self.config.included_paths = ["notes"]
        self.indexer.vault.list_documents.return_value = ["a.md", "notes/c.md"]
        assert self.queue.sweep() == 1

    def test_delete_cancels_and_removes_entry(self):
        self.queue.notify_changed("a.md")
        self.queue.notify_deleted("a.md")

        assert self.scheduler.last.cancelled
        assert self.queue.state("a.md") == PathState.IDLE
        self.indexer.store.remove.assert_called_with("a.md")

    def test_rename_moves_entry_and_requeues(self):
        self.queue.notify_renamed("old.md", "new.md")

        self.indexer.store.rename.assert_called_once_with("old.md", "new.md")
        assert self.queue.state("new.md") == PathState.QUEUED
        assert self.scheduler.last.args == ("new.md",)

    def test_status(self):
        self.queue.enqueue_now("a.md")
        status = self.queue.status()
        assert status["enabled"] is True
        assert status["paths"]["a.md"] == {"state": "queued", "retries": 0}


class TestIndexingQueueThreads:
    """The worker thread drains the queue on its own."""

    def test_worker_processes_queued_path(self):
        config = MarginaliaConfig(sweep_interval=3600, throttle_delay=0)
        indexer = make_indexer()
        queue = IndexingQueue(config, indexer)
        queue.start()
        try:
            queue.enqueue_now("a.md")
            deadline = time.time() + 5
            while "a.md" not in queue.last_results and time.time() < deadline:
                time.sleep(0.01)
            assert queue.last_results["a.md"].outcome == IndexOutcome.INDEXED
        finally:
            queue.stop()
