"""
Unit tests for the IndexStore in the indexer module.
"""

import json
import os
import shutil
import sys
import tempfile
from datetime import datetime, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from indexer import IndexStore, normalize_path
from models import ChunkEmbedding, DocumentEmbeddingEntry


def make_entry(path, mtime=1_700_000_000.0, chunks=1):
    return DocumentEmbeddingEntry(
        embedding_id=f"id-{path}",
        source_path=path,
        last_indexed=DocumentEmbeddingEntry.timestamp_from_mtime(mtime),
        chunks=[ChunkEmbedding(f"c{i}", i * 10, i * 10 + 10, [float(i), 1.0]) for i in range(chunks)],
    )


class TestIndexStore:
    """Test suite for the IndexStore class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.index_path = os.path.join(self.temp_dir, "embeddings.json")
        self.store = IndexStore(self.index_path)

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_loads_empty(self):
        """Test loading when no index file exists."""
        assert self.store.load() == []
        assert self.store.entries() == []

    def test_corrupt_file_loads_empty(self):
        """Test that unreadable JSON yields no entries instead of an error."""
        with open(self.index_path, "w") as f:
            f.write("{not json")
        assert IndexStore(self.index_path).entries() == []

    def test_wrong_shape_loads_empty(self):
        with open(self.index_path, "w") as f:
            json.dump({"source_path": "a.md"}, f)
        assert IndexStore(self.index_path).load() == []

    def test_save_and_reload(self):
        """Test that entries survive a round trip through the file."""
        self.store.upsert(make_entry("notes/a.md", chunks=2))
        self.store.upsert(make_entry("b.md"))

        reloaded = IndexStore(self.index_path)
        entry = reloaded.get("notes/a.md")
        assert entry is not None
        assert entry.embedding_id == "id-notes/a.md"
        assert [c.chunk_id for c in entry.chunks] == ["c0", "c1"]
        assert entry.chunks[1].vector == [1.0, 1.0]
        assert entry.last_indexed == datetime.fromtimestamp(1_700_000_000.0, tz=timezone.utc)
        assert len(reloaded.entries()) == 2

    def test_file_format(self):
        self.store.upsert(make_entry("a.md"))
        with open(self.index_path) as f:
            data = json.load(f)
        assert isinstance(data, list)
        assert set(data[0]) == {"embedding_id", "source_path", "lastIndexed", "chunks"}
        assert set(data[0]["chunks"][0]) == {"chunk_id", "char_start", "char_end", "vector"}
        assert not os.path.exists(self.index_path + ".tmp")

    def test_upsert_replaces_entry(self):
        self.store.upsert(make_entry("a.md", chunks=3))
        self.store.upsert(make_entry("./a.md", chunks=1))
        assert len(self.store.entries()) == 1
        assert len(self.store.get("a.md").chunks) == 1

    def test_conditional_upsert_drops_entry_when_condition_fails(self):
        """Test that a failed only_if removes the path instead of writing it."""
        self.store.upsert(make_entry("a.md", chunks=2))

        assert self.store.upsert(make_entry("a.md", chunks=1), only_if=lambda: False) is False
        assert self.store.get("a.md") is None
        assert IndexStore(self.index_path).get("a.md") is None

        assert self.store.upsert(make_entry("a.md"), only_if=lambda: True) is True
        assert self.store.get("a.md") is not None

    def test_save_replaces_collection(self):
        self.store.upsert(make_entry("a.md"))
        self.store.save([make_entry("b.md")])
        assert self.store.get("a.md") is None
        assert IndexStore(self.index_path).get("b.md") is not None

    def test_is_stale(self):
        """Test staleness against the stored lastIndexed time."""
        assert self.store.is_stale("never.md", 1.0)

        self.store.upsert(make_entry("a.md", mtime=1_700_000_000.5))
        assert not self.store.is_stale("a.md", 1_700_000_000.5)
        assert not self.store.is_stale("a.md", 1_699_999_000.0)
        assert self.store.is_stale("a.md", 1_700_000_010.0)

    def test_sub_microsecond_mtime_is_not_stale(self):
        mtime = 1_700_000_000.1234567
        self.store.upsert(make_entry("a.md", mtime=mtime))
        reloaded = IndexStore(self.index_path)
        assert not reloaded.is_stale("a.md", mtime)

    def test_remove(self):
        self.store.upsert(make_entry("a.md"))
        assert self.store.remove("a.md")
        assert not self.store.remove("a.md")
        assert IndexStore(self.index_path).entries() == []

    def test_rename(self):
        self.store.upsert(make_entry("old/a.md"))
        assert self.store.rename("old/a.md", "new/a.md")
        assert self.store.get("old/a.md") is None
        assert self.store.get("new/a.md").source_path == "new/a.md"
        assert not self.store.rename("missing.md", "x.md")

    def test_get_stats(self):
        self.store.upsert(make_entry("a.md", chunks=2))
        self.store.upsert(make_entry("b.md", chunks=3))
        stats = self.store.get_stats()
        assert stats["total_documents"] == 2
        assert stats["total_chunks"] == 5

    def test_clear(self):
        self.store.upsert(make_entry("a.md"))
        self.store.clear()
        assert self.store.entries() == []
        assert not os.path.exists(self.index_path)


class TestNormalizePath:
    def test_equivalent_spellings(self):
        assert normalize_path("./notes/a.md") == "notes/a.md"
        assert normalize_path("notes\\a.md") == "notes/a.md"
        assert normalize_path("/notes/a.md/") == "notes/a.md"
        assert normalize_path("") == ""
