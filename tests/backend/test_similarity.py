"""
Unit tests for the similarity module.
"""

import math
import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from errors import MissingEmbedding
from models import ChunkEmbedding, DocumentEmbeddingEntry
from similarity import (
    best_chunk,
    cosine_similarity,
    find_documents_similar_to_document,
    find_similar,
    find_similar_documents,
)


def entry(path, *vectors):
    return DocumentEmbeddingEntry(
        embedding_id=path,
        source_path=path,
        last_indexed=datetime(2024, 1, 1, tzinfo=timezone.utc),
        chunks=[ChunkEmbedding(f"{path}#{i}", i, i + 1, list(v)) for i, v in enumerate(vectors)],
    )


def unit_at(score):
    """A 2-d vector whose cosine with [1, 0] is `score`."""
    return [score, math.sqrt(1 - score * score)]


class TestCosineSimilarity:
    """Test suite for cosine_similarity()."""

    def test_identical_vectors(self):
        assert cosine_similarity([0.3, 0.4, 0.5], [0.3, 0.4, 0.5]) == pytest.approx(1.0)

    def test_orthogonal_and_opposite(self):
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)

    def test_length_mismatch_is_zero(self):
        assert cosine_similarity([1, 0, 0], [1, 0]) == 0.0

    def test_empty_and_zero_vectors(self):
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity(None, [1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_scale_invariant(self):
        assert cosine_similarity([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)


class TestFindSimilar:
    """Threshold filtering and ordering."""

    def test_below_threshold_dropped(self):
        candidates = [("a", unit_at(0.85))]
        assert find_similar([1, 0], candidates, 0.9) == []
        assert [k for k, _ in find_similar([1, 0], candidates, 0.8)] == ["a"]

    def test_sorted_descending(self):
        candidates = [("low", unit_at(0.75)), ("high", unit_at(0.95)), ("mid", unit_at(0.85))]
        assert [k for k, _ in find_similar([1, 0], candidates, 0.7)] == ["high", "mid", "low"]

    def test_ties_keep_input_order(self):
        candidates = [("first", [0.6, 0.8]), ("second", [0.6, 0.8]), ("third", [0.6, 0.8])]
        keys = [k for k, _ in find_similar([1, 1], candidates, 0.5)]
        assert keys == ["first", "second", "third"]

    def test_candidates_without_vectors_are_skipped(self):
        candidates = [("none", None), ("empty", []), ("ok", [1, 0])]
        assert [k for k, _ in find_similar([1, 0], candidates, 0.5)] == ["ok"]


class TestDocumentSimilarity:
    """Max-pooled document ranking."""

    def test_best_chunk_wins(self):
        doc = entry("a.md", [0, 1], unit_at(0.95), unit_at(0.6))
        chunk_id, score = best_chunk([1, 0], doc)
        assert chunk_id == "a.md#1"
        assert score == pytest.approx(0.95)

    def test_documents_ranked_by_best_chunk(self):
        entries = [
            entry("weak.md", unit_at(0.72)),
            entry("strong.md", [0, 1], unit_at(0.97)),
            entry("none.md", [0, 1]),
            entry("empty.md"),
        ]
        results = find_similar_documents([1, 0], entries, 0.7)
        assert [r.file_path for r in results] == ["strong.md", "weak.md"]
        assert results[0].chunk_id == "strong.md#1"

    def test_excluded_path(self):
        entries = [entry("self.md", [1, 0]), entry("other.md", [1, 0])]
        results = find_similar_documents([1, 0], entries, 0.7, exclude_path="./self.md")
        assert [r.file_path for r in results] == ["other.md"]

    def test_similar_to_document_uses_first_chunk(self):
        entries = [
            entry("me.md", [1, 0], [0, 1]),
            entry("close.md", unit_at(0.9)),
            entry("far.md", [0, 1]),
        ]
        results = find_documents_similar_to_document("me.md", entries, 0.8)
        assert [r.file_path for r in results] == ["close.md"]

    def test_similar_to_unindexed_document(self):
        with pytest.raises(MissingEmbedding):
            find_documents_similar_to_document("missing.md", [entry("a.md", [1, 0])], 0.5)
        with pytest.raises(MissingEmbedding):
            find_documents_similar_to_document("empty.md", [entry("empty.md")], 0.5)
