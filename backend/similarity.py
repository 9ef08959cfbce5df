"""Cosine similarity ranking over annotation and document embeddings."""

from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from errors import MissingEmbedding
from indexer import normalize_path
from models import DocumentEmbeddingEntry, SimilarDocument


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Returns 0.0 when either vector is empty, the lengths differ, or a norm is zero.
    """
    if not a or not b or len(a) != len(b):
        return 0.0

    v1 = np.asarray(a, dtype=np.float64)
    v2 = np.asarray(b, dtype=np.float64)
    norm1 = np.linalg.norm(v1)
    norm2 = np.linalg.norm(v2)
    if norm1 == 0 or norm2 == 0:
        return 0.0

    score = float(np.dot(v1, v2) / (norm1 * norm2))
    return max(-1.0, min(1.0, score))


def find_similar(
    query: Sequence[float],
    candidates: Iterable[Tuple[Any, Optional[Sequence[float]]]],
    threshold: float,
) -> List[Tuple[Any, float]]:
    """
    Rank `(key, vector)` candidates by similarity to `query`.

    Candidates without a vector are skipped; scores below `threshold` are dropped.
    Equal scores keep their input order.
    """
    results = []
    for key, vector in candidates:
        if not vector:
            continue
        score = cosine_similarity(query, vector)
        if score >= threshold:
            results.append((key, score))
    results.sort(key=lambda item: item[1], reverse=True)
    return results


def best_chunk(
    query: Sequence[float], entry: DocumentEmbeddingEntry
) -> Tuple[Optional[str], float]:
    """Max-pool: the best-matching chunk of `entry` and its score."""
    best_id, best_score = None, float("-inf")
    for chunk in entry.chunks:
        score = cosine_similarity(query, chunk.vector)
        if score > best_score:
            best_id, best_score = chunk.chunk_id, score
    return best_id, best_score


def find_similar_documents(
    query: Sequence[float],
    entries: Iterable[DocumentEmbeddingEntry],
    threshold: float,
    exclude_path: Optional[str] = None,
) -> List[SimilarDocument]:
    """Rank documents by their best chunk's similarity to `query`."""
    excluded = normalize_path(exclude_path) if exclude_path else None
    results = []
    for entry in entries:
        if excluded is not None and normalize_path(entry.source_path) == excluded:
            continue
        if not entry.chunks:
            continue
        chunk_id, score = best_chunk(query, entry)
        if score >= threshold:
            results.append(SimilarDocument(entry.source_path, score, chunk_id))
    results.sort(key=lambda doc: doc.similarity, reverse=True)
    return results


def find_documents_similar_to_document(
    path: str, entries: Sequence[DocumentEmbeddingEntry], threshold: float
) -> List[SimilarDocument]:
    """Documents similar to `path`, using its first chunk as the query."""
    target = normalize_path(path)
    current = next((e for e in entries if normalize_path(e.source_path) == target), None)
    if current is None or not current.chunks:
        raise MissingEmbedding(f"No embedding available for document {path}")
    return find_similar_documents(current.chunks[0].vector, entries, threshold, exclude_path=path)
