"""Service layer coordinating sanitizing, chunking, embedding and storage."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from chunker import ChunkPlanner
from config import MarginaliaConfig
from embedder import InferenceClient
from errors import MissingEmbedding, OverlapError, ServiceUnavailable
from indexer import IndexStore, normalize_path
from models import (
    Annotation,
    ChunkEmbedding,
    DocumentEmbeddingEntry,
    Facet,
    Position,
    SimilarAnnotation,
    SimilarDocument,
    generate_id,
    has_meaningful_text,
    now_ms,
)
from sanitizer import sanitize
from similarity import find_documents_similar_to_document, find_similar, find_similar_documents
from storage import AnnotationStore
from vault import DocumentVault

ALL_FACETS = (Facet.NOTE, Facet.SELECTION, Facet.COMBINED)

# Facets missing here default to the configured similarity threshold.
FACET_DEFAULT_THRESHOLDS = {Facet.SELECTION: 0.5, Facet.COMBINED: 0.5}


class IndexOutcome(str, Enum):
    INDEXED = "indexed"
    PARTIAL = "partial"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    REMOVED = "removed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class IndexResult:
    path: str
    outcome: IndexOutcome
    chunks: int = 0


def _always() -> bool:
    return True


class DocumentIndexer:
    """Turns one document into a DocumentEmbeddingEntry."""

    def __init__(
        self,
        config: MarginaliaConfig,
        client: InferenceClient,
        store: IndexStore,
        vault: DocumentVault,
        planner: Optional[ChunkPlanner] = None,
    ):
        self.config = config
        self.client = client
        self.store = store
        self.vault = vault
        self.planner = planner or ChunkPlanner(client, chunk_size=config.chunk_size)

    def is_eligible(self, path: str) -> bool:
        return self.config.is_included(path) and self.vault.exists(path)

    def needs_indexing(self, path: str) -> bool:
        mtime = self.vault.mtime(path)
        return mtime is not None and self.store.is_stale(path, mtime)

    def index_path(self, path: str, should_continue: Callable[[], bool] = _always) -> IndexResult:
        """
        Index a document if it changed since it was last indexed.

        `should_continue` is checked around every network call; a stop leaves
        already embedded chunks saved as a partial entry.

        Raises:
            ChunkPlanningFailure: boundaries could not be planned
            ServiceUnavailable: no chunk could be embedded because the service is down
        """
        if not self.config.is_included(path):
            return IndexResult(path, IndexOutcome.SKIPPED)

        mtime = self.vault.mtime(path)
        if mtime is None:
            self.store.remove(path)
            return IndexResult(path, IndexOutcome.REMOVED)
        if not self.store.is_stale(path, mtime):
            return IndexResult(path, IndexOutcome.UNCHANGED)

        sanitized = sanitize(self.vault.read(path))
        if not should_continue():
            return IndexResult(path, IndexOutcome.CANCELLED)

        spans = self.planner.plan(sanitized.text, path=path)
        if not should_continue():
            return IndexResult(path, IndexOutcome.CANCELLED)

        chunks: List[ChunkEmbedding] = []
        first_error = None
        failed = 0
        cancelled = False
        for start, end in spans:
            if not should_continue():
                cancelled = True
                break
            chunk_text = sanitized.text[start:end]
            if not has_meaningful_text(chunk_text):
                continue
            result = self.client.embed_result(chunk_text)
            if result.ok:
                chunks.append(ChunkEmbedding(generate_id(), start, end, result.value))
            else:
                failed += 1
                first_error = first_error or result.error

        if spans and not chunks:
            if cancelled:
                return IndexResult(path, IndexOutcome.CANCELLED)
            if isinstance(first_error, ServiceUnavailable):
                raise first_error
            print(f"Warning: no chunks embedded for {path}: {first_error}")
            return IndexResult(path, IndexOutcome.FAILED)

        existing = self.store.get(path)
        entry = DocumentEmbeddingEntry(
            embedding_id=existing.embedding_id if existing else generate_id(),
            source_path=path,
            last_indexed=DocumentEmbeddingEntry.timestamp_from_mtime(mtime),
            chunks=chunks,
        )
        # The document may have been deleted while its chunks were embedding.
        if not self.store.upsert(entry, only_if=lambda: self.vault.exists(path)):
            if not self.vault.exists(path):
                print(f"{path} was deleted during indexing, entry dropped")
                return IndexResult(path, IndexOutcome.REMOVED)

        if cancelled or failed:
            print(
                f"Warning: {path} partially embedded ({len(chunks)}/{len(spans)} chunks)"
                + (", stopped early" if cancelled else f", first error: {first_error}")
            )
            return IndexResult(path, IndexOutcome.PARTIAL, len(chunks))

        print(f"Indexed {path} ({len(chunks)} chunks)")
        return IndexResult(path, IndexOutcome.INDEXED, len(chunks))

    def similar_documents(self, path: str, threshold: Optional[float] = None) -> List[SimilarDocument]:
        if threshold is None:
            threshold = self.config.similarity_threshold
        return find_documents_similar_to_document(path, self.store.entries(), threshold)


class AnnotationService:
    """Annotation CRUD with per-facet embeddings and similarity queries."""

    def __init__(
        self,
        config: MarginaliaConfig,
        store: AnnotationStore,
        client: InferenceClient,
        index: IndexStore,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.index = index

    def list(self, file_path: str) -> List[Annotation]:
        return self.store.list(file_path)

    def get(self, file_path: str, item_id: str) -> Annotation:
        return self.store.get(file_path, item_id)

    def create(
        self,
        file_path: str,
        from_pos: Position,
        to_pos: Optional[Position] = None,
        text: str = "",
        note: str = "",
        color: Optional[str] = None,
    ) -> Annotation:
        item = Annotation(
            id=generate_id(),
            from_pos=from_pos,
            to_pos=to_pos or Position(from_pos.line, from_pos.ch),
            text=text or "",
            note=note or "",
            color=color or self.config.highlight_color,
        )
        if self.store.would_overlap(file_path, item):
            raise OverlapError("This area overlaps with an existing highlight")

        self._refresh_embeddings(item, ALL_FACETS)
        return self.store.add(file_path, item)

    def update(self, file_path: str, item_id: str, note: str, color: Optional[str] = None) -> Annotation:
        item = self.store.get(file_path, item_id)
        note_changed = note != item.note
        item.note = note
        if color is not None:
            item.color = color
        item.timestamp = now_ms()
        self._refresh_embeddings(item, (Facet.NOTE, Facet.COMBINED) if note_changed else ())
        self.store.save()
        return item

    def update_anchor(
        self,
        file_path: str,
        item_id: str,
        from_pos: Position,
        to_pos: Position,
        text: Optional[str] = None,
    ) -> Annotation:
        """Apply positions remapped by the editor; re-embed only if the selection changed."""
        item = self.store.get(file_path, item_id)
        item.from_pos = from_pos
        item.to_pos = to_pos
        facets = ()
        if text is not None and text != item.text:
            item.text = text
            facets = (Facet.SELECTION, Facet.COMBINED)
        self._refresh_embeddings(item, facets)
        self.store.save()
        return item

    def delete(self, file_path: str, item_id: str) -> bool:
        if not self.store.remove(file_path, item_id):
            raise KeyError(f"Annotation not found: {file_path}#{item_id}")
        return True

    def rename_document(self, old_path: str, new_path: str) -> int:
        return self.store.rename_path(old_path, new_path)

    def backfill_embeddings(self, delay: float = 0.1) -> int:
        """Generate embeddings missing for meaningful facets across all documents."""
        if not self.client.is_available():
            return 0
        generated = 0
        for _, item in self.store.all_items():
            for facet in ALL_FACETS:
                if not has_meaningful_text(item.facet_text(facet)):
                    item.set_facet_vector(facet, None)
                    continue
                if item.facet_vector(facet):
                    continue
                vector = self.client.embed(item.facet_text(facet))
                if vector is not None:
                    item.set_facet_vector(facet, vector)
                    generated += 1
                if delay:
                    time.sleep(delay)
        self.store.save()
        return generated

    def find_similar(
        self,
        file_path: str,
        item_id: str,
        facet: Facet = Facet.NOTE,
        threshold: Optional[float] = None,
    ) -> List[SimilarAnnotation]:
        item = self.store.get(file_path, item_id)
        query = item.facet_vector(facet)
        if not query:
            raise MissingEmbedding(f"Item does not have a {facet.value} embedding")
        if threshold is None:
            threshold = FACET_DEFAULT_THRESHOLDS.get(facet, self.config.similarity_threshold)

        own_path = normalize_path(file_path)
        candidates = (
            ((path, other), other.facet_vector(facet))
            for path, other in self.store.all_items()
            if not (other.id == item.id and path == own_path)
        )
        return [
            SimilarAnnotation(annotation=other, file_path=path, similarity=score)
            for (path, other), score in find_similar(query, candidates, threshold)
        ]

    def find_similar_documents(
        self,
        file_path: str,
        item_id: str,
        threshold: Optional[float] = None,
        facet: Facet = Facet.NOTE,
    ) -> List[SimilarDocument]:
        item = self.store.get(file_path, item_id)
        query = item.facet_vector(facet)
        if not query:
            raise MissingEmbedding(f"Item does not have a {facet.value} embedding")
        if threshold is None:
            threshold = self.config.similarity_threshold
        return find_similar_documents(query, self.index.entries(), threshold, exclude_path=file_path)

    def _refresh_embeddings(self, item: Annotation, facets) -> None:
        for facet in facets:
            text = item.facet_text(facet)
            if not has_meaningful_text(text) or not self.client.is_available():
                item.set_facet_vector(facet, None)
                continue
            item.set_facet_vector(facet, self.client.embed(text))

        # Facets without meaningful text never keep a vector.
        for facet in ALL_FACETS:
            if not has_meaningful_text(item.facet_text(facet)):
                item.set_facet_vector(facet, None)
