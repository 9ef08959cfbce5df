"""Shared backend models for Marginalia."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Facet(str, Enum):
    NOTE = "note"
    SELECTION = "selection"
    COMBINED = "combined"


_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id() -> str:
    """Timestamp-prefixed id with a random suffix, e.g. `lq3k2x9a4f8h2k`."""
    suffix = "".join(random.choice(_BASE36) for _ in range(11))
    return _to_base36(int(time.time() * 1000)) + suffix


def now_ms() -> int:
    return int(time.time() * 1000)


def has_meaningful_text(text: Optional[str]) -> bool:
    return bool(text) and len(text.strip()) > 0


@dataclass
class Position:
    line: int
    ch: int

    def as_tuple(self):
        return (self.line, self.ch)

    def to_dict(self) -> Dict[str, int]:
        return {"line": self.line, "ch": self.ch}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(line=int(data.get("line", 0)), ch=int(data.get("ch", 0)))


@dataclass
class Annotation:
    """A margin note anchored to a range (or a cursor point) in a document."""

    id: str
    from_pos: Position
    to_pos: Position
    text: str = ""
    note: str = ""
    timestamp: int = field(default_factory=now_ms)
    color: Optional[str] = None
    embedding: Optional[List[float]] = None
    selection_embedding: Optional[List[float]] = None
    combined_embedding: Optional[List[float]] = None

    @property
    def line(self) -> int:
        return self.from_pos.line

    @property
    def ch(self) -> int:
        return self.from_pos.ch

    @property
    def has_selection(self) -> bool:
        return (
            self.from_pos.as_tuple() != self.to_pos.as_tuple()
            or has_meaningful_text(self.text)
        )

    @property
    def combined_text(self) -> str:
        return " ".join(t for t in (self.note, self.text) if has_meaningful_text(t))

    def facet_text(self, facet: Facet) -> str:
        if facet == Facet.NOTE:
            return self.note or ""
        if facet == Facet.SELECTION:
            return self.text or ""
        return self.combined_text

    def facet_vector(self, facet: Facet) -> Optional[List[float]]:
        if facet == Facet.NOTE:
            return self.embedding
        if facet == Facet.SELECTION:
            return self.selection_embedding
        return self.combined_embedding

    def set_facet_vector(self, facet: Facet, vector: Optional[List[float]]) -> None:
        if facet == Facet.NOTE:
            self.embedding = vector
        elif facet == Facet.SELECTION:
            self.selection_embedding = vector
        else:
            self.combined_embedding = vector

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "note": self.note,
            "from": self.from_pos.to_dict(),
            "to": self.to_pos.to_dict(),
            "line": self.line,
            "ch": self.ch,
            "timestamp": self.timestamp,
            "color": self.color,
            "embedding": self.embedding,
            "selectionEmbedding": self.selection_embedding,
            "combinedEmbedding": self.combined_embedding,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Annotation":
        start = data.get("from") or {"line": data.get("line", 0), "ch": data.get("ch", 0)}
        end = data.get("to") or start
        timestamp = data.get("timestamp")
        return cls(
            id=str(data["id"]),
            from_pos=Position.from_dict(start),
            to_pos=Position.from_dict(end),
            text=data.get("text") or "",
            note=data.get("note") or "",
            timestamp=timestamp if isinstance(timestamp, (int, float)) else 0,
            color=data.get("color"),
            embedding=data.get("embedding"),
            selection_embedding=data.get("selectionEmbedding"),
            combined_embedding=data.get("combinedEmbedding"),
        )


@dataclass
class ChunkEmbedding:
    chunk_id: str
    char_start: int
    char_end: int
    vector: List[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "char_start": self.char_start,
            "char_end": self.char_end,
            "vector": self.vector,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkEmbedding":
        return cls(
            chunk_id=str(data["chunk_id"]),
            char_start=int(data["char_start"]),
            char_end=int(data["char_end"]),
            vector=[float(v) for v in data.get("vector") or []],
        )


@dataclass
class DocumentEmbeddingEntry:
    """Chunk embeddings of one document, stamped with its mtime at indexing."""

    embedding_id: str
    source_path: str
    last_indexed: datetime
    chunks: List[ChunkEmbedding] = field(default_factory=list)

    @staticmethod
    def timestamp_from_mtime(mtime: float) -> datetime:
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embedding_id": self.embedding_id,
            "source_path": self.source_path,
            "lastIndexed": self.last_indexed.isoformat(),
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentEmbeddingEntry":
        last_indexed = datetime.fromisoformat(str(data["lastIndexed"]).replace("Z", "+00:00"))
        if last_indexed.tzinfo is None:
            last_indexed = last_indexed.replace(tzinfo=timezone.utc)
        return cls(
            embedding_id=str(data.get("embedding_id") or generate_id()),
            source_path=str(data["source_path"]),
            last_indexed=last_indexed,
            chunks=[ChunkEmbedding.from_dict(c) for c in data.get("chunks") or []],
        )


@dataclass
class SimilarAnnotation:
    annotation: Annotation
    file_path: str
    similarity: float


@dataclass
class SimilarDocument:
    file_path: str
    similarity: float
    chunk_id: Optional[str] = None


# API payloads


class PositionPayload(BaseModel):
    line: int = Field(ge=0)
    ch: int = Field(ge=0)


class AnnotationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str = ""
    note: str = ""
    from_pos: PositionPayload = Field(alias="from")
    to_pos: PositionPayload = Field(alias="to")
    timestamp: int
    color: Optional[str] = None
    has_note_embedding: bool = False
    has_selection_embedding: bool = False
    has_combined_embedding: bool = False

    @classmethod
    def from_annotation(cls, item: Annotation) -> "AnnotationPayload":
        return cls(
            id=item.id,
            text=item.text,
            note=item.note,
            from_pos=PositionPayload(**item.from_pos.to_dict()),
            to_pos=PositionPayload(**item.to_pos.to_dict()),
            timestamp=item.timestamp,
            color=item.color,
            has_note_embedding=item.embedding is not None,
            has_selection_embedding=item.selection_embedding is not None,
            has_combined_embedding=item.combined_embedding is not None,
        )


class AnnotationsResponsePayload(BaseModel):
    file_path: str
    items: List[AnnotationPayload] = Field(default_factory=list)


class SimilarAnnotationPayload(BaseModel):
    file_path: str
    similarity: float
    item: AnnotationPayload


class SimilarAnnotationsResponsePayload(BaseModel):
    results: List[SimilarAnnotationPayload] = Field(default_factory=list)


class SimilarDocumentPayload(BaseModel):
    file_path: str
    similarity: float
    chunk_id: Optional[str] = None


class SimilarDocumentsResponsePayload(BaseModel):
    results: List[SimilarDocumentPayload] = Field(default_factory=list)


# Request payloads


class CreateAnnotationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str
    from_pos: PositionPayload = Field(alias="from")
    to_pos: Optional[PositionPayload] = Field(default=None, alias="to")
    text: str = ""
    note: str = ""
    color: Optional[str] = None


class UpdateAnnotationRequest(BaseModel):
    file_path: str
    id: str
    note: str
    color: Optional[str] = None


class UpdateAnchorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str
    id: str
    from_pos: PositionPayload = Field(alias="from")
    to_pos: PositionPayload = Field(alias="to")
    text: Optional[str] = None


class DeleteAnnotationRequest(BaseModel):
    file_path: str
    id: str


class SimilarAnnotationsRequest(BaseModel):
    file_path: str
    id: str
    facet: Facet = Facet.NOTE
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class DocumentEventRequest(BaseModel):
    file_path: str


class RenameDocumentRequest(BaseModel):
    old_path: str
    new_path: str


class SimilarDocumentsRequest(BaseModel):
    file_path: str
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
