"""
Indexer module for Marginalia.

Keeps the per-document chunk embeddings in a single JSON file.
"""

import json
import os
import threading
from typing import Callable, Dict, List, Optional

from models import DocumentEmbeddingEntry

# ISO timestamps keep microseconds, float mtimes can carry more.
STALENESS_TOLERANCE = 0.001


def normalize_path(path: str) -> str:
    """Normalize a document path so equivalent spellings compare equal."""
    normalized = (path or "").replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.strip("/")


class IndexStore:
    """Append/replace store of document embedding entries keyed by path."""

    def __init__(self, index_path: str = "storage/embeddings.json"):
        """
        Initialize the store.

        Args:
            index_path: Path to the JSON file holding all entries
        """
        self.index_path = str(index_path)
        self._lock = threading.RLock()
        self._entries: Dict[str, DocumentEmbeddingEntry] = {}
        self._entries = {normalize_path(e.source_path): e for e in self.load()}

    def load(self) -> List[DocumentEmbeddingEntry]:
        """Read all entries from disk. Missing or unreadable file means no entries."""
        try:
            if not os.path.exists(self.index_path):
                print("No existing embeddings found, starting fresh")
                return []
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                print(f"Failed to load embeddings: expected a list in {self.index_path}")
                return []
            entries = [DocumentEmbeddingEntry.from_dict(item) for item in data]
            print(f"Loaded embeddings for {len(entries)} documents")
            return entries
        except (OSError, ValueError, KeyError, TypeError) as e:
            print(f"Failed to load embeddings: {e}")
            return []

    def save(self, entries: Optional[List[DocumentEmbeddingEntry]] = None) -> bool:
        """Write all entries (or the given ones, replacing the collection)."""
        with self._lock:
            if entries is not None:
                self._entries = {normalize_path(e.source_path): e for e in entries}
            payload = [entry.to_dict() for entry in self._entries.values()]
            try:
                directory = os.path.dirname(self.index_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                tmp_path = self.index_path + ".tmp"
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f)
                os.replace(tmp_path, self.index_path)
                return True
            except OSError as e:
                print(f"Failed to save embeddings: {e}")
                return False

    def entries(self) -> List[DocumentEmbeddingEntry]:
        with self._lock:
            return list(self._entries.values())

    def get(self, path: str) -> Optional[DocumentEmbeddingEntry]:
        with self._lock:
            return self._entries.get(normalize_path(path))

    def upsert(
        self, entry: DocumentEmbeddingEntry, only_if: Optional[Callable[[], bool]] = None
    ) -> bool:
        """
        Replace the entry for the entry's path and persist.

        `only_if` is checked under the store lock; when it returns False the
        path's entry is dropped instead and False is returned.
        """
        key = normalize_path(entry.source_path)
        with self._lock:
            if only_if is not None and not only_if():
                if self._entries.pop(key, None) is not None:
                    self.save()
                return False
            self._entries[key] = entry
            return self.save()

    def remove(self, path: str) -> bool:
        with self._lock:
            if self._entries.pop(normalize_path(path), None) is None:
                return False
            return self.save()

    def rename(self, old_path: str, new_path: str) -> bool:
        with self._lock:
            entry = self._entries.pop(normalize_path(old_path), None)
            if entry is None:
                return False
            entry.source_path = new_path
            self._entries[normalize_path(new_path)] = entry
            return self.save()

    def is_stale(self, path: str, mtime: float) -> bool:
        """True when the document changed after it was indexed, or was never indexed."""
        entry = self.get(path)
        if entry is None:
            return True
        return mtime - entry.last_indexed.timestamp() > STALENESS_TOLERANCE

    def get_stats(self) -> Dict:
        """Get statistics about the index."""
        with self._lock:
            return {
                "total_documents": len(self._entries),
                "total_chunks": sum(len(e.chunks) for e in self._entries.values()),
                "index_file": self.index_path,
            }

    def clear(self):
        """Clear the entire index."""
        with self._lock:
            self._entries = {}
            if os.path.exists(self.index_path):
                os.remove(self.index_path)
        print("Index cleared")
