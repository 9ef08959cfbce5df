"""Filesystem-backed storage for annotations."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from indexer import normalize_path
from models import Annotation, Position, has_meaningful_text, now_ms


def ranges_overlap(from1: Position, to1: Position, from2: Position, to2: Position) -> bool:
    """True if the two line/ch ranges share any area.

    On a single line, ranges that only touch do not overlap.
    """
    if to1.line < from2.line or to2.line < from1.line:
        return False

    if from1.line == from2.line and to1.line == to2.line:
        return from1.ch < to2.ch and from2.ch < to1.ch

    first_before_second = from1.as_tuple() <= to2.as_tuple()
    second_before_first = from2.as_tuple() <= to1.as_tuple()
    return first_before_second and second_before_first


class AnnotationStore:
    """Local JSON storage of annotations grouped by document path."""

    def __init__(self, path: Optional[Path] = None, default_color: str = "#ffeb3d"):
        self.path = (
            Path(path)
            if path
            else Path(__file__).resolve().parent / "storage" / "marginalia-data.json"
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.default_color = default_color
        self._lock = threading.RLock()
        self._items: Dict[str, List[Annotation]] = {}
        self._load()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def paths(self) -> List[str]:
        with self._lock:
            return list(self._items.keys())

    def list(self, file_path: str) -> List[Annotation]:
        with self._lock:
            return list(self._items.get(normalize_path(file_path), []))

    def all_items(self) -> Iterator[Tuple[str, Annotation]]:
        with self._lock:
            snapshot = [(p, item) for p, items in self._items.items() for item in items]
        return iter(snapshot)

    def get(self, file_path: str, item_id: str) -> Annotation:
        for item in self.list(file_path):
            if item.id == item_id:
                return item
        raise KeyError(f"Annotation not found: {file_path}#{item_id}")

    def would_overlap(self, file_path: str, new_item: Annotation) -> bool:
        """Only real selections can overlap; cursor-only annotations never do."""
        if not new_item.has_selection:
            return False
        for existing in self.list(file_path):
            if existing.id == new_item.id or not existing.has_selection:
                continue
            if ranges_overlap(new_item.from_pos, new_item.to_pos, existing.from_pos, existing.to_pos):
                return True
        return False

    def add(self, file_path: str, item: Annotation) -> Annotation:
        if not item.color:
            item.color = self.default_color
        with self._lock:
            self._items.setdefault(normalize_path(file_path), []).append(item)
            self.save()
        return item

    def remove(self, file_path: str, item_id: str) -> bool:
        key = normalize_path(file_path)
        with self._lock:
            items = self._items.get(key, [])
            remaining = [item for item in items if item.id != item_id]
            if len(remaining) == len(items):
                return False
            if remaining:
                self._items[key] = remaining
            else:
                self._items.pop(key, None)
            self.save()
            return True

    def rename_path(self, old_path: str, new_path: str) -> int:
        with self._lock:
            moved = self._items.pop(normalize_path(old_path), [])
            if moved:
                self._items.setdefault(normalize_path(new_path), []).extend(moved)
                self.save()
            return len(moved)

    def save(self) -> bool:
        with self._lock:
            data = {
                file_path: {"items": [item.to_dict() for item in items]}
                for file_path, items in self._items.items()
                if items
            }
            try:
                tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
                tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
                tmp_path.replace(self.path)
                return True
            except OSError as exc:
                print(f"Error saving marginalia data: {exc}")
                return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            print(f"Failed to load marginalia data: {exc}")
            return
        if not isinstance(data, dict):
            print(f"Failed to load marginalia data: expected an object in {self.path}")
            return

        needs_save = False
        current_time = now_ms()
        for file_path, payload in data.items():
            raw_items = (payload or {}).get("items") if isinstance(payload, dict) else None
            if not raw_items:
                # Documents without annotations are dropped.
                needs_save = True
                continue
            items = []
            for raw in raw_items:
                try:
                    item = Annotation.from_dict(raw)
                except (KeyError, TypeError, ValueError) as exc:
                    print(f"Skipping unreadable annotation in {file_path}: {exc}")
                    needs_save = True
                    continue
                needs_save |= self._clean_item(item, current_time)
                items.append(item)
            if items:
                self._items[normalize_path(file_path)] = items

        if needs_save:
            self.save()

    def _clean_item(self, item: Annotation, current_time: int) -> bool:
        changed = False
        if not item.timestamp or item.timestamp <= 0:
            item.timestamp = current_time
            changed = True
        if not item.color:
            item.color = self.default_color
            changed = True
        if not has_meaningful_text(item.note) and item.embedding is not None:
            item.embedding = None
            changed = True
        if not has_meaningful_text(item.text) and item.selection_embedding is not None:
            item.selection_embedding = None
            changed = True
        if not has_meaningful_text(item.combined_text) and item.combined_embedding is not None:
            item.combined_embedding = None
            changed = True
        return changed
