"""Filesystem-backed document folder that the indexer reads from."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from indexer import normalize_path

DOCUMENT_SUFFIXES = (".md",)


class DocumentVault:
    """Markdown documents under a root directory, addressed by relative path."""

    def __init__(self, root, suffixes: Iterable[str] = DOCUMENT_SUFFIXES):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.suffixes = tuple(suffixes)

    def _resolve(self, path: str) -> Path:
        normalized = normalize_path(path)
        resolved = (self.root / normalized).resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise FileNotFoundError(f"Document outside vault: {path}")
        return resolved

    def list_documents(self) -> List[str]:
        documents = []
        for file_path in sorted(self.root.rglob("*")):
            if file_path.is_file() and file_path.suffix.lower() in self.suffixes:
                documents.append(file_path.relative_to(self.root).as_posix())
        return documents

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except FileNotFoundError:
            return False

    def read(self, path: str) -> str:
        # Undecodable bytes become U+FFFD.
        return self._resolve(path).read_text(encoding="utf-8", errors="replace")

    def mtime(self, path: str) -> Optional[float]:
        """Modification time in seconds, or None for a missing document."""
        try:
            return self._resolve(path).stat().st_mtime
        except OSError:
            return None

    def write(self, path: str, content: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
