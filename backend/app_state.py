"""Backend application state: every service built from one configuration."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from config import MarginaliaConfig
from embedder import InferenceClient, ProbeResult
from indexer import IndexStore
from indexing_queue import IndexingQueue
from services import AnnotationService, DocumentIndexer
from storage import AnnotationStore
from vault import DocumentVault


class MarginaliaAppState:
    """Holds the configuration and all services derived from it."""

    def __init__(
        self,
        config: Optional[MarginaliaConfig] = None,
        client: Optional[InferenceClient] = None,
    ):
        self._lock = threading.RLock()
        self.config = config or MarginaliaConfig.from_env()
        Path(self.config.data_dir).mkdir(parents=True, exist_ok=True)

        self.client = client or InferenceClient(self.config)
        self.vault = DocumentVault(self.config.vault_root)
        self.index = IndexStore(str(self.config.index_path))
        self.annotation_store = AnnotationStore(
            self.config.annotations_path, default_color=self.config.highlight_color
        )
        self.indexer = DocumentIndexer(self.config, self.client, self.index, self.vault)
        self.queue = IndexingQueue(self.config, self.indexer)
        self.annotations = AnnotationService(
            self.config, self.annotation_store, self.client, self.index
        )
        self.last_probe: Optional[ProbeResult] = None

    def start(self) -> None:
        """Probe the inference service silently and start the indexing threads."""
        with self._lock:
            self.last_probe = self.client.probe()
            if not self.last_probe.available:
                print(f"Inference service not ready: {self.last_probe.error or self.last_probe.missing}")
            # Idle while indexing is disabled; resume() turns the work on.
            self.queue.start()

    def stop(self) -> None:
        with self._lock:
            self.queue.stop()
            self.client.close()

    def probe(self) -> ProbeResult:
        with self._lock:
            self.last_probe = self.client.probe()
            return self.last_probe
