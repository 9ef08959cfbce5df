"""Configuration for the Marginalia backend.

A single `MarginaliaConfig` is built once (from the environment or from a
settings dict supplied by the host) and passed into every component.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

MIN_CHUNK_SIZE = 500
MAX_CHUNK_SIZE = 4000
DEFAULT_CHUNK_SIZE = 1800

MIN_SIMILARITY = 0.5
MAX_SIMILARITY = 1.0


def _clamp(value, low, high):
    return max(low, min(high, value))


def parse_included_paths(value: Optional[str]) -> List[str]:
    """Split a comma-separated list of folders/files into normalized entries."""
    if not value:
        return []
    paths = []
    for part in value.split(","):
        cleaned = part.strip().replace("\\", "/").strip("/")
        if cleaned:
            paths.append(cleaned)
    return paths


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


@dataclass
class MarginaliaConfig:
    inference_host: str = "localhost"
    inference_port: str = "11434"
    embedding_model: str = "nomic-embed-text:latest"
    generation_model: str = "phi3:latest"

    chunk_size: int = DEFAULT_CHUNK_SIZE
    similarity_threshold: float = 0.7
    included_paths: List[str] = field(default_factory=list)
    indexing_enabled: bool = True
    highlight_color: str = "#ffeb3d"

    vault_root: str = "vault"
    data_dir: str = "storage"

    # Inference client
    request_timeout: float = 30.0
    chunk_timeout_base: float = 60.0
    chunk_timeout_per_1000_chars: float = 10.0
    chunk_timeout_cap: float = 300.0
    summarize_token_threshold: int = 2048
    min_request_interval: float = 0.0

    # Indexing queue
    debounce_seconds: float = 2.0
    sweep_interval: float = 300.0
    max_retries: int = 3
    retry_base_delay: float = 5.0
    throttle_delay: float = 0.1

    def __post_init__(self):
        self.chunk_size = int(_clamp(int(self.chunk_size), MIN_CHUNK_SIZE, MAX_CHUNK_SIZE))
        self.similarity_threshold = float(
            _clamp(float(self.similarity_threshold), MIN_SIMILARITY, MAX_SIMILARITY)
        )
        if isinstance(self.included_paths, str):
            self.included_paths = parse_included_paths(self.included_paths)
        self.inference_port = str(self.inference_port)

    @property
    def base_url(self) -> str:
        host = self.inference_host or "localhost"
        port = self.inference_port or "11434"
        return f"http://{host}:{port}/api"

    @property
    def index_path(self) -> Path:
        return Path(self.data_dir) / "embeddings.json"

    @property
    def annotations_path(self) -> Path:
        return Path(self.data_dir) / "marginalia-data.json"

    def is_included(self, path: str) -> bool:
        """True if `path` falls under one of the included folders/files."""
        if not self.included_paths:
            return True
        normalized = path.replace("\\", "/").strip("/")
        for included in self.included_paths:
            if normalized == included or normalized.startswith(included + "/"):
                return True
        return False

    # ------------------------------------------------------------------
    # Persistence boundary
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["included_paths"] = ",".join(self.included_paths)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarginaliaConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    @classmethod
    def from_env(cls) -> "MarginaliaConfig":
        defaults = cls()
        return cls(
            inference_host=os.environ.get("MARGINALIA_INFERENCE_HOST", defaults.inference_host),
            inference_port=os.environ.get("MARGINALIA_INFERENCE_PORT", defaults.inference_port),
            embedding_model=os.environ.get("MARGINALIA_EMBED_MODEL", defaults.embedding_model),
            generation_model=os.environ.get("MARGINALIA_GENERATION_MODEL", defaults.generation_model),
            chunk_size=int(os.environ.get("MARGINALIA_CHUNK_SIZE", str(defaults.chunk_size))),
            similarity_threshold=float(
                os.environ.get("MARGINALIA_SIMILARITY_THRESHOLD", str(defaults.similarity_threshold))
            ),
            included_paths=parse_included_paths(os.environ.get("MARGINALIA_INCLUDED_PATHS", "")),
            indexing_enabled=_env_bool("MARGINALIA_INDEXING_ENABLED", defaults.indexing_enabled),
            highlight_color=os.environ.get("MARGINALIA_HIGHLIGHT_COLOR", defaults.highlight_color),
            vault_root=os.environ.get("MARGINALIA_VAULT_ROOT", defaults.vault_root),
            data_dir=os.environ.get("MARGINALIA_DATA_DIR", defaults.data_dir),
            debounce_seconds=float(
                os.environ.get("MARGINALIA_DEBOUNCE_SECONDS", str(defaults.debounce_seconds))
            ),
            sweep_interval=float(
                os.environ.get("MARGINALIA_SWEEP_INTERVAL", str(defaults.sweep_interval))
            ),
        )
