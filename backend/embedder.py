"""
Embedding module for Marginalia.

Talks to an Ollama-compatible inference service over HTTP for embeddings,
text generation (chunk boundaries, summaries) and model availability.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

import httpx

from config import MarginaliaConfig
from errors import MalformedResponse, MarginaliaError, ServiceUnavailable
from models import has_meaningful_text

PROBE_TIMEOUT = 5.0
CHARS_PER_TOKEN = 4


def estimate_token_count(text: str) -> int:
    """Rough estimate: ~4 characters per token for English text."""
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def model_installed(required: str, installed: List[str]) -> bool:
    """Exact name match, or any installed model of the same family."""
    family = required.split(":")[0]
    return any(name == required or name.startswith(family) for name in installed)


@dataclass
class CallResult:
    """Outcome of an inference call: a value, or the failure that prevented it."""

    value: Any = None
    error: Optional[MarginaliaError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> "CallResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: MarginaliaError) -> "CallResult":
        return cls(error=error)


@dataclass
class ProbeResult:
    available: bool
    installed: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    error: Optional[str] = None


class InferenceClient:
    """Embedding and generation calls against the inference service."""

    def __init__(
        self,
        config: Optional[MarginaliaConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Backend configuration (host, port, models, timeouts)
            transport: Optional httpx transport, used to stub the service in tests
        """
        self.config = config or MarginaliaConfig()
        self._http = httpx.Client(
            base_url=self.config.base_url,
            timeout=self.config.request_timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self._rate_lock = threading.Lock()
        self._last_request = 0.0
        self.available: Optional[bool] = None

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _throttle(self) -> None:
        interval = self.config.min_request_interval
        if interval <= 0:
            return
        with self._rate_lock:
            wait = self._last_request + interval - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_request = time.monotonic()

    def _request(self, method: str, path: str, payload=None, timeout=None) -> CallResult:
        self._throttle()
        try:
            response = self._http.request(
                method,
                path,
                json=payload,
                timeout=timeout if timeout is not None else self.config.request_timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            return CallResult.failure(ServiceUnavailable(f"{method} {path} timed out: {exc}"))
        except httpx.HTTPError as exc:
            return CallResult.failure(ServiceUnavailable(f"{method} {path} failed: {exc}"))

        try:
            data = response.json()
        except ValueError as exc:
            return CallResult.failure(MalformedResponse(f"{path} returned invalid JSON: {exc}"))
        if not isinstance(data, dict):
            return CallResult.failure(MalformedResponse(f"{path} returned {type(data).__name__}"))
        return CallResult.success(data)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def probe(self) -> ProbeResult:
        """Check that the service is up and both configured models are installed."""
        result = self._request("GET", "/tags", timeout=PROBE_TIMEOUT)
        if not result.ok:
            self.available = False
            return ProbeResult(available=False, error=str(result.error))

        models = result.value.get("models") or []
        installed = [
            str(m.get("name") or m.get("model") or "") for m in models if isinstance(m, dict)
        ]
        required = [self.config.embedding_model, self.config.generation_model]
        missing = [name for name in required if not model_installed(name, installed)]
        self.available = not missing
        return ProbeResult(available=self.available, installed=installed, missing=missing)

    def is_available(self) -> bool:
        if self.available is None:
            self.probe()
        return bool(self.available)

    def chunk_timeout(self, text_length: int) -> float:
        """Timeout for a chunk-boundary request, scaled by document size."""
        scaled = self.config.chunk_timeout_base + (
            text_length / 1000.0
        ) * self.config.chunk_timeout_per_1000_chars
        return min(scaled, self.config.chunk_timeout_cap)

    def generate(self, prompt: str, timeout: Optional[float] = None) -> CallResult:
        payload = {"model": self.config.generation_model, "prompt": prompt, "stream": False}
        result = self._request("POST", "/generate", payload, timeout=timeout)
        if not result.ok:
            return result
        text = result.value.get("response")
        if not isinstance(text, str):
            return CallResult.failure(MalformedResponse("Generation response has no text"))
        return CallResult.success(text)

    def summarize(self, text: str) -> str:
        """Summarize long text; falls back to the original text on any failure."""
        prompt = (
            "Please provide a concise summary of the following text. The summary should be "
            f"under {self.config.summarize_token_threshold} tokens and capture the key points:"
            f"\n\n{text}"
        )
        result = self.generate(prompt)
        if not result.ok or not result.value.strip():
            print(f"Summarization failed, embedding original text: {result.error}")
            return text
        return result.value

    def embed_result(self, text: str) -> CallResult:
        """Embed `text`, summarizing it first when it exceeds the token threshold."""
        if not has_meaningful_text(text):
            return CallResult.failure(MalformedResponse("Nothing meaningful to embed"))

        final_text = text
        if estimate_token_count(text) > self.config.summarize_token_threshold:
            final_text = self.summarize(text)

        payload = {"model": self.config.embedding_model, "prompt": final_text}
        result = self._request("POST", "/embeddings", payload)
        if not result.ok:
            return result
        embedding = result.value.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            return CallResult.failure(MalformedResponse("Invalid embedding response format"))
        try:
            return CallResult.success([float(v) for v in embedding])
        except (TypeError, ValueError):
            return CallResult.failure(MalformedResponse("Embedding contains non-numeric values"))

    def embed(self, text: str) -> Optional[List[float]]:
        """
        Convert text to an embedding vector.

        Args:
            text: Text to embed

        Returns:
            The embedding, or None when the text is empty or the call failed
        """
        if not has_meaningful_text(text):
            return None
        result = self.embed_result(text)
        if not result.ok:
            print(f"Embedding failed: {result.error}")
            return None
        return result.value
