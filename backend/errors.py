"""Failure kinds raised by the Marginalia backend."""

from __future__ import annotations


class MarginaliaError(Exception):
    """Base class for backend failures."""


class ServiceUnavailable(MarginaliaError):
    """The inference service could not be reached or timed out."""


class MalformedResponse(MarginaliaError):
    """The inference service answered without the expected JSON fields."""


class ChunkPlanningFailure(MarginaliaError):
    """Chunk boundaries could not be obtained or looked hallucinated."""


class MissingEmbedding(MarginaliaError):
    """A similarity query needs an embedding the item does not have yet."""

    def __init__(self, message: str = "No embedding available for this item"):
        super().__init__(message)


class OverlapError(MarginaliaError):
    """A new annotation would overlap an existing highlighted range."""
