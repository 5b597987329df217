"""Exception hierarchy for the memory optimization layer."""

from __future__ import annotations


class MemoryOptError(Exception):
    """Base class for errors raised by ``memoryopt``."""


class CacheError(MemoryOptError):
    """Distributed cache tier failure. Never escapes :mod:`memoryopt.distributed`."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class EmbeddingError(MemoryOptError):
    """The embedding model failed to produce a vector."""


class InvalidEmbeddingError(EmbeddingError):
    """The embedding model returned a malformed vector."""


class StoreCapabilityError(MemoryOptError):
    """A store operation was requested that the store does not declare."""


class ContextRetrievalError(MemoryOptError):
    """Contextual aggregation failed at ``stage``."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"Failed to retrieve contextual memories ({stage}): {message}")
        self.stage = stage


__all__ = [
    "MemoryOptError",
    "CacheError",
    "EmbeddingError",
    "InvalidEmbeddingError",
    "StoreCapabilityError",
    "ContextRetrievalError",
]
