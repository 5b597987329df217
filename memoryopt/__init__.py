"""Caching, batching and lazy embedding in front of an agent memory store."""

from .batch import BatchOperations
from .bus import MessageBus
from .cache import LocalCache
from .config import Settings
from .context import ContextualMemories, format_context
from .distributed import CacheResult, DistributedCache, DistributedCacheConfig
from .embedding import (
    EmbeddingModel,
    HashEmbeddingModel,
    HTTPEmbeddingModel,
    LazyEmbedder,
    should_embed_now,
    validate_embedding,
)
from .errors import (
    CacheError,
    ContextRetrievalError,
    EmbeddingError,
    InvalidEmbeddingError,
    MemoryOptError,
    StoreCapabilityError,
)
from .keys import UNDEFINED, encode_key
from .metrics import MetricsCollector
from .models import (
    BatchResult,
    BusEvent,
    ContextMetadata,
    ContextResult,
    MemoryContent,
    MemoryMetadata,
    MemoryRecord,
)
from .retrieval import CachedMemories, CacheLookup
from .store import InMemoryMemoryStore, MemoryStore, StoreCapability
from .system import MemorySystem

__all__ = [
    "BatchOperations",
    "BatchResult",
    "BusEvent",
    "CacheError",
    "CacheLookup",
    "CacheResult",
    "CachedMemories",
    "ContextMetadata",
    "ContextResult",
    "ContextRetrievalError",
    "ContextualMemories",
    "DistributedCache",
    "DistributedCacheConfig",
    "EmbeddingError",
    "EmbeddingModel",
    "HTTPEmbeddingModel",
    "HashEmbeddingModel",
    "InMemoryMemoryStore",
    "InvalidEmbeddingError",
    "LazyEmbedder",
    "LocalCache",
    "MemoryContent",
    "MemoryMetadata",
    "MemoryOptError",
    "MemoryRecord",
    "MemoryStore",
    "MemorySystem",
    "MessageBus",
    "MetricsCollector",
    "Settings",
    "StoreCapability",
    "UNDEFINED",
    "encode_key",
    "format_context",
    "should_embed_now",
    "validate_embedding",
]
