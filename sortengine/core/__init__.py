"""
Core modules for SortEngine.

This package contains the categorization pipeline:
- embedding_cache: Memoized file embeddings with TTL and size pruning
- prototype_store: Learned category centroids (EMA updates, decay)
- pattern_memory: User corrections by fingerprint and near-duplicates
- confidence: Calibrated scoring, outcomes and precision tracking
- backoff: Per-provider health and exponential backoff
- orchestrator: Provider cascade with escalation and routing modes
- engine: Decision pipeline tying the above together
"""

from .confidence import ConfidenceEngine, ConfidenceOutcome, ConfidenceResult
from .embedding_cache import EmbeddingCache, EmbeddingCacheKey
from .errors import (
    AllProvidersFailed,
    DimensionMismatch,
    PatternNotFound,
    PersistenceUnavailable,
    PrototypeNotFound,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    SortEngineError,
)
from .pattern_memory import LearnedPattern, PatternMemory
from .prototype_store import Prototype, PrototypeStore

__all__ = [
    "orchestrator",
    "engine",
    "ConfidenceEngine",
    "ConfidenceOutcome",
    "ConfidenceResult",
    "EmbeddingCache",
    "EmbeddingCacheKey",
    "LearnedPattern",
    "PatternMemory",
    "Prototype",
    "PrototypeStore",
    "SortEngineError",
    "ProviderError",
    "ProviderUnavailable",
    "ProviderTimeout",
    "AllProvidersFailed",
    "DimensionMismatch",
    "PrototypeNotFound",
    "PatternNotFound",
    "PersistenceUnavailable",
]
