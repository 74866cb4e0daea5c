"""
Embedding cache keyed by filename + parent path (+ size).

Avoids recomputing vectors for files that were already seen, e.g. across
repeated scans of a watched folder. Eviction is TTL on last access, then
least-hit / least-recently-accessed once the cache overflows.
"""

import hashlib
import logging
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

import numpy as np

from .persistence import Namespace, PersistenceBackend
from .vectors import as_vector, to_list
from ..utils.clock import SECONDS_PER_DAY, Clock, get_clock

logger = logging.getLogger(__name__)


class EmbeddingType(Enum):
    FILENAME = "filename"
    CONTENT = "content"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class EmbeddingCacheKey:
    """Identity of a file for caching purposes."""

    filename: str
    parent_path: str
    file_size: Optional[int] = None

    @property
    def hash(self) -> str:
        """16 hex chars of SHA-256 over the case-folded key tuple."""
        parts = [self.filename.lower(), self.parent_path.lower()]
        if self.file_size is not None:
            parts.append(str(self.file_size))
        digest = hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
        return digest[:16]


@dataclass
class CacheEntry:
    """A cached embedding vector."""

    id: str
    filename: str
    parent_path: str
    embedding: np.ndarray
    model: str
    embedding_type: EmbeddingType = EmbeddingType.FILENAME
    created_at: float = 0.0
    last_accessed_at: float = 0.0
    hit_count: int = 0
    dimensions: int = field(init=False)

    def __post_init__(self):
        self.dimensions = int(self.embedding.shape[0])

    def to_record(self) -> Dict:
        record = asdict(self)
        record["embedding"] = to_list(self.embedding)
        record["embedding_type"] = self.embedding_type.value
        return record

    @classmethod
    def from_record(cls, record: Dict) -> "CacheEntry":
        return cls(
            id=record["id"],
            filename=record["filename"],
            parent_path=record["parent_path"],
            embedding=as_vector(record["embedding"]),
            model=record["model"],
            embedding_type=EmbeddingType(record.get("embedding_type", "filename")),
            created_at=record.get("created_at", 0.0),
            last_accessed_at=record.get("last_accessed_at", 0.0),
            hit_count=record.get("hit_count", 0),
        )


class EmbeddingCache:
    """
    Memoizes embedding vectors.

    Usage:
        cache = EmbeddingCache(config)

        key = EmbeddingCacheKey("report.pdf", "/home/me/Work", 12034)
        entry = cache.get(key)
        if entry is None:
            vector = embedder.embed_file(...)
            cache.set(key, vector, model=embedder.model_id)
    """

    NAMESPACE = "embedding_cache"

    def __init__(
        self,
        config: Optional[Dict] = None,
        persistence: Optional[PersistenceBackend] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize embedding cache.

        Args:
            config: Configuration with:
                - max_cache_size: Maximum number of entries (default: 100000)
                - ttl_days: Days since last access before expiry (default: 90)
                - prune_threshold: Fraction of max that triggers a prune on write (default: 0.9)
            persistence: Optional backend for write-through storage
            clock: Time source (default: system clock)
        """
        config = config or {}
        self.max_cache_size = int(config.get("max_cache_size", 100000))
        self.ttl_days = float(config.get("ttl_days", 90))
        self.prune_threshold = float(config.get("prune_threshold", 0.9))

        self._clock = clock or get_clock()
        self._store = Namespace(persistence, self.NAMESPACE)
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

        self._load()

    def _load(self) -> None:
        for key, record in self._store.load_all():
            try:
                self._entries[key] = CacheEntry.from_record(record)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping corrupt cache record {key}: {e}")
        if self._entries:
            logger.info(f"Loaded {len(self._entries)} cached embeddings")

    def get(self, key: EmbeddingCacheKey) -> Optional[CacheEntry]:
        """Return the cached entry and record the access, or None on a miss."""
        entry_id = key.hash
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                self._stats["misses"] += 1
                return None
            self._stats["hits"] += 1
            entry.hit_count += 1
            entry.last_accessed_at = self._clock.now()
            self._store.save(entry_id, entry.to_record())
            return entry

    def set(
        self,
        key: EmbeddingCacheKey,
        embedding: Sequence[float],
        model: str,
        embedding_type: EmbeddingType = EmbeddingType.FILENAME,
    ) -> CacheEntry:
        """Store (or replace) the vector for a key."""
        now = self._clock.now()
        entry = CacheEntry(
            id=key.hash,
            filename=key.filename,
            parent_path=key.parent_path,
            embedding=as_vector(embedding),
            model=model,
            embedding_type=embedding_type,
            created_at=now,
            last_accessed_at=now,
        )
        with self._lock:
            self._entries[entry.id] = entry
            self._store.save(entry.id, entry.to_record())
            over_threshold = len(self._entries) > self.max_cache_size * self.prune_threshold

        if over_threshold:
            self.prune()
        return entry

    def contains(self, key: EmbeddingCacheKey) -> bool:
        with self._lock:
            return key.hash in self._entries

    def remove(self, key: EmbeddingCacheKey) -> bool:
        entry_id = key.hash
        with self._lock:
            if self._entries.pop(entry_id, None) is None:
                return False
            self._store.remove(entry_id)
            return True

    def clear(self) -> None:
        """Drop every entry and reset statistics."""
        with self._lock:
            for entry_id in list(self._entries):
                self._store.remove(entry_id)
            self._entries.clear()
            self._stats = {"hits": 0, "misses": 0, "evictions": 0}
        logger.info("Embedding cache cleared")

    def prune(self) -> int:
        """
        Evict expired entries, then shrink to 80% of max if still over it.

        Returns:
            Number of entries removed
        """
        cutoff = self._clock.now() - self.ttl_days * SECONDS_PER_DAY
        with self._lock:
            expired = [eid for eid, e in self._entries.items() if e.last_accessed_at < cutoff]
            for eid in expired:
                self._evict(eid)

            overflow = []
            if len(self._entries) > self.max_cache_size:
                excess = len(self._entries) - int(self.max_cache_size * 0.8)
                ranked = sorted(
                    self._entries.values(),
                    key=lambda e: (e.hit_count, e.last_accessed_at),
                )
                overflow = [e.id for e in ranked[:excess]]
                for eid in overflow:
                    self._evict(eid)

        removed = len(expired) + len(overflow)
        if removed:
            logger.info(
                f"Pruned {removed} cached embeddings "
                f"({len(expired)} expired, {len(overflow)} over capacity)"
            )
        return removed

    def _evict(self, entry_id: str) -> None:
        del self._entries[entry_id]
        self._store.remove(entry_id)
        self._stats["evictions"] += 1

    def entries_needing_reembedding(self, target_model: str, limit: int = 100) -> List[CacheEntry]:
        """Entries produced by another model, most-hit first."""
        with self._lock:
            stale = [e for e in self._entries.values() if e.model != target_model]
        stale.sort(key=lambda e: e.hit_count, reverse=True)
        return stale[:limit]

    def update_embedding(
        self,
        entry_id: str,
        embedding: Sequence[float],
        model: str,
        embedding_type: EmbeddingType = EmbeddingType.FILENAME,
    ) -> bool:
        """Replace the vector of an existing entry in place (keeps hit statistics)."""
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            entry.embedding = as_vector(embedding)
            entry.dimensions = int(entry.embedding.shape[0])
            entry.model = model
            entry.embedding_type = embedding_type
            entry.last_accessed_at = self._clock.now()
            self._store.save(entry_id, entry.to_record())
            return True

    def statistics_by_model(self) -> List[Dict]:
        """Entry count and mean hit count per generating model, largest first."""
        with self._lock:
            groups: Dict[str, List[int]] = {}
            for entry in self._entries.values():
                groups.setdefault(entry.model, []).append(entry.hit_count)
        rows = [
            {"model": model, "count": len(hits), "avg_hit_count": sum(hits) / len(hits)}
            for model, hits in groups.items()
        ]
        rows.sort(key=lambda r: r["count"], reverse=True)
        return rows

    def get_stats(self) -> Dict:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                "total_entries": len(self._entries),
                "cache_hits": self._stats["hits"],
                "cache_misses": self._stats["misses"],
                "evictions": self._stats["evictions"],
                "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
            }

    def __len__(self) -> int:
        return len(self._entries)
