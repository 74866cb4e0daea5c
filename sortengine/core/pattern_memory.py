"""
Correction memory.

Every explicit user correction becomes a LearnedPattern keyed by the
file's content fingerprint. An exact fingerprint hit short-circuits the
whole provider cascade; near-duplicates are found by cosine KNN.

Also keeps a light processing history (what was assigned where, and
whether the user overrode it) for per-category statistics.
"""

import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import PatternNotFound
from .persistence import Namespace, PersistenceBackend
from .vectors import BruteForceIndex, SimilarityIndex, as_vector, to_list
from ..utils.clock import Clock, get_clock

logger = logging.getLogger(__name__)


@dataclass
class LearnedPattern:
    """A user correction remembered for one file fingerprint."""

    fingerprint: str
    embedding: np.ndarray
    label: str
    original_label: Optional[str] = None
    confidence: float = 1.0
    hit_count: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_record(self) -> Dict:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "embedding": to_list(self.embedding),
            "label": self.label,
            "original_label": self.original_label,
            "confidence": self.confidence,
            "hit_count": self.hit_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict) -> "LearnedPattern":
        return cls(
            fingerprint=record["fingerprint"],
            embedding=as_vector(record["embedding"]),
            label=record["label"],
            original_label=record.get("original_label"),
            confidence=record.get("confidence", 1.0),
            hit_count=record.get("hit_count", 0),
            id=record["id"],
            created_at=record.get("created_at", 0.0),
            updated_at=record.get("updated_at", 0.0),
        )


@dataclass
class ProcessingRecord:
    """One categorization outcome for one file."""

    fingerprint: str
    file_path: str
    category: str
    confidence: float
    from_memory: bool = False
    overridden: bool = False
    processed_at: float = 0.0


class PatternMemory:
    """
    Exact and near-duplicate correction lookup.

    Usage:
        memory = PatternMemory()
        memory.learn(fingerprint, vector, "Finance/Taxes", original_label="Documents")

        pattern = memory.find_by_checksum(fingerprint)
        if pattern:
            memory.record_hit(pattern.id)
            return pattern.label
    """

    NAMESPACE = "patterns"

    def __init__(
        self,
        config: Optional[Dict] = None,
        persistence: Optional[PersistenceBackend] = None,
        clock: Optional[Clock] = None,
        index: Optional[SimilarityIndex] = None,
    ):
        """
        Initialize pattern memory.

        Args:
            config: Configuration with:
                - max_history: Processing records kept in memory (default: 10000)
            persistence: Optional backend for write-through storage
            clock: Time source (default: system clock)
            index: Nearest-neighbour index (default: brute force)
        """
        config = config or {}
        self.max_history = int(config.get("max_history", 10000))

        self._clock = clock or get_clock()
        self._store = Namespace(persistence, self.NAMESPACE)
        self._index = index or BruteForceIndex()
        self._patterns: Dict[str, LearnedPattern] = {}
        self._by_fingerprint: Dict[str, str] = {}
        self._history: List[ProcessingRecord] = []
        self._lock = threading.Lock()

        self._load()

    def _load(self) -> None:
        for key, record in self._store.load_all():
            try:
                pattern = LearnedPattern.from_record(record)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping corrupt pattern record {key}: {e}")
                continue
            self._index_pattern(pattern)
        if self._patterns:
            logger.info(f"Loaded {len(self._patterns)} learned patterns")

    def _index_pattern(self, pattern: LearnedPattern) -> None:
        self._patterns[pattern.id] = pattern
        self._by_fingerprint[pattern.fingerprint] = pattern.id
        self._index.upsert(pattern.id, pattern.embedding)

    def _drop(self, pattern_id: str) -> None:
        pattern = self._patterns.pop(pattern_id)
        self._by_fingerprint.pop(pattern.fingerprint, None)
        self._index.remove(pattern_id)
        self._store.remove(pattern_id)

    def find_by_checksum(self, fingerprint: str) -> Optional[LearnedPattern]:
        with self._lock:
            pattern_id = self._by_fingerprint.get(fingerprint)
            return self._patterns.get(pattern_id) if pattern_id else None

    def get(self, pattern_id: str) -> Optional[LearnedPattern]:
        with self._lock:
            return self._patterns.get(pattern_id)

    def query_nearest(
        self, embedding: Sequence[float], k: int = 5, min_similarity: Optional[float] = None
    ) -> List[Tuple[LearnedPattern, float]]:
        """k most similar patterns by cosine similarity, best first."""
        vector = as_vector(embedding)
        floor = -1.0 if min_similarity is None else min_similarity
        with self._lock:
            hits = self._index.search(vector, k, floor)
            return [(self._patterns[pid], score) for pid, score in hits]

    def find_best_match(
        self, embedding: Sequence[float], min_similarity: Optional[float] = None
    ) -> Optional[Tuple[LearnedPattern, float]]:
        matches = self.query_nearest(embedding, k=1, min_similarity=min_similarity)
        return matches[0] if matches else None

    def save(self, pattern: LearnedPattern) -> LearnedPattern:
        """
        Create or overwrite the pattern for `pattern.fingerprint`.

        An existing pattern for the same fingerprint keeps its id and
        creation time; everything else is replaced.
        """
        now = self._clock.now()
        pattern.embedding = as_vector(pattern.embedding)
        with self._lock:
            existing_id = self._by_fingerprint.get(pattern.fingerprint)
            if existing_id is not None and existing_id != pattern.id:
                existing = self._patterns[existing_id]
                self._index.remove(existing.id)
                self._patterns.pop(existing.id)
                pattern.id = existing.id
                pattern.created_at = existing.created_at
            if not pattern.created_at:
                pattern.created_at = now
            pattern.updated_at = now
            self._index_pattern(pattern)
            self._store.save(pattern.id, pattern.to_record())
        logger.debug(f"Saved pattern {pattern.id} → '{pattern.label}'")
        return pattern

    update = save

    def learn(
        self,
        fingerprint: str,
        embedding: Sequence[float],
        label: str,
        original_label: Optional[str] = None,
        confidence: float = 1.0,
    ) -> LearnedPattern:
        """Record a correction for a file."""
        pattern = LearnedPattern(
            fingerprint=fingerprint,
            embedding=as_vector(embedding),
            label=label,
            original_label=original_label,
            confidence=confidence,
        )
        return self.save(pattern)

    def record_hit(self, pattern_id: str) -> LearnedPattern:
        """
        Count a repeat match.

        Raises:
            PatternNotFound: If no pattern has this id
        """
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                raise PatternNotFound(pattern_id)
            pattern.hit_count += 1
            pattern.updated_at = self._clock.now()
            self._store.save(pattern.id, pattern.to_record())
            return pattern

    def delete(self, pattern_id: str) -> bool:
        with self._lock:
            if pattern_id not in self._patterns:
                return False
            self._drop(pattern_id)
            return True

    def prune(self, min_confidence: float = 0.3, min_hits: int = 0) -> int:
        """
        Remove patterns that are both unconfident and rarely matched.

        A pattern goes when confidence < min_confidence and
        hit_count <= min_hits.
        """
        with self._lock:
            weak = [
                pid for pid, p in self._patterns.items()
                if p.confidence < min_confidence and p.hit_count <= min_hits
            ]
            for pid in weak:
                self._drop(pid)
        if weak:
            logger.info(f"Pruned {len(weak)} weak patterns")
        return len(weak)

    def patterns_for_label(self, label: str) -> List[LearnedPattern]:
        with self._lock:
            return [p for p in self._patterns.values() if p.label == label]

    def all_labels(self) -> List[str]:
        with self._lock:
            return sorted({p.label for p in self._patterns.values()})

    def count(self) -> int:
        return len(self._patterns)

    def get_correction_patterns(self) -> Dict[str, Dict[str, int]]:
        """How often each original label was corrected to each new label."""
        corrections: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        with self._lock:
            for p in self._patterns.values():
                if p.original_label and p.original_label != p.label:
                    corrections[p.original_label][p.label] += 1
        return {k: dict(v) for k, v in corrections.items()}

    def record_processing(self, record: ProcessingRecord) -> None:
        if not record.processed_at:
            record.processed_at = self._clock.now()
        with self._lock:
            self._history.append(record)
            if len(self._history) > self.max_history:
                self._history = self._history[-self.max_history:]

    def was_processed(self, fingerprint: str) -> Optional[ProcessingRecord]:
        """Latest processing record for a fingerprint."""
        with self._lock:
            for record in reversed(self._history):
                if record.fingerprint == fingerprint:
                    return record
        return None

    def history_for_category(self, category: str, limit: int = 100) -> List[ProcessingRecord]:
        with self._lock:
            matches = [r for r in reversed(self._history) if r.category == category]
        return matches[:limit]

    def category_statistics(self) -> List[Dict]:
        """Per-category file count, mean confidence, override rate and last use."""
        with self._lock:
            grouped: Dict[str, List[ProcessingRecord]] = defaultdict(list)
            for record in self._history:
                grouped[record.category].append(record)
        stats = []
        for category, records in grouped.items():
            total = len(records)
            stats.append({
                "category": category,
                "total_files": total,
                "avg_confidence": sum(r.confidence for r in records) / total,
                "override_rate": sum(1 for r in records if r.overridden) / total,
                "last_used": max(r.processed_at for r in records),
            })
        stats.sort(key=lambda s: s["total_files"], reverse=True)
        return stats
