"""
Category prototype store.

One EMA-averaged embedding per category path. Prototypes gain confidence
with every assignment (twice as fast for user-confirmed ones), lose it
slowly with age, and can be shared between linked folders.

Search over prototypes is brute-force cosine through a SimilarityIndex;
fine up to a few thousand categories. Swap in an ANN index beyond that.
"""

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from .errors import PrototypeNotFound
from .persistence import Namespace, PersistenceBackend
from .vectors import (
    BruteForceIndex,
    SimilarityIndex,
    as_vector,
    check_dimensions,
    ema_blend,
    normalize,
    to_list,
)
from ..utils.clock import SECONDS_PER_DAY, Clock, get_clock

logger = logging.getLogger(__name__)

CONFIDENCE_FLOOR = 0.1
INITIAL_CONFIDENCE = 0.5
INITIAL_CONFIRMED_CONFIDENCE = 0.7
CLASSIFY_MIN_SIMILARITY = 0.3

PROFILES: Dict[str, Dict] = {
    "default": {
        "ema_decay": 0.9,
        "min_samples_for_reliability": 3,
        "max_confidence": 0.95,
        "confidence_boost": 0.05,
        "decay_rate": 0.01,
    },
    "aggressive": {
        "ema_decay": 0.7,
        "min_samples_for_reliability": 2,
        "max_confidence": 0.95,
        "confidence_boost": 0.1,
        "decay_rate": 0.02,
    },
    "conservative": {
        "ema_decay": 0.95,
        "min_samples_for_reliability": 5,
        "max_confidence": 0.9,
        "confidence_boost": 0.03,
        "decay_rate": 0.005,
    },
}


class PrototypeScope(Enum):
    FOLDER_SCOPED = "folder_scoped"
    SHARED = "shared"
    GLOBAL = "global"


def normalize_category_path(category_path: str) -> str:
    """Trim each '/' component and drop empty ones."""
    parts = [p.strip() for p in category_path.split("/")]
    return "/".join(p for p in parts if p)


def prototype_id(category_path: str) -> str:
    """Deterministic id of a category path (case-insensitive)."""
    key = normalize_category_path(category_path).lower()
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


@dataclass
class Prototype:
    """Running-average embedding of a category's typical file."""

    category_path: str
    embedding: np.ndarray
    sample_count: int = 1
    confidence: float = INITIAL_CONFIDENCE
    version: int = 1
    scope: PrototypeScope = PrototypeScope.FOLDER_SCOPED
    linked_folders: Set[str] = field(default_factory=set)
    created_at: float = 0.0
    updated_at: float = 0.0
    decayed_at: float = 0.0

    @property
    def id(self) -> str:
        return prototype_id(self.category_path)

    @property
    def category_name(self) -> str:
        return self.category_path.rsplit("/", 1)[-1]

    @property
    def dimensions(self) -> int:
        return int(self.embedding.shape[0])

    def to_record(self) -> Dict:
        return {
            "category_path": self.category_path,
            "embedding": to_list(self.embedding),
            "sample_count": self.sample_count,
            "confidence": self.confidence,
            "version": self.version,
            "scope": self.scope.value,
            "linked_folders": sorted(self.linked_folders),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "decayed_at": self.decayed_at,
        }

    @classmethod
    def from_record(cls, record: Dict) -> "Prototype":
        return cls(
            category_path=record["category_path"],
            embedding=as_vector(record["embedding"]),
            sample_count=record.get("sample_count", 1),
            confidence=record.get("confidence", INITIAL_CONFIDENCE),
            version=record.get("version", 1),
            scope=PrototypeScope(record.get("scope", "folder_scoped")),
            linked_folders=set(record.get("linked_folders", [])),
            created_at=record.get("created_at", 0.0),
            updated_at=record.get("updated_at", 0.0),
            decayed_at=record.get("decayed_at", 0.0),
        )


@dataclass(frozen=True)
class Classification:
    category_path: str
    similarity: float
    confidence: float


class PrototypeStore:
    """
    Stores and updates category prototypes.

    All access is serialized by one lock per store instance.

    Usage:
        store = PrototypeStore({"profile": "default"})
        store.update("Work/Invoices", vector)
        match = store.classify(query_vector, min_confidence=0.5)
    """

    NAMESPACE = "prototypes"

    def __init__(
        self,
        config: Optional[Dict] = None,
        persistence: Optional[PersistenceBackend] = None,
        clock: Optional[Clock] = None,
        index: Optional[SimilarityIndex] = None,
    ):
        """
        Initialize prototype store.

        Args:
            config: Configuration with:
                - profile: 'default', 'aggressive' or 'conservative'
                - ema_decay, max_confidence, confidence_boost, decay_rate,
                  min_samples_for_reliability: override the profile values
                - dimensions: Expected vector size (default: first stored vector)
            persistence: Optional backend for write-through storage
            clock: Time source (default: system clock)
            index: Nearest-neighbour index (default: brute force)
        """
        config = config or {}
        profile_name = config.get("profile", "default")
        if profile_name not in PROFILES:
            raise ValueError(f"Unknown prototype profile: '{profile_name}'")
        settings = {**PROFILES[profile_name], **{
            k: v for k, v in config.items() if k in PROFILES["default"]
        }}

        self.profile = profile_name
        self.ema_decay = float(settings["ema_decay"])
        self.max_confidence = float(settings["max_confidence"])
        self.confidence_boost = float(settings["confidence_boost"])
        self.decay_rate = float(settings["decay_rate"])
        self.min_samples_for_reliability = int(settings["min_samples_for_reliability"])
        self.dimensions: Optional[int] = config.get("dimensions")

        self._clock = clock or get_clock()
        self._store = Namespace(persistence, self.NAMESPACE)
        self._index = index or BruteForceIndex()
        self._prototypes: Dict[str, Prototype] = {}
        self._lock = threading.Lock()

        self._load()

    def _load(self) -> None:
        for key, record in self._store.load_all():
            try:
                prototype = Prototype.from_record(record)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping corrupt prototype record {key}: {e}")
                continue
            if self.dimensions is None:
                self.dimensions = prototype.dimensions
            elif prototype.dimensions != self.dimensions:
                logger.warning(
                    f"Skipping prototype '{prototype.category_path}': "
                    f"{prototype.dimensions} dims, store uses {self.dimensions}"
                )
                continue
            self._prototypes[prototype.id] = prototype
            self._index.upsert(prototype.id, prototype.embedding)
        if self._prototypes:
            logger.info(f"Loaded {len(self._prototypes)} prototypes")

    def _checked(self, embedding: Sequence[float]) -> np.ndarray:
        vector = as_vector(embedding)
        if self.dimensions is None:
            self.dimensions = int(vector.shape[0])
        check_dimensions(vector, self.dimensions)
        return vector

    def _put(self, prototype: Prototype) -> None:
        self._prototypes[prototype.id] = prototype
        self._index.upsert(prototype.id, prototype.embedding)
        self._store.save(prototype.id, prototype.to_record())

    def get(self, category_path: str) -> Optional[Prototype]:
        with self._lock:
            return self._prototypes.get(prototype_id(category_path))

    def all(self) -> List[Prototype]:
        with self._lock:
            return list(self._prototypes.values())

    def __len__(self) -> int:
        return len(self._prototypes)

    def update(self, category_path: str, embedding: Sequence[float], confirmed: bool = False) -> Prototype:
        """
        Fold a newly assigned file into its category's prototype.

        Args:
            category_path: Category the file was assigned to
            embedding: The file's embedding
            confirmed: True when a user confirmed or corrected the assignment

        Returns:
            The updated (or newly created) prototype

        Raises:
            DimensionMismatch: If the vector size differs from the store's
        """
        path = normalize_category_path(category_path)
        if not path:
            raise ValueError("Category path must not be empty")

        with self._lock:
            vector = self._checked(embedding)
            now = self._clock.now()
            existing = self._prototypes.get(prototype_id(path))

            if existing is None:
                prototype = Prototype(
                    category_path=path,
                    embedding=normalize(vector),
                    confidence=INITIAL_CONFIRMED_CONFIDENCE if confirmed else INITIAL_CONFIDENCE,
                    created_at=now,
                    updated_at=now,
                )
                self._put(prototype)
                logger.debug(f"Created prototype '{path}' (confirmed: {confirmed})")
                return prototype

            boost = self.confidence_boost * (2 if confirmed else 1)
            existing.embedding = ema_blend(existing.embedding, vector, self.ema_decay)
            existing.sample_count += 1
            existing.version += 1
            existing.confidence = min(self.max_confidence, existing.confidence + boost)
            existing.updated_at = now
            self._put(existing)
            logger.debug(
                f"Updated prototype '{path}' v{existing.version} "
                f"(samples: {existing.sample_count}, confidence: {existing.confidence:.2f})"
            )
            return existing

    def set(self, prototype: Prototype) -> None:
        """Insert or replace a prototype wholesale."""
        with self._lock:
            prototype.embedding = normalize(self._checked(prototype.embedding))
            prototype.category_path = normalize_category_path(prototype.category_path)
            current = self._prototypes.get(prototype.id)
            if current is not None and prototype.version <= current.version:
                prototype.version = current.version + 1
            self._put(prototype)

    def delete(self, category_path: str) -> bool:
        with self._lock:
            pid = prototype_id(category_path)
            if self._prototypes.pop(pid, None) is None:
                return False
            self._index.remove(pid)
            self._store.remove(pid)
            return True

    def find_similar(
        self, embedding: Sequence[float], k: int = 5, min_similarity: float = 0.0
    ) -> List[Tuple[Prototype, float]]:
        """Top-k prototypes by cosine similarity, most similar first."""
        with self._lock:
            if not self._prototypes:
                return []
            vector = self._checked(embedding)
            hits = self._index.search(vector, k, min_similarity)
            return [(self._prototypes[pid], score) for pid, score in hits]

    def classify(self, embedding: Sequence[float], min_confidence: float = 0.5) -> Optional[Classification]:
        """
        Best category for a vector.

        Confidence is the prototype's confidence scaled by similarity;
        None when nothing is similar enough or confident enough.
        """
        matches = self.find_similar(embedding, k=1, min_similarity=CLASSIFY_MIN_SIMILARITY)
        if not matches:
            return None
        prototype, similarity = matches[0]
        adjusted = prototype.confidence * similarity
        if adjusted < min_confidence:
            return None
        return Classification(prototype.category_path, similarity, adjusted)

    def link_folders(self, folder_paths: Sequence[str], category_path: str) -> Prototype:
        """
        Share a category's prototype across folders.

        Raises:
            PrototypeNotFound: If the category has no prototype yet
        """
        with self._lock:
            prototype = self._prototypes.get(prototype_id(category_path))
            if prototype is None:
                raise PrototypeNotFound(category_path)
            prototype.linked_folders.update(folder_paths)
            prototype.scope = PrototypeScope.SHARED
            prototype.version += 1
            prototype.updated_at = self._clock.now()
            self._put(prototype)
            return prototype

    def unlink_folder(self, folder_path: str, category_path: str) -> Optional[Prototype]:
        """Detach one folder; the last detach reverts the scope. Unknown categories are ignored."""
        with self._lock:
            prototype = self._prototypes.get(prototype_id(category_path))
            if prototype is None:
                return None
            prototype.linked_folders.discard(folder_path)
            if not prototype.linked_folders:
                prototype.scope = PrototypeScope.FOLDER_SCOPED
            prototype.version += 1
            prototype.updated_at = self._clock.now()
            self._put(prototype)
            return prototype

    def apply_confidence_decay(self) -> int:
        """
        Age every prototype's confidence by `decay_rate` per idle day.

        Idle time counts from the later of the last update and the last
        decay pass. Confidence never drops below 0.1.

        Returns:
            Number of prototypes whose confidence changed
        """
        now = self._clock.now()
        changed = 0
        with self._lock:
            for prototype in self._prototypes.values():
                since = max(prototype.updated_at, prototype.decayed_at)
                days = max(0.0, now - since) / SECONDS_PER_DAY
                decayed = max(CONFIDENCE_FLOOR, prototype.confidence - self.decay_rate * days)
                prototype.decayed_at = now
                if decayed != prototype.confidence:
                    prototype.confidence = decayed
                    prototype.version += 1
                    changed += 1
                self._store.save(prototype.id, prototype.to_record())
        if changed:
            logger.info(f"Applied confidence decay to {changed} prototypes")
        return changed

    def prune_weak(self, min_confidence: float = 0.2, min_samples: int = 1) -> int:
        """
        Remove prototypes that are both unconfident and barely sampled.

        A prototype goes when confidence < min_confidence and
        sample_count <= min_samples.
        """
        with self._lock:
            weak = [
                pid for pid, p in self._prototypes.items()
                if p.confidence < min_confidence and p.sample_count <= min_samples
            ]
            for pid in weak:
                del self._prototypes[pid]
                self._index.remove(pid)
                self._store.remove(pid)
        if weak:
            logger.info(f"Pruned {len(weak)} weak prototypes")
        return len(weak)

    def is_reliable(self, prototype: Prototype) -> bool:
        return prototype.sample_count >= self.min_samples_for_reliability

    def statistics(self) -> Dict:
        with self._lock:
            prototypes = list(self._prototypes.values())
        count = len(prototypes)
        return {
            "total_prototypes": count,
            "shared_prototypes": sum(1 for p in prototypes if p.scope == PrototypeScope.SHARED),
            "average_confidence": sum(p.confidence for p in prototypes) / count if count else 0.0,
            "average_sample_count": sum(p.sample_count for p in prototypes) / count if count else 0.0,
            "reliable_count": sum(1 for p in prototypes if self.is_reliable(p)),
            "profile": self.profile,
        }
