"""
Vector helpers and the nearest-neighbour index.

Embeddings are float32 numpy arrays, L2-normalized wherever they are
stored. Search is brute force behind `SimilarityIndex`, so an ANN
backend can replace it without touching the stores.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import DimensionMismatch

logger = logging.getLogger(__name__)

_EPSILON = 1e-10


def as_vector(values: Iterable[float]) -> np.ndarray:
    """Convert any float sequence to a 1-D float32 array."""
    if not isinstance(values, (np.ndarray, list, tuple)):
        values = list(values)
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1:
        raise ValueError(f"Expected 1D vector, got {vector.ndim}D")
    return vector


def normalize(vector: Iterable[float]) -> np.ndarray:
    """Return the L2-normalized copy of vector. Zero vectors are returned unchanged."""
    arr = as_vector(vector)
    norm = float(np.linalg.norm(arr))
    if norm <= _EPSILON:
        return arr.copy()
    return (arr / norm).astype(np.float32)


def check_dimensions(vector: np.ndarray, expected: Optional[int]) -> None:
    """Raise DimensionMismatch unless vector has `expected` components."""
    if expected is not None and vector.shape[0] != expected:
        raise DimensionMismatch(expected, int(vector.shape[0]))


def cosine_similarity(a: Iterable[float], b: Iterable[float]) -> float:
    """Cosine similarity of two vectors, 0.0 when either is zero."""
    va = as_vector(a)
    vb = as_vector(b)
    if va.shape != vb.shape:
        raise DimensionMismatch(int(va.shape[0]), int(vb.shape[0]))
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom <= _EPSILON:
        return 0.0
    return float(np.dot(va, vb) / denom)


def ema_blend(old: np.ndarray, new: np.ndarray, decay: float) -> np.ndarray:
    """Exponential moving average `decay*old + (1-decay)*new`, renormalized."""
    if old.shape != new.shape:
        raise DimensionMismatch(int(old.shape[0]), int(new.shape[0]))
    return normalize(decay * old + (1.0 - decay) * new)


class SimilarityIndex(ABC):
    """Keyed vector collection answering top-k cosine queries."""

    @abstractmethod
    def upsert(self, key: str, vector: np.ndarray) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass

    @abstractmethod
    def search(
        self, query: np.ndarray, k: int, min_similarity: float = -1.0
    ) -> List[Tuple[str, float]]:
        """Return up to k (key, similarity) pairs, most similar first."""
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class BruteForceIndex(SimilarityIndex):
    """
    O(n) exact cosine search.

    Vectors are normalized on insert so a query is one matrix-vector
    product. The stacked matrix is rebuilt lazily after writes.
    """

    def __init__(self):
        self._vectors: Dict[str, np.ndarray] = {}
        self._keys: List[str] = []
        self._matrix: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    def upsert(self, key: str, vector: np.ndarray) -> None:
        with self._lock:
            self._vectors[key] = normalize(vector)
            self._matrix = None

    def remove(self, key: str) -> None:
        with self._lock:
            if self._vectors.pop(key, None) is not None:
                self._matrix = None

    def clear(self) -> None:
        with self._lock:
            self._vectors.clear()
            self._matrix = None

    def __len__(self) -> int:
        return len(self._vectors)

    def _ensure_matrix(self) -> None:
        if self._matrix is None:
            self._keys = list(self._vectors.keys())
            if self._keys:
                self._matrix = np.vstack([self._vectors[k] for k in self._keys])
            else:
                self._matrix = np.empty((0, 0), dtype=np.float32)

    def search(
        self, query: np.ndarray, k: int, min_similarity: float = -1.0
    ) -> List[Tuple[str, float]]:
        if k <= 0:
            return []
        with self._lock:
            if not self._vectors:
                return []
            self._ensure_matrix()
            q = normalize(query)
            if q.shape[0] != self._matrix.shape[1]:
                raise DimensionMismatch(int(self._matrix.shape[1]), int(q.shape[0]))
            scores = self._matrix @ q
            keys = self._keys

        # Stable sort keeps insertion order among ties
        order = np.argsort(-scores, kind="stable")
        results: List[Tuple[str, float]] = []
        for idx in order:
            score = float(scores[idx])
            if score < min_similarity:
                break
            results.append((keys[idx], score))
            if len(results) >= k:
                break
        return results


def to_list(vector: Sequence[float]) -> List[float]:
    """Plain-list form for JSON persistence."""
    return [float(x) for x in vector]
