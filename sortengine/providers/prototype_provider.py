"""
On-device provider backed by the learned prototype store.

Nothing leaves the machine: the file is embedded locally and matched
against category prototypes. Reported confidence is the prototype's
confidence scaled by similarity, capped at 0.85.
"""

import time
from typing import Callable, Dict, Optional

import numpy as np

from .base import (
    CategorizationProvider,
    CategorizationRequest,
    CategorizationResult,
    FileSignature,
    ProviderTier,
)
from ..core.embedder import Embedder
from ..core.heuristics import extract_keywords
from ..core.prototype_store import PrototypeStore
from ..core.vectors import as_vector

EmbedFn = Callable[[FileSignature], np.ndarray]


class PrototypeProvider(CategorizationProvider):
    """Nearest-prototype categorization."""

    priority = 1

    def __init__(
        self,
        store: PrototypeStore,
        embedder: Embedder,
        config: Optional[Dict] = None,
        embed_fn: Optional[EmbedFn] = None,
    ):
        """
        Args:
            store: Prototype store to match against
            embedder: Embedder used when no embed_fn is given
            config: Configuration with:
                - max_confidence: Confidence cap (default: 0.85)
                - min_confidence: Minimum adjusted confidence to answer (default: 0.0)
            embed_fn: Optional signature → vector function (e.g. cache-backed)
        """
        config = config or {}
        self.store = store
        self.embedder = embedder
        self.max_confidence = float(config.get("max_confidence", 0.85))
        self.min_confidence = float(config.get("min_confidence", 0.0))
        self._embed = embed_fn or self._embed_signature

    def _embed_signature(self, signature: FileSignature) -> np.ndarray:
        return self.embedder.embed_file(
            signature.filename, signature.parent_folder, signature.extension
        )

    def get_name(self) -> str:
        return "prototypes"

    @property
    def tier(self) -> ProviderTier:
        return ProviderTier.ON_DEVICE

    async def is_available(self) -> bool:
        # Runs in-process; an empty store answers None instead of failing
        return True

    async def categorize(self, signature: FileSignature) -> Optional[CategorizationResult]:
        return self._match(signature, self._embed(signature))

    async def categorize_request(self, request: CategorizationRequest) -> Optional[CategorizationResult]:
        """Match the caller's embedding when one is supplied."""
        if request.embedding is None:
            return await self.categorize(request.signature)
        return self._match(request.signature, as_vector(request.embedding))

    def _match(self, signature: FileSignature, embedding: np.ndarray) -> Optional[CategorizationResult]:
        start_time = time.time()
        if len(self.store) == 0:
            return None
        match = self.store.classify(embedding, min_confidence=self.min_confidence)
        if match is None:
            return None
        return CategorizationResult(
            category_path=match.category_path,
            confidence=min(match.confidence, self.max_confidence),
            rationale=f"Closest learned category ({int(match.similarity * 100)}% similar)",
            keywords=extract_keywords(signature.filename),
            provider=self.get_name(),
            processing_time=time.time() - start_time,
        )
