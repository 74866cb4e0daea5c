"""
Categorization engine - the decision pipeline.

Coordinates the flow: Exact pattern -> Near-duplicate pattern ->
Provider cascade -> Confidence scoring -> Prototype learning.

User feedback (corrections and confirmations) flows back into the
pattern memory, the prototypes and the precision statistics.
"""

import hashlib
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence

import numpy as np

from .confidence import ConfidenceEngine, ConfidenceOutcome, ConfidenceResult, PrecisionStatistics
from .embedder import Embedder, NGramEmbedder
from .embedding_cache import EmbeddingCache, EmbeddingCacheKey
from .errors import SortEngineError
from .orchestrator import ProviderOrchestrator, ProviderPreference, RoutingState
from .pattern_memory import LearnedPattern, PatternMemory, ProcessingRecord
from .persistence import PersistenceBackend, create_persistence
from .prototype_store import Classification, PrototypeStore
from .vectors import as_vector
from ..providers.base import (
    CategorizationProvider,
    CategorizationRequest,
    CategorizationResult,
    FileSignature,
)
from ..providers.factory import ProviderFactory
from ..providers.prototype_provider import PrototypeProvider
from ..utils.clock import Clock, get_clock
from ..utils.config import load_config
from ..utils.logger import logger


class DecisionSource(Enum):
    """Where a decision came from."""
    MEMORY = "memory"            # Exact fingerprint correction
    NEAR_MEMORY = "near_memory"  # Near-duplicate of a corrected file
    PROVIDER = "provider"        # Provider cascade


@dataclass(frozen=True)
class CategorizationDecision:
    """Final answer for one file."""
    category_path: str
    confidence: float
    outcome: ConfidenceOutcome
    source: DecisionSource
    result: Optional[CategorizationResult] = None
    scoring: Optional[ConfidenceResult] = None
    pattern_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category_path": self.category_path,
            "confidence": round(self.confidence, 4),
            "outcome": self.outcome.value,
            "source": self.source.value,
            "result": self.result.to_dict() if self.result else None,
            "scoring": self.scoring.to_dict() if self.scoring else None,
            "pattern_id": self.pattern_id,
        }


class CategorizationEngine:
    """
    Adaptive file categorization.

    Usage:
        engine = CategorizationEngine()
        await engine.start()
        decision = await engine.categorize(CategorizationRequest(signature))
        if decision.outcome != ConfidenceOutcome.AUTO_PLACE:
            ...ask the user...
            engine.record_correction(request, "Finance/Taxes", decision.category_path)
        await engine.stop()
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        persistence: Optional[PersistenceBackend] = None,
        embedder: Optional[Embedder] = None,
        clock: Optional[Clock] = None,
        providers: Optional[Sequence[CategorizationProvider]] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Full configuration (default: load_config())
            persistence: Storage backend (default: from the `persistence` section)
            embedder: Embedding model (default: NGramEmbedder)
            clock: Time source shared by all components
            providers: Providers to register after the on-device prototype
                provider (default: built from the `providers` section)
        """
        self.config = config if config is not None else load_config()
        self._clock = clock or get_clock()
        self.persistence = persistence or create_persistence(self.config.get("persistence"))
        self.embedder = embedder or NGramEmbedder(self.config.get("embedder"))

        self.embedding_cache = EmbeddingCache(
            self.config.get("embedding_cache"), self.persistence, self._clock
        )
        self.prototypes = PrototypeStore(self.config.get("prototypes"), self.persistence, self._clock)
        self.patterns = PatternMemory(self.config.get("patterns"), self.persistence, self._clock)
        self.confidence = ConfidenceEngine(
            self.prototypes, self.config.get("confidence"), self.persistence
        )
        self.near_match_threshold = float(
            (self.config.get("patterns") or {}).get("near_match_threshold", 0.9)
        )

        self.orchestrator = ProviderOrchestrator(
            self.config.get("orchestrator"),
            preference=ProviderPreference(self.config.get("preference", "automatic")),
            clock=self._clock,
        )
        self.orchestrator.register(
            PrototypeProvider(
                self.prototypes,
                self.embedder,
                (self.config.get("providers") or {}).get("prototypes"),
                embed_fn=self.embedding_for,
            )
        )
        if providers is None:
            provider_configs = {
                name: cfg for name, cfg in (self.config.get("providers") or {}).items()
                if name != "prototypes"
            }
            providers = ProviderFactory.create_configured(provider_configs)
        for provider in providers:
            self.orchestrator.register(provider)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        await self.orchestrator.start()
        await self.orchestrator.check_health()

    async def stop(self) -> None:
        await self.orchestrator.stop()

    # ------------------------------------------------------------------ #
    # Embeddings
    # ------------------------------------------------------------------ #

    def embedding_for(self, signature: FileSignature) -> np.ndarray:
        """Cached embedding for a file, computed on a miss or a model change."""
        key = EmbeddingCacheKey(signature.filename, signature.parent_path, signature.size)
        entry = self.embedding_cache.get(key)
        if entry is not None and entry.model == self.embedder.model_id:
            return entry.embedding

        vector = self.embedder.embed_file(
            signature.filename, signature.parent_folder, signature.extension
        )
        self.embedding_cache.set(key, vector, model=self.embedder.model_id)
        return vector

    def _embedding(self, request: CategorizationRequest) -> np.ndarray:
        if request.embedding is not None:
            return as_vector(request.embedding)
        return self.embedding_for(request.signature)

    @staticmethod
    def _fingerprint(signature: FileSignature) -> str:
        if signature.checksum:
            return signature.checksum
        # No content hash: fall back to the file's identity
        key = f"{signature.parent_path}/{signature.filename}:{signature.size}"
        return "name:" + hashlib.sha256(key.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------ #
    # Decisions
    # ------------------------------------------------------------------ #

    async def categorize(self, request: CategorizationRequest) -> CategorizationDecision:
        """
        Decide a category for one file.

        Raises:
            AllProvidersFailed: Nothing in memory and no provider answered
            DimensionMismatch: Supplied embedding has the wrong size
        """
        signature = request.signature
        fingerprint = self._fingerprint(signature)

        pattern = self.patterns.find_by_checksum(fingerprint)
        if pattern is not None:
            self.patterns.record_hit(pattern.id)
            logger.info(f"Memory hit for {signature.filename} -> {pattern.label}")
            decision = CategorizationDecision(
                category_path=pattern.label,
                confidence=pattern.confidence,
                outcome=ConfidenceOutcome.AUTO_PLACE,
                source=DecisionSource.MEMORY,
                pattern_id=pattern.id,
            )
            self._record(fingerprint, signature, decision)
            return decision

        embedding = self._embedding(request)

        near = self.patterns.find_best_match(embedding, min_similarity=self.near_match_threshold)
        if near is not None:
            pattern, similarity = near
            self.patterns.record_hit(pattern.id)
            confidence = pattern.confidence * similarity
            logger.info(
                f"Near-duplicate of a corrected file for {signature.filename} "
                f"-> {pattern.label} ({similarity:.2f})"
            )
            decision = CategorizationDecision(
                category_path=pattern.label,
                confidence=confidence,
                outcome=self.confidence.determine_outcome(confidence),
                source=DecisionSource.NEAR_MEMORY,
                pattern_id=pattern.id,
            )
            self._record(fingerprint, signature, decision)
            return decision

        result = await self.orchestrator.categorize(request)
        scoring = self.confidence.score(
            embedding,
            signature.filename,
            parent_folder=signature.parent_folder,
            extension=signature.extension or None,
            cluster_density=request.cluster_density,
            category_path=result.category_path,
        )
        if scoring.outcome == ConfidenceOutcome.AUTO_PLACE:
            self.prototypes.update(result.category_path, embedding, confirmed=False)

        decision = CategorizationDecision(
            category_path=result.category_path,
            confidence=scoring.confidence,
            outcome=scoring.outcome,
            source=DecisionSource.PROVIDER,
            result=result,
            scoring=scoring,
        )
        self._record(fingerprint, signature, decision)
        return decision

    def _record(self, fingerprint: str, signature: FileSignature, decision: CategorizationDecision) -> None:
        self.patterns.record_processing(ProcessingRecord(
            fingerprint=fingerprint,
            file_path=os.path.join(signature.parent_path, signature.filename),
            category=decision.category_path,
            confidence=decision.confidence,
            from_memory=decision.source != DecisionSource.PROVIDER,
        ))

    def record_correction(
        self,
        request: CategorizationRequest,
        corrected_label: str,
        original_label: Optional[str] = None,
        was_auto_place: bool = False,
    ) -> LearnedPattern:
        """Learn from a user moving a file to a different category."""
        signature = request.signature
        fingerprint = self._fingerprint(signature)
        embedding = self._embedding(request)

        pattern = self.patterns.learn(fingerprint, embedding, corrected_label, original_label=original_label)
        self.prototypes.update(corrected_label, embedding, confirmed=True)
        self.confidence.record_outcome(was_correct=False, was_auto_place=was_auto_place)

        previous = self.patterns.was_processed(fingerprint)
        if previous is not None:
            previous.overridden = True
        logger.info(f"Learned correction for {signature.filename}: {original_label} -> {corrected_label}")
        return pattern

    def confirm(
        self,
        request: CategorizationRequest,
        category_path: str,
        was_auto_place: bool = False,
        confidence: Optional[float] = None,
    ) -> None:
        """Record that a decision was accepted as-is."""
        embedding = self._embedding(request)
        self.prototypes.update(category_path, embedding, confirmed=True)
        self.confidence.record_outcome(was_correct=True, was_auto_place=was_auto_place, confidence=confidence)

    # ------------------------------------------------------------------ #
    # Pass-throughs
    # ------------------------------------------------------------------ #

    def score(self, embedding: Sequence[float], filename: str, **kwargs) -> ConfidenceResult:
        return self.confidence.score(embedding, filename, **kwargs)

    def classify(self, embedding: Sequence[float], min_confidence: float = 0.5) -> Optional[Classification]:
        return self.prototypes.classify(embedding, min_confidence=min_confidence)

    def get_precision_statistics(self) -> PrecisionStatistics:
        return self.confidence.get_precision_statistics()

    def get_routing_state(self) -> RoutingState:
        return self.orchestrator.get_routing_state()

    def run_maintenance(self) -> Dict[str, int]:
        """Decay idle prototypes and prune weak prototypes, patterns and stale cache entries."""
        report = {
            "prototypes_decayed": self.prototypes.apply_confidence_decay(),
            "prototypes_pruned": self.prototypes.prune_weak(),
            "patterns_pruned": self.patterns.prune(),
            "cache_pruned": self.embedding_cache.prune(),
        }
        logger.info(f"Maintenance complete: {report}")
        return report

    def get_stats(self) -> Dict[str, Any]:
        return {
            "precision": self.get_precision_statistics().to_dict(),
            "routing": self.orchestrator.get_statistics(),
            "embedding_cache": self.embedding_cache.get_stats(),
            "prototypes": self.prototypes.statistics(),
            "patterns": self.patterns.count(),
        }

    # ------------------------------------------------------------------ #
    # Host messages
    # ------------------------------------------------------------------ #

    async def handle_message(self, message: Dict) -> Dict:
        """Handle one JSON message from the host application."""
        msg_type = message.get("type")
        payload = message.get("payload") or {}

        if msg_type == "ping":
            return {"type": "pong", "status": "ok"}

        try:
            if msg_type == "categorize":
                decision = await self.categorize(_request_from_payload(payload))
                return {"status": "ok", "decision": decision.to_dict()}

            if msg_type == "correct":
                pattern = self.record_correction(
                    _request_from_payload(payload),
                    _required(payload, "category_path"),
                    original_label=payload.get("original_category"),
                    was_auto_place=bool(payload.get("was_auto_place", False)),
                )
                return {"status": "ok", "pattern_id": pattern.id}

            if msg_type == "confirm":
                self.confirm(
                    _request_from_payload(payload),
                    _required(payload, "category_path"),
                    was_auto_place=bool(payload.get("was_auto_place", False)),
                    confidence=payload.get("confidence"),
                )
                return {"status": "ok"}

            if msg_type == "health":
                state = await self.orchestrator.check_health()
                return {
                    "status": "ok",
                    "routing": state.to_dict(),
                    "providers": self.orchestrator.tracker.get_all_states(),
                }

            if msg_type == "stats":
                return {"status": "ok", "stats": self.get_stats()}

            if msg_type == "maintenance":
                return {"status": "ok", "maintenance": self.run_maintenance()}

        except (SortEngineError, ValueError, OSError) as e:
            logger.error(f"Failed to handle '{msg_type}': {e}")
            return {"status": "error", "error": str(e)}

        return {"status": "error", "error": "Unknown message type"}


def _required(payload: Dict, key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise ValueError(f"Missing required field '{key}'")
    return value


def _request_from_payload(payload: Dict) -> CategorizationRequest:
    """Build a request from a host payload (a `path` or explicit file fields)."""
    if payload.get("path"):
        signature = FileSignature.from_path(payload["path"])
    else:
        filename = _required(payload, "filename")
        extension = payload.get("extension")
        if extension is None:
            extension = filename.rsplit(".", 1)[-1] if "." in filename else ""
        signature = FileSignature(
            filename=filename,
            parent_path=payload.get("parent_path", ""),
            extension=extension.lower().lstrip("."),
            size=payload.get("size"),
            checksum=payload.get("checksum", ""),
            text_preview=payload.get("text_preview"),
        )
    return CategorizationRequest(
        signature=signature,
        embedding=payload.get("embedding"),
        cluster_density=payload.get("cluster_density"),
    )


# Global engine instance
_engine: Optional[CategorizationEngine] = None
_engine_lock = threading.Lock()


def get_engine(config: Optional[Dict] = None) -> CategorizationEngine:
    """Get or create the global categorization engine."""
    global _engine

    with _engine_lock:
        if _engine is None:
            _engine = CategorizationEngine(config)
        return _engine


def reset_engine() -> None:
    """Reset the global engine (mainly for testing)."""
    global _engine
    with _engine_lock:
        _engine = None
