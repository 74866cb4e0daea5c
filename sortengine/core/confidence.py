"""
Confidence scoring and precision tracking.

Fuses four signals into one calibrated score:
- prototype similarity (how close the file is to a learned category)
- cluster density (how tight the file's neighbourhood is)
- extension heuristic (does the file type agree with the category)
- parent-folder heuristic (does the containing folder agree)

The weighted sum goes through a logistic calibration and is mapped to
auto-place / review / deep-analysis. Recorded outcomes give precision
statistics and an optional auto-place threshold recommendation.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from .heuristics import category_for_extension, extension_bonus, parent_folder_bonus
from .persistence import Namespace, PersistenceBackend
from .prototype_store import PrototypeStore
from .vectors import as_vector, cosine_similarity

logger = logging.getLogger(__name__)

SIMILARITY_FLOOR = 0.2
DEFAULT_DENSITY = 0.5
CALIBRATION_STEEPNESS = 2.5
CALIBRATION_CENTER = 0.5

PRESETS: Dict[str, Dict[str, float]] = {
    "default": {
        "prototype_weight": 0.4,
        "density_weight": 0.25,
        "extension_weight": 0.15,
        "parent_weight": 0.2,
        "auto_place_threshold": 0.85,
        "review_threshold": 0.6,
        "minimum_confidence": 0.3,
        "target_precision": 0.85,
    },
    "conservative": {
        "prototype_weight": 0.5,
        "density_weight": 0.2,
        "extension_weight": 0.1,
        "parent_weight": 0.2,
        "auto_place_threshold": 0.9,
        "review_threshold": 0.7,
        "minimum_confidence": 0.4,
        "target_precision": 0.9,
    },
    "aggressive": {
        "prototype_weight": 0.35,
        "density_weight": 0.3,
        "extension_weight": 0.15,
        "parent_weight": 0.2,
        "auto_place_threshold": 0.75,
        "review_threshold": 0.5,
        "minimum_confidence": 0.25,
        "target_precision": 0.8,
    },
}


class ConfidenceOutcome(Enum):
    AUTO_PLACE = "auto_place"
    REVIEW = "review"
    DEEP_ANALYSIS = "deep_analysis"


@dataclass(frozen=True)
class ConfidenceBreakdown:
    prototype_similarity: float
    cluster_density: float
    extension_bonus: float
    parent_folder_bonus: float
    calibrated_score: float


@dataclass(frozen=True)
class ConfidenceResult:
    confidence: float
    outcome: ConfidenceOutcome
    breakdown: ConfidenceBreakdown
    category_path: Optional[str] = None
    explanation: str = ""

    def to_dict(self) -> Dict:
        return {
            "confidence": round(self.confidence, 4),
            "outcome": self.outcome.value,
            "category_path": self.category_path,
            "explanation": self.explanation,
            "breakdown": {
                "prototype_similarity": round(self.breakdown.prototype_similarity, 4),
                "cluster_density": round(self.breakdown.cluster_density, 4),
                "extension_bonus": self.breakdown.extension_bonus,
                "parent_folder_bonus": self.breakdown.parent_folder_bonus,
                "calibrated_score": round(self.breakdown.calibrated_score, 4),
            },
        }


@dataclass(frozen=True)
class PrecisionStatistics:
    total_predictions: int
    correct_predictions: int
    overall_precision: float
    auto_place_predictions: int
    auto_place_correct: int
    auto_place_precision: float
    meets_target: bool

    def to_dict(self) -> Dict:
        return dict(self.__dict__)


def calibrate_score(raw_score: float, minimum_confidence: float = 0.3) -> float:
    """
    Platt-style calibration of a raw weighted score.

    Clamps to [0, 1], applies a logistic curve centred at 0.5 and rescales
    into [minimum_confidence, 1.0]. Monotonic non-decreasing.
    """
    x = max(0.0, min(1.0, raw_score))
    sigmoid = 1.0 / (1.0 + math.exp(-CALIBRATION_STEEPNESS * (x - CALIBRATION_CENTER)))
    return minimum_confidence + sigmoid * (1.0 - minimum_confidence)


@dataclass
class _Counters:
    total: int = 0
    correct: int = 0
    auto_place: int = 0
    auto_place_correct: int = 0
    samples: Deque[Tuple[float, bool]] = field(default_factory=lambda: deque(maxlen=1000))


class ConfidenceEngine:
    """
    Calibrated confidence for categorization decisions.

    Usage:
        engine = ConfidenceEngine(prototype_store, {"preset": "default"})
        result = engine.score(vector, "invoice_2024.pdf", parent_folder="Finance", extension="pdf")
        if result.outcome == ConfidenceOutcome.AUTO_PLACE:
            move_file(...)
        engine.record_outcome(was_correct=True, was_auto_place=True, confidence=result.confidence)
    """

    NAMESPACE = "confidence"

    def __init__(
        self,
        prototype_store: PrototypeStore,
        config: Optional[Dict] = None,
        persistence: Optional[PersistenceBackend] = None,
    ):
        """
        Initialize confidence engine.

        Args:
            prototype_store: Source of prototype similarity
            config: Configuration with:
                - preset: 'default', 'conservative' or 'aggressive'
                - prototype_weight, density_weight, extension_weight,
                  parent_weight: signal weights (override the preset)
                - auto_place_threshold, review_threshold, minimum_confidence,
                  target_precision: decision settings (override the preset)
                - auto_adjust: Move the auto-place threshold toward the
                  recommendation as outcomes arrive (default: False)
                - min_samples: Outcomes needed before recommending (default: 50)
            persistence: Optional backend for the precision counters
        """
        config = config or {}
        preset_name = config.get("preset", "default")
        if preset_name not in PRESETS:
            raise ValueError(f"Unknown confidence preset: '{preset_name}'")
        settings = {**PRESETS[preset_name], **{
            k: v for k, v in config.items() if k in PRESETS["default"]
        }}

        self.preset = preset_name
        self.prototype_weight = float(settings["prototype_weight"])
        self.density_weight = float(settings["density_weight"])
        self.extension_weight = float(settings["extension_weight"])
        self.parent_weight = float(settings["parent_weight"])
        self.auto_place_threshold = float(settings["auto_place_threshold"])
        self.review_threshold = float(settings["review_threshold"])
        self.minimum_confidence = float(settings["minimum_confidence"])
        self.target_precision = float(settings["target_precision"])
        self.auto_adjust = bool(config.get("auto_adjust", False))
        self.min_samples = int(config.get("min_samples", 50))

        if self.review_threshold > self.auto_place_threshold:
            raise ValueError("review_threshold must not exceed auto_place_threshold")

        self.prototype_store = prototype_store
        self._store = Namespace(persistence, self.NAMESPACE)
        self._counters = _Counters()
        self._lock = threading.Lock()

        self._load_counters()

    def calibrate(self, raw_score: float) -> float:
        return calibrate_score(raw_score, self.minimum_confidence)

    def determine_outcome(self, confidence: float) -> ConfidenceOutcome:
        if confidence >= self.auto_place_threshold:
            return ConfidenceOutcome.AUTO_PLACE
        if confidence >= self.review_threshold:
            return ConfidenceOutcome.REVIEW
        return ConfidenceOutcome.DEEP_ANALYSIS

    def _prototype_signal(
        self, embedding: Sequence[float], category_path: Optional[str]
    ) -> Tuple[Optional[str], float]:
        if category_path is not None:
            prototype = self.prototype_store.get(category_path)
            if prototype is None:
                return category_path, 0.0
            similarity = cosine_similarity(as_vector(embedding), prototype.embedding)
            return prototype.category_path, max(0.0, similarity)

        matches = self.prototype_store.find_similar(embedding, k=1, min_similarity=SIMILARITY_FLOOR)
        if not matches:
            return None, 0.0
        prototype, similarity = matches[0]
        return prototype.category_path, similarity

    def score(
        self,
        embedding: Sequence[float],
        filename: str,
        parent_folder: Optional[str] = None,
        extension: Optional[str] = None,
        cluster_density: Optional[float] = None,
        category_path: Optional[str] = None,
    ) -> ConfidenceResult:
        """
        Score how confidently a file can be placed.

        Args:
            embedding: File embedding
            filename: File name (extension is derived from it when not given)
            parent_folder: Name of the containing folder
            extension: File extension without dot
            cluster_density: Neighbourhood density in [0, 1] (default 0.5)
            category_path: Category already proposed by a provider; when
                given, similarity is measured against its prototype instead
                of the nearest one

        Raises:
            DimensionMismatch: If the vector size differs from the store's
        """
        if extension is None and "." in filename:
            extension = filename.rsplit(".", 1)[-1]

        suggested, similarity = self._prototype_signal(embedding, category_path)
        density = DEFAULT_DENSITY if cluster_density is None else max(0.0, min(1.0, cluster_density))
        ext_bonus = extension_bonus(extension, suggested)
        parent_bonus = parent_folder_bonus(parent_folder, suggested)

        weighted = (
            similarity * self.prototype_weight
            + density * self.density_weight
            + ext_bonus * self.extension_weight
            + parent_bonus * self.parent_weight
        )
        calibrated = self.calibrate(weighted)
        outcome = self.determine_outcome(calibrated)

        breakdown = ConfidenceBreakdown(
            prototype_similarity=similarity,
            cluster_density=density,
            extension_bonus=ext_bonus,
            parent_folder_bonus=parent_bonus,
            calibrated_score=calibrated,
        )
        return ConfidenceResult(
            confidence=calibrated,
            outcome=outcome,
            breakdown=breakdown,
            category_path=suggested,
            explanation=self._explain(suggested, similarity, extension, ext_bonus,
                                      parent_bonus, calibrated, outcome),
        )

    def score_batch(
        self,
        files: Sequence[Dict],
        cluster_densities: Optional[Sequence[float]] = None,
    ) -> List[ConfidenceResult]:
        """
        Score several files.

        Args:
            files: Dicts with keys embedding, filename, and optionally
                parent_folder and extension
            cluster_densities: Per-file densities, positionally aligned
        """
        results = []
        for i, f in enumerate(files):
            density = None
            if cluster_densities is not None and i < len(cluster_densities):
                density = cluster_densities[i]
            results.append(self.score(
                f["embedding"],
                f["filename"],
                parent_folder=f.get("parent_folder"),
                extension=f.get("extension"),
                cluster_density=density,
            ))
        return results

    @staticmethod
    def group_by_outcome(results: Sequence[ConfidenceResult]) -> Dict[ConfidenceOutcome, List[ConfidenceResult]]:
        grouped: Dict[ConfidenceOutcome, List[ConfidenceResult]] = {}
        for result in results:
            grouped.setdefault(result.outcome, []).append(result)
        return grouped

    def _explain(
        self,
        category: Optional[str],
        similarity: float,
        extension: Optional[str],
        ext_bonus: float,
        parent_bonus: float,
        confidence: float,
        outcome: ConfidenceOutcome,
    ) -> str:
        parts = []
        if category:
            parts.append(f"Similar to '{category}' ({int(similarity * 100)}% match)")
        else:
            parts.append("No similar category found")

        ext_category = category_for_extension(extension)
        if ext_category:
            verb = "confirms" if ext_bonus > 0.7 else "suggests"
            parts.append(f"File type {verb} '{ext_category}'")

        if parent_bonus > 0.5:
            parts.append("Folder context supports suggestion")

        verdict = {
            ConfidenceOutcome.AUTO_PLACE: "Will place automatically",
            ConfidenceOutcome.REVIEW: "Needs review",
            ConfidenceOutcome.DEEP_ANALYSIS: "Requires deeper analysis",
        }[outcome]
        parts.append(f"Confidence: {int(confidence * 100)}% - {verdict}")
        return ". ".join(parts)

    def record_outcome(
        self, was_correct: bool, was_auto_place: bool, confidence: Optional[float] = None
    ) -> None:
        """
        Feed back whether a decision turned out right.

        Args:
            was_correct: The user kept the placement
            was_auto_place: The decision was an automatic placement
            confidence: The calibrated score of the decision, used for
                threshold recommendation when given
        """
        with self._lock:
            c = self._counters
            c.total += 1
            if was_correct:
                c.correct += 1
            if was_auto_place:
                c.auto_place += 1
                if was_correct:
                    c.auto_place_correct += 1
            if confidence is not None:
                c.samples.append((float(confidence), bool(was_correct)))
            self._save_counters()

        if self.auto_adjust and confidence is not None:
            self._maybe_auto_adjust()

    def get_precision_statistics(self) -> PrecisionStatistics:
        with self._lock:
            c = self._counters
            overall = c.correct / c.total if c.total else 0.0
            auto = c.auto_place_correct / c.auto_place if c.auto_place else 0.0
            return PrecisionStatistics(
                total_predictions=c.total,
                correct_predictions=c.correct,
                overall_precision=overall,
                auto_place_predictions=c.auto_place,
                auto_place_correct=c.auto_place_correct,
                auto_place_precision=auto,
                meets_target=auto >= self.target_precision,
            )

    def reset_statistics(self) -> None:
        with self._lock:
            self._counters = _Counters()
            self._save_counters()
        logger.info("Confidence statistics reset")

    def recommend_auto_place_threshold(self) -> Optional[float]:
        """
        Lowest threshold whose observed precision meets the target.

        Sweeps the recorded confidences from low to high; precision at a
        candidate threshold is the share of correct outcomes among samples
        at or above it. None until `min_samples` outcomes carry a score or
        when no threshold reaches the target.
        """
        with self._lock:
            samples = list(self._counters.samples)
        if len(samples) < self.min_samples:
            return None

        samples.sort(key=lambda s: s[0])
        remaining = len(samples)
        correct_above = sum(1 for _, ok in samples if ok)
        for confidence, ok in samples:
            if correct_above / remaining >= self.target_precision:
                return round(max(confidence, self.review_threshold), 2)
            remaining -= 1
            if ok:
                correct_above -= 1
        return None

    def _maybe_auto_adjust(self) -> None:
        recommended = self.recommend_auto_place_threshold()
        if recommended is None:
            return
        if abs(recommended - self.auto_place_threshold) >= 0.05:
            old = self.auto_place_threshold
            self.auto_place_threshold = recommended
            logger.info(f"Auto-adjusted auto-place threshold: {old:.2f} → {recommended:.2f}")

    def _save_counters(self) -> None:
        c = self._counters
        self._store.save("statistics", {
            "total": c.total,
            "correct": c.correct,
            "auto_place": c.auto_place,
            "auto_place_correct": c.auto_place_correct,
            "samples": [[conf, ok] for conf, ok in c.samples],
        })

    def _load_counters(self) -> None:
        for key, record in self._store.load_all():
            if key != "statistics":
                continue
            c = self._counters
            c.total = record.get("total", 0)
            c.correct = record.get("correct", 0)
            c.auto_place = record.get("auto_place", 0)
            c.auto_place_correct = record.get("auto_place_correct", 0)
            c.samples.extend((float(conf), bool(ok)) for conf, ok in record.get("samples", []))
