"""
Unit tests for the confidence engine.
"""

import numpy as np
import pytest

from sortengine.core.confidence import (
    ConfidenceEngine,
    ConfidenceOutcome,
    calibrate_score,
)
from sortengine.core.persistence import MemoryPersistence
from sortengine.core.prototype_store import PrototypeStore
from sortengine.utils.clock import ManualClock


def basis(i: int, dims: int = 4) -> np.ndarray:
    vector = np.zeros(dims, dtype=np.float32)
    vector[i] = 1.0
    return vector


class TestCalibration:
    """Tests for score calibration."""

    def test_monotonic(self):
        """Higher raw scores never calibrate lower."""
        values = [calibrate_score(x / 20) for x in range(21)]
        assert values == sorted(values)

    def test_bounded(self):
        """Output stays within [minimum_confidence, 1]."""
        for raw in (-5.0, 0.0, 0.5, 1.0, 7.0):
            value = calibrate_score(raw, 0.3)
            assert 0.3 <= value <= 1.0

    def test_center_maps_to_midpoint(self):
        """The logistic centre lands halfway between the minimum and 1."""
        assert calibrate_score(0.5, 0.3) == pytest.approx(0.65)


class TestOutcomes:
    """Tests for outcome thresholds."""

    def setup_method(self):
        self.engine = ConfidenceEngine(PrototypeStore())

    def test_default_thresholds(self):
        assert self.engine.determine_outcome(0.90) == ConfidenceOutcome.AUTO_PLACE
        assert self.engine.determine_outcome(0.70) == ConfidenceOutcome.REVIEW
        assert self.engine.determine_outcome(0.40) == ConfidenceOutcome.DEEP_ANALYSIS

    def test_threshold_boundaries_are_inclusive(self):
        assert self.engine.determine_outcome(0.85) == ConfidenceOutcome.AUTO_PLACE
        assert self.engine.determine_outcome(0.6) == ConfidenceOutcome.REVIEW

    def test_review_above_auto_place_rejected(self):
        with pytest.raises(ValueError):
            ConfidenceEngine(PrototypeStore(), {"review_threshold": 0.9, "auto_place_threshold": 0.8})

    def test_unknown_preset_rejected(self):
        with pytest.raises(ValueError):
            ConfidenceEngine(PrototypeStore(), {"preset": "yolo"})


class TestScoring:
    """Tests for multi-signal scoring."""

    def setup_method(self):
        self.store = PrototypeStore(clock=ManualClock())
        self.store.update("Documents", basis(0))
        self.engine = ConfidenceEngine(self.store)

    def test_empty_store_scores_low(self):
        """Without prototypes only density and extension contribute."""
        engine = ConfidenceEngine(PrototypeStore())
        result = engine.score(basis(0), "report.pdf")

        assert result.category_path is None
        assert result.breakdown.prototype_similarity == 0.0
        assert result.breakdown.extension_bonus == 0.5
        assert result.breakdown.cluster_density == 0.5
        assert result.outcome == ConfidenceOutcome.DEEP_ANALYSIS
        assert result.explanation.startswith("No similar category found")

    def test_matching_signals_score_review(self):
        """Similar prototype, matching type and folder reach review."""
        result = self.engine.score(basis(0), "report.pdf", parent_folder="Documents", extension="pdf")

        assert result.category_path == "Documents"
        assert result.breakdown.prototype_similarity == pytest.approx(1.0)
        assert result.breakdown.extension_bonus == 1.0
        assert result.breakdown.parent_folder_bonus == 0.8
        assert result.confidence == pytest.approx(0.7885, abs=1e-3)
        assert result.outcome == ConfidenceOutcome.REVIEW
        assert "Similar to 'Documents'" in result.explanation
        assert "Folder context supports suggestion" in result.explanation

    def test_extension_derived_from_filename(self):
        with_ext = self.engine.score(basis(0), "report.pdf", extension="pdf")
        derived = self.engine.score(basis(0), "report.pdf")
        assert derived.confidence == pytest.approx(with_ext.confidence)

    def test_no_extension_gives_no_bonus(self):
        result = self.engine.score(basis(0), "README")
        assert result.breakdown.extension_bonus == 0.0

    def test_score_against_proposed_category(self):
        """A proposed category without a prototype contributes no similarity."""
        result = self.engine.score(basis(0), "report.pdf", category_path="Finance/Taxes")
        assert result.category_path == "Finance/Taxes"
        assert result.breakdown.prototype_similarity == 0.0

    def test_density_is_clamped(self):
        result = self.engine.score(basis(0), "report.pdf", cluster_density=3.0)
        assert result.breakdown.cluster_density == 1.0

    def test_aggressive_preset_can_auto_place(self):
        engine = ConfidenceEngine(self.store, {"preset": "aggressive"})
        result = engine.score(
            basis(0), "report.pdf", parent_folder="Documents", extension="pdf", cluster_density=1.0
        )
        assert result.outcome == ConfidenceOutcome.AUTO_PLACE

    def test_score_batch_and_grouping(self):
        files = [
            {"embedding": basis(0), "filename": "a.pdf", "parent_folder": "Documents"},
            {"embedding": basis(3), "filename": "b.xyz"},
        ]
        results = self.engine.score_batch(files, cluster_densities=[0.9])
        grouped = ConfidenceEngine.group_by_outcome(results)

        assert len(results) == 2
        assert results[1].breakdown.cluster_density == 0.5
        assert sum(len(v) for v in grouped.values()) == 2
        assert ConfidenceOutcome.DEEP_ANALYSIS in grouped

    def test_result_to_dict(self):
        data = self.engine.score(basis(0), "report.pdf").to_dict()
        assert data["outcome"] in {"auto_place", "review", "deep_analysis"}
        assert set(data["breakdown"]) == {
            "prototype_similarity", "cluster_density", "extension_bonus",
            "parent_folder_bonus", "calibrated_score",
        }


class TestPrecisionTracking:
    """Tests for outcome feedback and threshold recommendation."""

    def setup_method(self):
        self.persistence = MemoryPersistence()
        self.engine = ConfidenceEngine(PrototypeStore(), {"min_samples": 10}, self.persistence)

    def test_precision_statistics(self):
        for _ in range(9):
            self.engine.record_outcome(was_correct=True, was_auto_place=True)
        self.engine.record_outcome(was_correct=False, was_auto_place=True)
        self.engine.record_outcome(was_correct=False, was_auto_place=False)

        stats = self.engine.get_precision_statistics()

        assert stats.total_predictions == 11
        assert stats.auto_place_predictions == 10
        assert stats.auto_place_precision == pytest.approx(0.9)
        assert stats.meets_target is True

    def test_empty_statistics(self):
        stats = self.engine.get_precision_statistics()
        assert stats.overall_precision == 0.0
        assert stats.meets_target is False

    def test_statistics_persist(self):
        self.engine.record_outcome(was_correct=True, was_auto_place=True, confidence=0.9)
        reloaded = ConfidenceEngine(PrototypeStore(), {}, self.persistence)
        assert reloaded.get_precision_statistics().total_predictions == 1

    def test_reset_statistics(self):
        self.engine.record_outcome(was_correct=True, was_auto_place=False)
        self.engine.reset_statistics()
        assert self.engine.get_precision_statistics().total_predictions == 0

    def test_recommendation_needs_samples(self):
        self.engine.record_outcome(True, True, confidence=0.9)
        assert self.engine.recommend_auto_place_threshold() is None

    def test_recommendation_finds_lowest_precise_threshold(self):
        for _ in range(5):
            self.engine.record_outcome(False, False, confidence=0.5)
        for _ in range(5):
            self.engine.record_outcome(True, True, confidence=0.9)
        assert self.engine.recommend_auto_place_threshold() == 0.9

    def test_auto_adjust_moves_threshold(self):
        engine = ConfidenceEngine(PrototypeStore(), {"min_samples": 10, "auto_adjust": True})
        for _ in range(5):
            engine.record_outcome(False, False, confidence=0.5)
        for _ in range(5):
            engine.record_outcome(True, True, confidence=0.95)
        assert engine.auto_place_threshold == 0.95
