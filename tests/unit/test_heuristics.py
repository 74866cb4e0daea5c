"""
Unit tests for filename heuristics.
"""

from sortengine.core.heuristics import (
    category_for_extension,
    extension_bonus,
    extract_keywords,
    parent_folder_bonus,
)


class TestExtensionHeuristics:
    """Tests for extension lookups and bonuses."""

    def test_category_for_extension(self):
        assert category_for_extension("PDF") == "Documents"
        assert category_for_extension(".jpg") == "Images"
        assert category_for_extension("xyz") is None

    def test_extension_bonus_levels(self):
        """1.0 agree, 0.5 known but different, 0.3 unknown, 0.0 none."""
        assert extension_bonus("pdf", "Work/Documents") == 1.0
        assert extension_bonus("pdf", "Images") == 0.5
        assert extension_bonus("xyz", "Images") == 0.3
        assert extension_bonus(None, "Images") == 0.0
        assert extension_bonus("", "Images") == 0.0

    def test_extension_bonus_without_suggestion(self):
        assert extension_bonus("pdf", None) == 0.5


class TestParentFolderBonus:
    """Tests for parent folder matching."""

    def test_containment_scores_highest(self):
        assert parent_folder_bonus("Invoices", "Work/Invoices") == 0.8
        assert parent_folder_bonus("Invoices 2024", "Work/Invoices") == 0.8

    def test_shared_word(self):
        assert parent_folder_bonus("Tax Returns", "Finance/Tax Documents") == 0.5

    def test_unrelated_folder(self):
        assert parent_folder_bonus("Holiday", "Work/Invoices") == 0.2

    def test_missing_inputs(self):
        assert parent_folder_bonus(None, "Work") == 0.0
        assert parent_folder_bonus("Work", None) == 0.0


class TestKeywords:
    def test_extract_keywords(self):
        assert extract_keywords("Final_Invoice-ACME_2024_copy.pdf") == ["invoice", "acme"]

    def test_camel_case_and_limit(self):
        assert extract_keywords("quarterlyReportBudgetForecastSummaryAppendix.docx", limit=3) == [
            "quarterly", "report", "budget",
        ]
