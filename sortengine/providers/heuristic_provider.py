"""
Heuristic provider: extension table plus folder hints.

Always available and never leaves the machine, so it closes every
cascade and is all that remains in degraded mode. Its confidence is
capped below the auto-accept level.
"""

import time
from typing import Dict, Optional

from .base import CategorizationProvider, CategorizationResult, FileSignature, ProviderTier
from ..core.heuristics import category_for_extension, extract_keywords, parent_folder_bonus

GENERIC_FOLDERS = frozenset({
    "downloads", "desktop", "documents", "home", "tmp", "temp", "inbox", "new folder",
})


class HeuristicProvider(CategorizationProvider):
    """Pattern-based fallback categorization."""

    priority = 100

    def __init__(self, config: Optional[Dict] = None):
        """
        Args:
            config: Configuration with:
                - max_confidence: Confidence cap (default: 0.85)
                - fallback_category: Category for unknown types (default: Other)
        """
        config = config or {}
        self.max_confidence = float(config.get("max_confidence", 0.85))
        self.fallback_category = config.get("fallback_category", "Other")

    def get_name(self) -> str:
        return "heuristic"

    @property
    def tier(self) -> ProviderTier:
        return ProviderTier.HEURISTIC

    async def is_available(self) -> bool:
        return True

    async def categorize(self, signature: FileSignature) -> CategorizationResult:
        start_time = time.time()
        category = category_for_extension(signature.extension)
        folder = signature.parent_folder

        if category is None:
            path = self.fallback_category
            confidence = 0.3
            rationale = f"Unknown file type '{signature.extension or 'none'}'"
        else:
            path = category
            confidence = 0.6
            rationale = f"File type '{signature.extension}' belongs to {category}"
            if folder and folder.lower() not in GENERIC_FOLDERS:
                if parent_folder_bonus(folder, category) >= 0.8:
                    confidence = 0.75
                    rationale += f"; folder '{folder}' agrees"
                else:
                    path = f"{category}/{folder}"
                    confidence = 0.55
                    rationale += f"; grouped under folder '{folder}'"

        return CategorizationResult(
            category_path=path,
            confidence=min(confidence, self.max_confidence),
            rationale=rationale,
            keywords=extract_keywords(signature.filename),
            provider=self.get_name(),
            processing_time=time.time() - start_time,
        )
