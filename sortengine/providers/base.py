"""
Base provider interface for file categorization.

This module defines the abstract base class and the data structures
shared by all categorization providers (on-device prototypes, Ollama,
OpenAI, heuristics) and the orchestrator that cascades over them.
"""

import hashlib
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Sequence

TEXT_PREVIEW_EXTENSIONS = frozenset({
    "txt", "md", "csv", "json", "xml", "yaml", "yml", "py", "js", "ts", "html", "tex", "rtf",
})


@dataclass(frozen=True)
class FileSignature:
    """
    What providers get to see of a file.

    Attributes:
        filename: Base name including extension
        parent_path: Absolute path of the containing folder
        extension: Lowercase extension without dot
        size: Size in bytes
        checksum: SHA-256 of the content (the fingerprint)
        text_preview: First characters of text files, if any
    """
    filename: str
    parent_path: str = ""
    extension: str = ""
    size: Optional[int] = None
    checksum: str = ""
    text_preview: Optional[str] = None

    @property
    def parent_folder(self) -> Optional[str]:
        """Name of the immediate parent folder."""
        name = os.path.basename(self.parent_path.rstrip("/\\"))
        return name or None

    @classmethod
    def from_path(cls, path: str, preview_chars: int = 1000) -> "FileSignature":
        """Read a file's identity and fingerprint from disk."""
        path = os.path.abspath(path)
        filename = os.path.basename(path)
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""

        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)

        preview = None
        if extension in TEXT_PREVIEW_EXTENSIONS:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                preview = f.read(preview_chars)

        return cls(
            filename=filename,
            parent_path=os.path.dirname(path),
            extension=extension,
            size=os.path.getsize(path),
            checksum=digest.hexdigest(),
            text_preview=preview,
        )


@dataclass(frozen=True)
class CategorizationRequest:
    """A file to categorize plus optional precomputed context."""
    signature: FileSignature
    embedding: Optional[Sequence[float]] = None
    cluster_density: Optional[float] = None

    @property
    def fingerprint(self) -> str:
        return self.signature.checksum


@dataclass(frozen=True)
class CategorizationResult:
    """
    Structured result of a categorization.

    Attributes:
        category_path: Hierarchical category ("Work/Invoices")
        confidence: 0.0-1.0 provider-reported confidence
        rationale: Short explanation
        keywords: Words that drove the decision
        provider: Id of the provider that produced it
        processing_time: Seconds spent in the provider
        escalated_from: Provider whose low-confidence answer was passed over
    """
    category_path: str
    confidence: float = 0.5
    rationale: str = ""
    keywords: List[str] = field(default_factory=list)
    provider: str = ""
    processing_time: float = 0.0
    escalated_from: Optional[str] = None

    def with_escalation(self, provider_id: Optional[str]) -> "CategorizationResult":
        return replace(self, escalated_from=provider_id)

    def to_dict(self) -> dict:
        return {
            "category_path": self.category_path,
            "confidence": round(self.confidence, 4),
            "rationale": self.rationale,
            "keywords": list(self.keywords),
            "provider": self.provider,
            "processing_time": round(self.processing_time, 4),
            "escalated_from": self.escalated_from,
        }


class ProviderTier(Enum):
    """Where a provider runs; preference profiles order tiers."""
    ON_DEVICE = "on_device"
    LOCAL_SERVER = "local_server"
    CLOUD = "cloud"
    HEURISTIC = "heuristic"


class CategorizationProvider(ABC):
    """
    Abstract base class for categorization providers.

    Providers raise ProviderError subclasses on failure; the orchestrator
    handles retry, backoff and escalation.
    """

    #: Ordering inside a tier, lower first
    priority: int = 100

    @abstractmethod
    def get_name(self) -> str:
        """Return provider identifier for logging and routing."""
        pass

    @property
    @abstractmethod
    def tier(self) -> ProviderTier:
        pass

    @property
    def is_cloud(self) -> bool:
        return self.tier == ProviderTier.CLOUD

    @property
    def is_local(self) -> bool:
        """Whether provider runs locally (no cloud costs)."""
        return not self.is_cloud

    @abstractmethod
    async def categorize(self, signature: FileSignature) -> Optional[CategorizationResult]:
        """
        Propose a category for a file.

        Returns:
            CategorizationResult, or None when the provider has no opinion
            (the cascade moves on without counting a failure).

        Raises:
            ProviderUnavailable: Provider cannot be reached
            InvalidProviderResponse: Provider answer could not be used
        """
        pass

    async def categorize_request(self, request: CategorizationRequest) -> Optional[CategorizationResult]:
        """
        Propose a category with the full request in hand.

        The orchestrator calls this. Providers that can use the caller's
        embedding override it; the rest only see the file signature.
        """
        return await self.categorize(request.signature)

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if the provider can currently serve requests."""
        pass
