"""
Categorization prompt and response parsing shared by the LLM providers.

Providers ask for JSON of the form:
    {"category_path": "Main / Sub", "confidence": 0.85,
     "rationale": "...", "keywords": ["..."]}
"""

import json
import re
from typing import List, Optional, Sequence

from .base import CategorizationResult, FileSignature
from ..core.errors import InvalidProviderResponse

SYSTEM_PROMPT = """You are a file categorization assistant. Categorize files into a HIERARCHICAL category system.

IMPORTANT: Respond ONLY with valid JSON in this exact format:
{"category_path": "Main / Sub1 / Sub2", "confidence": 0.85, "rationale": "brief explanation", "keywords": ["keyword1", "keyword2"]}

Rules:
1. "category_path" uses " / " between hierarchy levels, most general first
2. "confidence" is a number between 0.0 (uncertain) and 1.0 (certain)
3. Prefer one of the known categories when one fits
4. Keep "rationale" under 30 words"""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def build_user_prompt(
    signature: FileSignature,
    known_categories: Optional[Sequence[str]] = None,
    preview_chars: int = 800,
) -> str:
    """Describe one file for the model."""
    lines = [f"Name: {signature.filename}"]
    if signature.extension:
        lines.append(f"Type: {signature.extension}")
    if signature.parent_folder:
        lines.append(f"Folder: {signature.parent_folder}")
    if signature.size is not None:
        lines.append(f"Size: {signature.size} bytes")
    if known_categories:
        lines.append(f"Known categories: {json.dumps(list(known_categories))}")
    prompt = "FILE TO CATEGORIZE:\n" + "\n".join(lines)
    if signature.text_preview:
        prompt += f"\n\nContent preview:\n{signature.text_preview[:preview_chars]}"
    return prompt


def build_prompt(signature: FileSignature, known_categories: Optional[Sequence[str]] = None) -> str:
    """Single-string prompt for completion-style endpoints."""
    return f"{SYSTEM_PROMPT}\n\n{build_user_prompt(signature, known_categories)}\n\nYour JSON response:"


def _clean_path(raw: str) -> str:
    parts = [p.strip() for p in raw.split("/")]
    return "/".join(p for p in parts if p)


def parse_response(provider: str, raw: str, processing_time: float = 0.0) -> CategorizationResult:
    """
    Turn a model answer into a CategorizationResult.

    Accepts bare JSON or JSON wrapped in prose/code fences.

    Raises:
        InvalidProviderResponse: If no usable category can be extracted
    """
    text = (raw or "").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise InvalidProviderResponse(provider, f"No JSON in response: {text[:100]!r}")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise InvalidProviderResponse(provider, f"Malformed JSON: {e}") from e

    if not isinstance(data, dict):
        raise InvalidProviderResponse(provider, "Response is not a JSON object")

    path = _clean_path(str(data.get("category_path") or data.get("categoryPath") or ""))
    if not path:
        raise InvalidProviderResponse(provider, "Response has no category_path")

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5

    keywords: List[str] = []
    raw_keywords = data.get("keywords") or []
    if isinstance(raw_keywords, list):
        keywords = [str(k) for k in raw_keywords if str(k).strip()]

    return CategorizationResult(
        category_path=path,
        confidence=min(max(confidence, 0.0), 1.0),
        rationale=str(data.get("rationale") or ""),
        keywords=keywords,
        provider=provider,
        processing_time=processing_time,
    )
