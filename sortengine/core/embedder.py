"""
Embedding capability.

The engine only needs something that turns text into a fixed-dimension,
L2-normalized vector. `NGramEmbedder` is the bundled implementation:
feature-hashed character n-grams (2, 3, 4) and word n-grams (1, 2),
blended 30/70 and normalized. It needs no model files.
"""

import hashlib
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import numpy as np

from .vectors import normalize

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z])(?=[A-Z])")
_NON_WORD = re.compile(r"[^0-9a-z ]+")


class Embedder(ABC):
    """Produces fixed-dimension, unit-length vectors."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        pass

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Identifier stored alongside cached vectors."""
        pass

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        pass

    def embed_file(
        self, filename: str, parent_folder: Optional[str] = None, extension: Optional[str] = None
    ) -> np.ndarray:
        """Embed a filename with its folder context; the extension counts twice."""
        parts: List[str] = []
        if parent_folder:
            parts.append(parent_folder)
        parts.append(filename)
        if extension:
            parts.extend([extension, extension])
        return self.embed(" ".join(parts))


def normalize_filename(text: str) -> str:
    """Lowercase words of a filename: camelCase split, separators and extension dropped."""
    text = _CAMEL_BOUNDARY.sub(" ", text).lower()
    dot = text.rfind(".")
    if dot > 0 and len(text) - dot <= 5:
        text = text[:dot]
    for sep in ("_", "-", "."):
        text = text.replace(sep, " ")
    text = _NON_WORD.sub("", text)
    return " ".join(text.split())


class NGramEmbedder(Embedder):
    """
    Hashed n-gram embedder.

    Args:
        config: Configuration with:
            - dimensions: Vector size (default: 384)
            - char_ngram_sizes: Character n-gram sizes (default: [2, 3, 4])
            - word_ngram_sizes: Word n-gram sizes (default: [1, 2])
            - char_weight: Share of the character channel (default: 0.3)
    """

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self._dimensions = int(config.get("dimensions", 384))
        self.char_ngram_sizes: Sequence[int] = config.get("char_ngram_sizes", [2, 3, 4])
        self.word_ngram_sizes: Sequence[int] = config.get("word_ngram_sizes", [1, 2])
        self.char_weight = float(config.get("char_weight", 0.3))

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_id(self) -> str:
        return f"ngram-{self._dimensions}"

    def _hash(self, ngram: str):
        digest = hashlib.blake2b(ngram.encode("utf-8"), digest_size=8).digest()
        index = int.from_bytes(digest[:4], "little") % self._dimensions
        sign = 1.0 if digest[4] % 2 == 0 else -1.0
        return index, sign / np.sqrt(len(ngram))

    def _accumulate(self, ngrams: List[str]) -> np.ndarray:
        vector = np.zeros(self._dimensions, dtype=np.float32)
        for ngram in ngrams:
            index, value = self._hash(ngram)
            vector[index] += value
        if ngrams:
            vector /= len(ngrams)
        return normalize(vector)

    def _char_ngrams(self, text: str) -> List[str]:
        padded = f"^^{text}$$"
        grams = []
        for n in self.char_ngram_sizes:
            grams.extend(padded[i:i + n] for i in range(len(padded) - n + 1))
        return grams

    def _word_ngrams(self, text: str) -> List[str]:
        words = text.split()
        grams = []
        for n in self.word_ngram_sizes:
            grams.extend("_".join(words[i:i + n]) for i in range(len(words) - n + 1))
        return grams

    def embed(self, text: str) -> np.ndarray:
        cleaned = normalize_filename(text)
        char_vec = self._accumulate(self._char_ngrams(cleaned))
        word_vec = self._accumulate(self._word_ngrams(cleaned))
        return normalize(self.char_weight * char_vec + (1.0 - self.char_weight) * word_vec)
