"""
Text embedding for semantic fingerprints and hypernetwork inputs.
"""

import hashlib
import re
from typing import Tuple

import numpy as np

_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(r"\w+")


class HashingTextEmbedder:
    """
    Deterministic hashed character n-gram embedding.

    Character n-grams and word unigrams are hashed into ``dim`` buckets with
    a stable digest, so fingerprints agree across processes. Entries are
    non-negative and the vector is L2-normalized, so cosine similarity
    between two embeddings lies in [0, 1].
    """

    def __init__(self, dim: int = 384, ngram_range: Tuple[int, int] = (2, 4)):
        """
        Initialize embedder.

        Args:
            dim: Embedding dimension
            ngram_range: Inclusive (min, max) character n-gram lengths
        """
        if dim < 1:
            raise ValueError(f"dim must be positive, got {dim}")
        low, high = ngram_range
        if not 1 <= low <= high:
            raise ValueError(f"invalid ngram_range {ngram_range}")

        self.dim = dim
        self.ngram_range = ngram_range

    def _bucket(self, feature: str) -> int:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "little") % self.dim

    def features(self, text: str):
        """Yield the hashed features of a text."""
        normalized = _WHITESPACE.sub(" ", text.lower()).strip()
        if not normalized:
            return

        padded = f" {normalized} "
        low, high = self.ngram_range
        for n in range(low, high + 1):
            for i in range(len(padded) - n + 1):
                yield f"c{n}:{padded[i:i + n]}"

        for word in _WORD.findall(normalized):
            yield f"w:{word}"

    def __call__(self, text: str) -> np.ndarray:
        """
        Embed a text.

        Args:
            text: Input text

        Returns:
            embedding: (dim,) float32, unit norm (all zeros for blank text)
        """
        vec = np.zeros(self.dim, dtype=np.float32)
        for feature in self.features(text):
            vec[self._bucket(feature)] += 1.0

        norm = float(np.linalg.norm(vec))
        if norm > 0:
            vec /= norm
        return vec


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors (0 if either is all zeros)."""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    na = np.linalg.norm(a)
    nb = np.linalg.norm(b)
    if na == 0 or nb == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / (na * nb), -1.0, 1.0))
