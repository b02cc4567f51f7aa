"""
Configuration dataclass for the fusion engine with validation.
"""

import math
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict, Optional, Tuple

# Read once when an engine is built; per-request configs may not change them
ENGINE_FIELDS = ("embedding_dim", "max_workers")


@dataclass
class FusionConfig:
    """
    Configuration for clause-level dynamic adapter fusion.

    All parameters are validated on construction. ``embedding_dim`` and
    ``max_workers`` size the engine's embedder and worker pools, so they are
    engine settings only.
    """

    # Sparsegen routing
    lambda_val: float = 0.5
    affinity_penalty: float = 0.5
    affinity_top_k: int = 3

    # Clause segmentation
    ppl_margin_threshold: float = 0.5
    min_clause_chars: int = 0

    # Semantic cache
    enable_cache: bool = True
    cache_similarity_threshold: float = 0.95
    embedding_dim: int = 384

    # Batched scheduling
    batch_max_size: int = 32
    batch_max_wait: float = 0.01  # seconds

    # Request handling
    request_timeout: Optional[float] = None  # seconds, None = no deadline
    max_workers: int = 16
    clause_separator: str = " "

    def __post_init__(self):
        """Validate configuration parameters."""
        self._validate()

    def _validate(self):
        """Validate all configuration parameters."""

        # lambda_val = 1 divides by zero in the projection
        if not math.isfinite(self.lambda_val) or not 0.0 <= self.lambda_val < 1.0:
            raise ValueError(f"lambda_val must be in [0, 1), got {self.lambda_val}")

        if not self.affinity_penalty >= 0.0:
            raise ValueError(
                f"affinity_penalty must be non-negative, got {self.affinity_penalty}"
            )

        if self.affinity_top_k < 2:
            raise ValueError(f"affinity_top_k must be at least 2, got {self.affinity_top_k}")

        if not self.ppl_margin_threshold >= 0.0:
            raise ValueError(
                f"ppl_margin_threshold must be non-negative, got {self.ppl_margin_threshold}"
            )

        if self.min_clause_chars < 0:
            raise ValueError(
                f"min_clause_chars must be non-negative, got {self.min_clause_chars}"
            )

        if not 0.0 <= self.cache_similarity_threshold <= 1.0:
            raise ValueError(
                f"cache_similarity_threshold must be between 0 and 1, "
                f"got {self.cache_similarity_threshold}"
            )

        if self.embedding_dim < 8:
            raise ValueError(f"embedding_dim must be at least 8, got {self.embedding_dim}")

        if self.batch_max_size < 1:
            raise ValueError(f"batch_max_size must be at least 1, got {self.batch_max_size}")

        if not self.batch_max_wait >= 0.0:
            raise ValueError(
                f"batch_max_wait must be non-negative, got {self.batch_max_wait}"
            )

        if self.request_timeout is not None and not self.request_timeout > 0.0:
            raise ValueError(
                f"request_timeout must be positive or None, got {self.request_timeout}"
            )

        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FusionConfig":
        """
        Build a config from a dictionary.

        Args:
            data: Mapping of field names to values

        Returns:
            Validated FusionConfig

        Raises:
            ValueError: If the mapping contains unknown keys
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**data)

    def replace(self, **overrides) -> "FusionConfig":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **overrides)

    def cache_namespace(self) -> Tuple[Any, ...]:
        """
        Settings that change a clause's fused output.

        Cached results are only shared between requests with equal namespaces.
        """
        return (
            round(self.lambda_val, 6),
            round(self.affinity_penalty, 6),
            self.affinity_top_k,
        )
