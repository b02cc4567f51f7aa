"""
Routing data structures: fusion weights and expert signatures.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterator, List, Mapping, Tuple

# Expert id -> relevance score for one clause
RoutingLogits = Dict[str, float]

WEIGHT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class ExpertSignature:
    """
    Order-independent identity of an active-expert support set.

    Used as the grouping key for batching and as part of the cache key.
    """

    expert_ids: FrozenSet[str]

    @classmethod
    def of(cls, expert_ids) -> "ExpertSignature":
        return cls(frozenset(expert_ids))

    @property
    def key(self) -> Tuple[str, ...]:
        """Canonical sorted tuple form."""
        return tuple(sorted(self.expert_ids))

    def is_empty(self) -> bool:
        return not self.expert_ids

    def __len__(self) -> int:
        return len(self.expert_ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self.key)

    def __str__(self) -> str:
        return "+".join(self.key) if self.expert_ids else "<base>"


@dataclass(frozen=True)
class FusionWeights:
    """
    Sparse probability distribution over experts for one clause.

    Only experts with strictly positive weight are stored, so the support
    may be a strict subset of the routed candidates. A non-empty instance
    sums to 1 within WEIGHT_TOLERANCE.
    """

    weights: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        # Physically drop zero weights from the active set
        cleaned = {k: float(v) for k, v in self.weights.items() if v > 0.0}
        object.__setattr__(self, "weights", cleaned)

    @classmethod
    def empty(cls) -> "FusionWeights":
        return cls({})

    @property
    def signature(self) -> ExpertSignature:
        return ExpertSignature.of(self.weights.keys())

    @property
    def support(self) -> FrozenSet[str]:
        return frozenset(self.weights)

    def is_empty(self) -> bool:
        return not self.weights

    def total(self) -> float:
        return math.fsum(self.weights.values())

    def dominant(self) -> str:
        """Expert id with the largest weight (ties broken by id)."""
        if not self.weights:
            raise ValueError("Empty fusion weights have no dominant expert")
        return max(sorted(self.weights), key=lambda k: self.weights[k])

    def get(self, expert_id: str, default: float = 0.0) -> float:
        return self.weights.get(expert_id, default)

    def items(self) -> List[Tuple[str, float]]:
        return sorted(self.weights.items())

    def to_dict(self) -> Dict[str, float]:
        return dict(self.items())

    def __len__(self) -> int:
        return len(self.weights)

    def __contains__(self, expert_id: str) -> bool:
        return expert_id in self.weights
