"""
Sparsegen router for clause-level expert selection.
"""

import logging
import math
from typing import List, Mapping, Optional

import torch

from .base import BaseModule
from ..config import FusionConfig
from ..errors import FusionError, NumericInstability
from ..utils.routing import FusionWeights
from ..utils.validation import check_finite, sanitize_logits, validate_weights

logger = logging.getLogger(__name__)

LAMBDA_MAX = 0.99


def clamp_lambda(lambda_val: float) -> float:
    """
    Clamp the sparsity control to [0, 0.99].

    Raises:
        ValueError: If lambda_val is not finite
    """
    lambda_val = float(lambda_val)
    if not math.isfinite(lambda_val):
        raise ValueError(f"lambda_val must be finite, got {lambda_val}")
    return min(max(lambda_val, 0.0), LAMBDA_MAX)


def sparsegen_lin(u: torch.Tensor, lambda_val: float, eps: float = 1e-10) -> torch.Tensor:
    """
    Project logits onto the probability simplex with tunable sparsity.

    lambda_val near 0.99 gives a near one-hot output, 0 gives the densest
    (sparsemax) projection.

    Args:
        u: (n,) - Logits
        lambda_val: Sparsity control, clamped to [0, 0.99]
        eps: Guard for the all-zero degenerate case

    Returns:
        p: (n,) - Non-negative weights summing to 1, in the order of u

    Raises:
        NumericInstability: If no support size satisfies the projection
    """
    lambda_val = clamp_lambda(lambda_val)
    n = u.numel()
    if n == 0:
        return u.clone()
    if n == 1:
        return torch.ones_like(u)

    # The projection is shift-invariant; centring on the max keeps the
    # prefix sums exact for very large logits
    u_sorted, indices = torch.sort(u - u.max(), descending=True)
    U = torch.cumsum(u_sorted, dim=0)
    k_vals = torch.arange(1, n + 1, dtype=u.dtype, device=u.device)

    # Support size: largest k with (1 - lambda) + k * u_(k) > U_k
    condition = (1 - lambda_val) + k_vals * u_sorted > U
    support = torch.nonzero(condition)
    if support.numel() == 0:
        raise NumericInstability("Sparsegen projection found an empty support")
    k_star = int(support.max().item()) + 1

    # Threshold
    tau = (U[k_star - 1] - 1 + lambda_val) / k_star

    # Project to sparse distribution
    p_sorted = torch.clamp((u_sorted - tau) / (1 - lambda_val), min=0)

    # Direct assignment back to original order
    p = torch.zeros_like(u)
    p[indices] = p_sorted

    return p / (p.sum() + eps)


class SparsegenRouter(BaseModule):
    """
    Maps per-expert relevance logits to sparse fusion weights.

    Before projection, each candidate's logit is reduced in proportion to
    its mean affinity distance to the other high-logit candidates, which
    discourages blending behaviorally dissimilar experts.
    """

    def __init__(self, config: Optional[FusionConfig] = None):
        """
        Initialize router.

        Args:
            config: Fusion configuration (defaults used if None)
        """
        super().__init__(config or FusionConfig())

    def affinity_penalties(self, u: torch.Tensor, costs: torch.Tensor, top_k: int) -> torch.Tensor:
        """
        Mean fusion cost of each candidate to the top-k candidates.

        Args:
            u: (n,) - Raw logits
            costs: (n, n) - Pairwise fusion costs, zero diagonal
            top_k: Size of the high-logit set

        Returns:
            penalties: (n,) - Values in [0, 1]
        """
        n = u.numel()
        if n < 2:
            return torch.zeros_like(u)

        k = min(top_k, n)
        top = torch.topk(u, k).indices
        mask = torch.zeros(n, n, dtype=u.dtype, device=u.device)
        mask[:, top] = 1.0
        mask.fill_diagonal_(0.0)

        counts = mask.sum(dim=1)
        totals = (costs * mask).sum(dim=1)
        return torch.where(counts > 0, totals / counts.clamp(min=1.0), torch.zeros_like(u))

    def forward(
        self,
        u: torch.Tensor,
        costs: Optional[torch.Tensor] = None,
        lambda_val: Optional[float] = None,
        config: Optional[FusionConfig] = None,
    ) -> torch.Tensor:
        """
        Compute fusion weights for one clause.

        Args:
            u: (n,) - Candidate logits
            costs: (n, n) - Pairwise fusion costs (None = no penalty)
            lambda_val: Sparsity control (config value if None)
            config: Per-request configuration overriding the router's

        Returns:
            p: (n,) - Sparse weights in the order of u

        Raises:
            NumericInstability: If logits or weights are not finite
        """
        config = config or self.config
        self.validate_input(u, expected_shape=(None,))
        if lambda_val is None:
            lambda_val = config.lambda_val

        adjusted = u
        if costs is not None and config.affinity_penalty > 0:
            penalties = self.affinity_penalties(u, costs, config.affinity_top_k)
            adjusted = u - config.affinity_penalty * penalties

        p = sparsegen_lin(adjusted, lambda_val)
        check_finite(p, "fusion weights")
        return p

    def route(
        self,
        clause,
        candidate_logits: Mapping[str, float],
        affinity=None,
        lambda_val: Optional[float] = None,
        config: Optional[FusionConfig] = None,
    ) -> FusionWeights:
        """
        Route a clause to a sparse blend of experts.

        Non-finite logits are sanitized and the projection retried once.

        Args:
            clause: Clause being routed (used for logging)
            candidate_logits: Expert id -> relevance logit
            affinity: Optional TaskAffinityMap for the fusion-cost penalty
            lambda_val: Sparsity control (config value if None)
            config: Per-request configuration overriding the router's

        Returns:
            weights: FusionWeights (empty when there are no candidates)

        Raises:
            FusionError: If the weights stay non-finite after sanitizing
        """
        if not candidate_logits:
            return FusionWeights.empty()

        expert_ids: List[str] = list(candidate_logits)
        u = torch.tensor(
            [float(candidate_logits[e]) for e in expert_ids], dtype=torch.float64
        )

        costs = None
        if affinity is not None and len(expert_ids) > 1:
            costs = torch.as_tensor(affinity.cost_matrix(expert_ids), dtype=torch.float64)

        try:
            return self._project(expert_ids, u, costs, lambda_val, config)
        except NumericInstability as exc:
            logger.warning(f"Sanitizing routing logits for clause {_ordinal(clause)}: {exc}")

        try:
            return self._project(expert_ids, sanitize_logits(u), costs, lambda_val, config)
        except NumericInstability as exc:
            raise FusionError(
                f"Routing stayed numerically unstable for clause {_ordinal(clause)}"
            ) from exc

    def _project(self, expert_ids, u, costs, lambda_val, config) -> FusionWeights:
        with torch.no_grad():
            p = self.forward(u, costs, lambda_val, config)
        weights = FusionWeights({e: float(w) for e, w in zip(expert_ids, p.tolist())})
        validate_weights(weights)
        return weights


def _ordinal(clause) -> str:
    return str(getattr(clause, "index", "?"))
