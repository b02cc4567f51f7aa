"""
Fusion hypernetwork: clause embedding to per-expert relevance logits.
"""

import torch
import torch.nn as nn
from typing import Optional
from .base import BaseModule
from ..config import FusionConfig


class FusionHypernetwork(BaseModule):
    """
    Small MLP scoring every expert slot from a pooled clause embedding.

    The logits feed the Sparsegen router; this module never normalizes
    them itself.
    """

    def __init__(
        self,
        n_experts: int,
        config: Optional[FusionConfig] = None,
        hidden_dim: int = 256,
        dropout: float = 0.1,
    ):
        """
        Initialize hypernetwork.

        Args:
            n_experts: Number of expert slots (output logits)
            config: Fusion configuration (embedding_dim is the input size)
            hidden_dim: Hidden layer width
            dropout: Dropout probability during training
        """
        super().__init__(config or FusionConfig())
        if n_experts < 1:
            raise ValueError(f"n_experts must be positive, got {n_experts}")

        self.n_experts = n_experts
        self.input_dim = self.config.embedding_dim

        self.encoder = nn.Sequential(
            nn.Linear(self.input_dim, hidden_dim),
            nn.GELU(),
            nn.Dropout(dropout),
            nn.LayerNorm(hidden_dim),
        )

        # Expert scorer
        self.expert_scorer = nn.Linear(hidden_dim, n_experts)

        nn.init.normal_(self.encoder[0].weight, std=0.02)
        nn.init.zeros_(self.encoder[0].bias)
        nn.init.normal_(self.expert_scorer.weight, std=0.02)
        nn.init.zeros_(self.expert_scorer.bias)

    def forward(self, embeddings: torch.Tensor) -> torch.Tensor:
        """
        Score experts.

        Args:
            embeddings: (batch, embedding_dim) or (embedding_dim,) - Clause embeddings

        Returns:
            logits: (batch, n_experts) or (n_experts,) - Relevance logits
        """
        squeeze = embeddings.dim() == 1
        if squeeze:
            embeddings = embeddings.unsqueeze(0)

        self.validate_input(embeddings, expected_shape=(None, self.input_dim))

        hidden = self.encoder(embeddings)  # (batch, hidden_dim)
        logits = self.expert_scorer(hidden)  # (batch, n_experts)

        return logits.squeeze(0) if squeeze else logits
