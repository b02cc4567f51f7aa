"""
External collaborator interfaces and reference implementations.

The engine only talks to a perplexity oracle, a relevance predictor and a
generation backend through the abstract classes below.
"""

import logging
import math
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn.functional as F

from .errors import SegmentationError
from .utils.routing import ExpertSignature, FusionWeights, RoutingLogits

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+")

# (clause, weights, base_context) as queued by the scheduler
BatchItem = Tuple[object, FusionWeights, str]


class PerplexityOracle(ABC):
    """Scores how surprising a unit is given the units before it."""

    @abstractmethod
    def score(self, context_units: Sequence[str], next_unit: str) -> float:
        """
        Perplexity of ``next_unit`` conditioned on ``context_units``.

        Must be positive and deterministic for fixed inputs.
        """


class RelevancePredictor(ABC):
    """Predicts per-expert relevance logits for a clause."""

    @abstractmethod
    def predict(self, clause_text: str) -> RoutingLogits:
        """Map clause text to expert id -> logit over registered experts."""


class GenerationBackend(ABC):
    """Serves generation with a fused set of adapters or the base model."""

    @abstractmethod
    def generate(
        self,
        base_context: str,
        signature: ExpertSignature,
        weights: FusionWeights,
        text: str,
    ) -> str:
        """Generate for one clause with the given expert blend."""

    @abstractmethod
    def generate_base(self, text: str) -> str:
        """Generate for one clause with the unmodified base model."""

    def generate_batch(self, signature: ExpertSignature, items: Sequence[BatchItem]) -> List[str]:
        """
        Generate for a batch sharing one expert signature.

        The default runs ``generate`` per item; backends with a grouped
        kernel override this with a single call.

        Args:
            signature: Shared active-expert set
            items: (clause, weights, base_context) per request

        Returns:
            One output text per item, in order
        """
        return [
            self.generate(context, signature, weights, clause.text)
            for clause, weights, context in items
        ]


class CausalLMPerplexityOracle(PerplexityOracle):
    """
    Perplexity from a causal language model.

    The model maps input ids (1, seq_len) to logits (1, seq_len, vocab), or
    to an object with a ``logits`` attribute. The tokenizer needs
    ``encode(text) -> List[int]``.
    """

    def __init__(self, model, tokenizer, device: str = "cpu", separator: str = " "):
        """
        Initialize oracle.

        Args:
            model: Causal LM (torch module or compatible callable)
            tokenizer: Tokenizer with ``encode``
            device: Device for input tensors
            separator: String joining context units
        """
        self.model = model
        self.tokenizer = tokenizer
        self.device = torch.device(device)
        self.separator = separator
        if hasattr(model, "eval"):
            model.eval()

    def _encode(self, text: str) -> List[int]:
        return list(self.tokenizer.encode(text))

    @torch.no_grad()
    def score(self, context_units: Sequence[str], next_unit: str) -> float:
        """
        exp(mean token negative log-likelihood) of the next unit.

        Raises:
            SegmentationError: If the unit cannot be scored
        """
        target = self._encode(next_unit)
        if context_units:
            context = self._encode(self.separator.join(context_units))
        else:
            bos = getattr(self.tokenizer, "bos_token_id", None)
            context = [bos] if bos is not None else []

        if not context:
            # First token only serves as context
            context, target = target[:1], target[1:]
        if not target:
            raise SegmentationError(f"Unit too short to score: {next_unit!r}")

        input_ids = torch.tensor([context + target], dtype=torch.long, device=self.device)
        output = self.model(input_ids)
        logits = output.logits if hasattr(output, "logits") else output

        # Position t predicts token t + 1
        predictions = logits[0, len(context) - 1:-1, :].float()
        labels = input_ids[0, len(context):]
        nll = F.cross_entropy(predictions, labels)
        return float(math.exp(nll.item()))


class TagOverlapRelevancePredictor(RelevancePredictor):
    """
    Keyword relevance over the registry's active experts.

    An expert's logit is the number of its domain and compatibility tags
    found among the clause's tokens. Experts without any overlap are not
    candidates.
    """

    def __init__(self, registry):
        self.registry = registry

    def predict(self, clause_text: str) -> RoutingLogits:
        tokens = set(t.lower() for t in _TOKEN.findall(clause_text))
        logits = {}
        for expert in self.registry.active_experts():
            overlap = len(tokens & expert.keywords)
            if overlap > 0:
                logits[expert.expert_id] = float(overlap)
        return logits


class HypernetworkRelevancePredictor(RelevancePredictor):
    """
    Relevance logits from a FusionHypernetwork over clause embeddings.

    Output slot ``i`` belongs to ``expert_ids[i]``. With a registry, only
    active experts are returned.
    """

    def __init__(self, embedder, hypernetwork, expert_ids: Sequence[str], registry=None):
        if len(expert_ids) != hypernetwork.n_experts:
            raise ValueError(
                f"Got {len(expert_ids)} expert ids for {hypernetwork.n_experts} hypernetwork slots"
            )
        self.embedder = embedder
        self.hypernetwork = hypernetwork
        self.expert_ids = list(expert_ids)
        self.registry = registry
        self.hypernetwork.eval()

    @torch.no_grad()
    def predict(self, clause_text: str) -> RoutingLogits:
        embedding = torch.as_tensor(self.embedder(clause_text), dtype=torch.float32)
        embedding = embedding.to(self.hypernetwork.get_device())
        logits = self.hypernetwork(embedding).cpu().tolist()

        active: Optional[set] = None
        if self.registry is not None:
            active = set(self.registry.active_ids())

        return {
            expert_id: float(logit)
            for expert_id, logit in zip(self.expert_ids, logits)
            if active is None or expert_id in active
        }
