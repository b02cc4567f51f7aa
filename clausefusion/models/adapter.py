"""
Low-rank expert adapters and their weighted composition.

Implements LoRA adapters, an LRU store of loaded adapters, and a composer
that blends adapters with clause-level fusion weights. Batches sharing one
ExpertSignature are applied with a single stacked einsum.
"""

import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Hashable, List, Optional, Sequence

import torch
import torch.nn as nn
from .base import BaseModule
from ..config import FusionConfig
from ..utils.routing import ExpertSignature, FusionWeights

logger = logging.getLogger(__name__)


class LoRAAdapter(BaseModule):
    """
    Low-rank adapter for a single expert.

    The adapted output is ``hidden + scaling * hidden @ A @ B`` with
    ``scaling = alpha / rank``.
    """

    def __init__(
        self,
        target_dim: int,
        rank: int = 8,
        alpha: float = 16.0,
        config: Optional[FusionConfig] = None,
    ):
        """
        Initialize LoRA adapter.

        Args:
            target_dim: Hidden dimension the adapter acts on
            rank: Rank of the low-rank update
            alpha: LoRA scaling numerator
            config: Fusion configuration (defaults used if None)
        """
        super().__init__(config or FusionConfig())
        if rank < 1 or rank > target_dim:
            raise ValueError(f"rank must be in [1, {target_dim}], got {rank}")

        self.target_dim = target_dim
        self.rank = rank
        self.alpha = alpha
        self.scaling = alpha / rank

        # A: down-projection (target_dim -> rank)
        # B: up-projection (rank -> target_dim)
        self.lora_A = nn.Parameter(torch.empty(target_dim, rank))
        self.lora_B = nn.Parameter(torch.empty(rank, target_dim))

        self._init_parameters()

    def _init_parameters(self):
        """
        Initialize LoRA parameters.

        B starts at zero so a fresh adapter is the identity.
        """
        nn.init.kaiming_uniform_(self.lora_A, a=5**0.5)
        nn.init.zeros_(self.lora_B)

    def delta(self, hidden_states: torch.Tensor) -> torch.Tensor:
        """
        Low-rank update for hidden states.

        Args:
            hidden_states: (..., target_dim)

        Returns:
            delta: (..., target_dim)
        """
        return hidden_states @ self.lora_A @ self.lora_B * self.scaling

    def delta_weight(self) -> torch.Tensor:
        """
        Dense update matrix, so that ``x @ delta_weight() == delta(x)``.

        Returns:
            delta_weight: (target_dim, target_dim)
        """
        return self.scaling * (self.lora_A @ self.lora_B)

    def forward(self, hidden_states: torch.Tensor) -> torch.Tensor:
        """
        Apply adapter to hidden states.

        Args:
            hidden_states: (..., target_dim) - Input hidden states

        Returns:
            adapted_states: (..., target_dim)
        """
        if hidden_states.size(-1) != self.target_dim:
            raise ValueError(
                f"Expected last dimension {self.target_dim}, got {hidden_states.size(-1)}"
            )
        return hidden_states + self.delta(hidden_states)

    def get_lora_params(self) -> int:
        """Number of parameters in the LoRA matrices."""
        return self.lora_A.numel() + self.lora_B.numel()


class AdapterStore:
    """
    Thread-safe LRU cache of loaded adapters keyed by storage handle.

    Adapters are loaded on first use through ``loader`` and the least
    recently used one is dropped once ``capacity`` is exceeded.
    """

    def __init__(self, loader: Callable[[Any], LoRAAdapter], capacity: int = 16):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._loader = loader
        self._capacity = capacity
        self._store: "OrderedDict[Hashable, LoRAAdapter]" = OrderedDict()
        self._lock = threading.RLock()
        self.loads = 0

    def get(self, handle: Hashable) -> LoRAAdapter:
        """Fetch an adapter, loading it if it is not resident."""
        with self._lock:
            adapter = self._store.get(handle)
            if adapter is not None:
                self._store.move_to_end(handle)
                return adapter

            adapter = self._loader(handle)
            adapter.eval()
            self.loads += 1
            self._store[handle] = adapter
            while len(self._store) > self._capacity:
                evicted, _ = self._store.popitem(last=False)
                logger.debug(f"Evicted adapter {evicted!r} from store")
            return adapter

    def put(self, handle: Hashable, adapter: LoRAAdapter) -> None:
        """Insert an already-built adapter."""
        with self._lock:
            self._store[handle] = adapter
            self._store.move_to_end(handle)
            while len(self._store) > self._capacity:
                self._store.popitem(last=False)

    def discard(self, handle: Hashable) -> None:
        with self._lock:
            self._store.pop(handle, None)

    def __contains__(self, handle: Hashable) -> bool:
        with self._lock:
            return handle in self._store

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class DynamicLoRAComposer:
    """
    Blends expert adapters with clause-level fusion weights.

    Expert ids are resolved to storage handles through the registry and
    handles to adapters through the store.
    """

    def __init__(self, store: AdapterStore, registry):
        """
        Initialize composer.

        Args:
            store: AdapterStore holding loaded adapters
            registry: ExpertRegistry resolving expert ids to storage handles
        """
        self.store = store
        self.registry = registry

    def adapters_for(self, expert_ids: Sequence[str]) -> List[LoRAAdapter]:
        """
        Resolve expert ids to adapters.

        Raises:
            RegistryError: If an expert id is unknown
            ValueError: If the adapters disagree on target dimension
        """
        adapters = []
        for expert_id in expert_ids:
            expert = self.registry.get(expert_id)
            handle = expert.storage_handle if expert.storage_handle is not None else expert_id
            adapters.append(self.store.get(handle))

        dims = {a.target_dim for a in adapters}
        if len(dims) > 1:
            raise ValueError(f"Adapters have mismatched target dims: {sorted(dims)}")
        return adapters

    @torch.no_grad()
    def compose(self, weights: FusionWeights) -> torch.Tensor:
        """
        Weighted sum of adapter update matrices.

        Args:
            weights: Fusion weights over experts

        Returns:
            delta_weight: (target_dim, target_dim)
        """
        if weights.is_empty():
            raise ValueError("Cannot compose adapters from empty fusion weights")

        expert_ids = [e for e, _ in weights.items()]
        adapters = self.adapters_for(expert_ids)

        composed = torch.zeros_like(adapters[0].delta_weight())
        for adapter, (_, w) in zip(adapters, weights.items()):
            composed += w * adapter.delta_weight()
        return composed

    @torch.no_grad()
    def apply(self, hidden_states: torch.Tensor, weights: FusionWeights) -> torch.Tensor:
        """
        Apply one blended adapter to hidden states.

        Args:
            hidden_states: (..., target_dim)
            weights: Fusion weights over experts

        Returns:
            adapted: (..., target_dim)
        """
        if weights.is_empty():
            return hidden_states
        return hidden_states + hidden_states @ self.compose(weights)

    @torch.no_grad()
    def apply_grouped(
        self,
        signature: ExpertSignature,
        hidden_batch: torch.Tensor,
        weights_list: Sequence[FusionWeights],
    ) -> torch.Tensor:
        """
        Apply per-item blends for a batch sharing one expert signature.

        All adapters of the signature are stacked once and every item is
        evaluated in one einsum chain; the result equals calling ``apply``
        item by item.

        Args:
            signature: Shared active-expert set of the batch
            hidden_batch: (batch, seq_len, target_dim) or (batch, target_dim)
            weights_list: One FusionWeights per batch item

        Returns:
            adapted: Same shape as hidden_batch
        """
        if len(weights_list) != hidden_batch.size(0):
            raise ValueError(
                f"Got {len(weights_list)} weight sets for a batch of {hidden_batch.size(0)}"
            )
        for weights in weights_list:
            if weights.signature != signature:
                raise ValueError(
                    f"Weights over {weights.signature} do not match batch signature {signature}"
                )
        if signature.is_empty():
            return hidden_batch

        squeeze = hidden_batch.dim() == 2
        if squeeze:
            hidden_batch = hidden_batch.unsqueeze(1)

        expert_ids = list(signature.key)
        adapters = self.adapters_for(expert_ids)

        A = torch.stack([a.lora_A for a in adapters])  # (E, d, r)
        B = torch.stack([a.lora_B for a in adapters])  # (E, r, d)
        scaling = torch.tensor([a.scaling for a in adapters], dtype=A.dtype, device=A.device)

        W = torch.tensor(
            [[w.get(e) for e in expert_ids] for w in weights_list],
            dtype=A.dtype,
            device=A.device,
        )  # (batch, E)
        W = W * scaling.unsqueeze(0)

        low = torch.einsum("bld,edr->bler", hidden_batch, A)
        up = torch.einsum("bler,erd->bled", low, B)
        adapted = hidden_batch + torch.einsum("be,bled->bld", W, up)

        return adapted.squeeze(1) if squeeze else adapted
