"""
Torch components of the fusion engine.
"""

from .base import BaseModule
from .embeddings import HashingTextEmbedder, cosine_similarity
from .hypernetwork import FusionHypernetwork
from .router import SparsegenRouter, sparsegen_lin, clamp_lambda
from .adapter import LoRAAdapter, AdapterStore, DynamicLoRAComposer

__all__ = [
    "BaseModule",
    "HashingTextEmbedder",
    "cosine_similarity",
    "FusionHypernetwork",
    "SparsegenRouter",
    "sparsegen_lin",
    "clamp_lambda",
    "LoRAAdapter",
    "AdapterStore",
    "DynamicLoRAComposer",
]
