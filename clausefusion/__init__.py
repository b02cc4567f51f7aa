"""
Clause-level dynamic adapter fusion.

Segments text into clauses at perplexity minima, routes every clause to a
sparse blend of low-rank expert adapters, and serves generation through a
semantic cache and a signature-batched scheduler.
"""

__version__ = "0.1.0"

from .config import FusionConfig
from .errors import (
    FusionError,
    SegmentationError,
    RoutingDegenerate,
    NumericInstability,
    RegistryError,
    FusionTimeoutError,
    ComputationAbandoned,
    BatchDispatchError,
)
from .registry import Expert, ExpertRegistry
from .affinity import TaskAffinityMap, correlation_to_distance, build_performance_matrix
from .segmenter import Clause, ClauseSegmenter, split_units, find_boundaries
from .cache import CacheEntry, CacheTicket, SemanticCache
from .scheduler import BatchedFusionScheduler, ScheduledRequest
from .backends import (
    PerplexityOracle,
    RelevancePredictor,
    GenerationBackend,
    CausalLMPerplexityOracle,
    TagOverlapRelevancePredictor,
    HypernetworkRelevancePredictor,
)
from .engine import ClauseOutput, FusionEngine, FusionResult, RequestState
from .utils.routing import ExpertSignature, FusionWeights

__all__ = [
    "FusionConfig",
    "FusionError",
    "SegmentationError",
    "RoutingDegenerate",
    "NumericInstability",
    "RegistryError",
    "FusionTimeoutError",
    "ComputationAbandoned",
    "BatchDispatchError",
    "Expert",
    "ExpertRegistry",
    "TaskAffinityMap",
    "correlation_to_distance",
    "build_performance_matrix",
    "Clause",
    "ClauseSegmenter",
    "split_units",
    "find_boundaries",
    "CacheEntry",
    "CacheTicket",
    "SemanticCache",
    "BatchedFusionScheduler",
    "ScheduledRequest",
    "PerplexityOracle",
    "RelevancePredictor",
    "GenerationBackend",
    "CausalLMPerplexityOracle",
    "TagOverlapRelevancePredictor",
    "HypernetworkRelevancePredictor",
    "ClauseOutput",
    "FusionEngine",
    "FusionResult",
    "RequestState",
    "ExpertSignature",
    "FusionWeights",
]
