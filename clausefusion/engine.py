"""
Clause-level fusion engine.

Orchestrates segmentation, routing, semantic caching, batched generation and
ordered reassembly for each request.
"""

import itertools
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .affinity import TaskAffinityMap
from .cache import CacheEntry, SemanticCache
from .config import ENGINE_FIELDS, FusionConfig
from .errors import ComputationAbandoned, FusionError, FusionTimeoutError, RoutingDegenerate
from .models.embeddings import HashingTextEmbedder
from .models.router import SparsegenRouter
from .registry import Expert, ExpertRegistry
from .scheduler import BatchedFusionScheduler
from .segmenter import Clause, ClauseSegmenter
from .utils.logging import setup_logger
from .utils.metrics import FusionDiagnostics
from .utils.routing import FusionWeights

logger = setup_logger("clausefusion.engine")


class RequestState(str, Enum):
    SEGMENTING = "segmenting"
    ROUTING = "routing"
    CACHE_HIT = "cache_hit"
    GENERATING = "generating"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    RequestState.SEGMENTING: {RequestState.ROUTING, RequestState.DONE},
    RequestState.ROUTING: {RequestState.CACHE_HIT, RequestState.GENERATING},
    RequestState.CACHE_HIT: {RequestState.DONE},
    RequestState.GENERATING: {RequestState.DONE},
    RequestState.DONE: set(),
    RequestState.FAILED: set(),
}


@dataclass(frozen=True)
class ClauseOutput:
    """Generated text for one clause and how it was produced."""

    clause: Clause
    weights: FusionWeights
    text: str
    cached: bool = False
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.clause.index,
            "clause": self.clause.text,
            "start": self.clause.start,
            "end": self.clause.end,
            "weights": self.weights.to_dict(),
            "signature": str(self.weights.signature),
            "text": self.text,
            "cached": self.cached,
            "fallback": self.fallback,
        }


@dataclass(frozen=True)
class FusionResult:
    """
    Ordered clause outputs and their concatenation.

    Iterating yields (clause, weights, text) triples in clause order.
    """

    outputs: Tuple[ClauseOutput, ...]
    text: str
    states: Tuple[RequestState, ...] = field(default=())

    def __iter__(self):
        return iter((o.clause, o.weights, o.text) for o in self.outputs)

    def __len__(self) -> int:
        return len(self.outputs)

    @property
    def clauses(self) -> List[Clause]:
        return [o.clause for o in self.outputs]

    def aggregate_weights(self) -> Dict[str, float]:
        """Mean fusion weights over clauses that were not base fallbacks."""
        fused = [o.weights for o in self.outputs if not o.weights.is_empty()]
        if not fused:
            return {}
        totals: Dict[str, float] = {}
        for weights in fused:
            for expert_id, w in weights.items():
                totals[expert_id] = totals.get(expert_id, 0.0) + w
        return {e: totals[e] / len(fused) for e in sorted(totals)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "fusion_weights": self.aggregate_weights(),
            "clauses": [o.to_dict() for o in self.outputs],
        }


class _RequestTracker:
    """Per-request state machine shared by the request's clause tasks."""

    def __init__(self, request_id: int):
        self.request_id = request_id
        self._lock = threading.Lock()
        self.state = RequestState.SEGMENTING
        self.history: List[RequestState] = [RequestState.SEGMENTING]
        logger.debug(f"Request {request_id}: -> {self.state.value}")

    def advance(self, state: RequestState) -> None:
        with self._lock:
            if state == self.state:
                return
            if state != RequestState.FAILED and state not in _TRANSITIONS[self.state]:
                raise RuntimeError(
                    f"Invalid request transition {self.state.value} -> {state.value}"
                )
            logger.debug(f"Request {self.request_id}: {self.state.value} -> {state.value}")
            self.state = state
            self.history.append(state)

    def mark_generating(self) -> None:
        with self._lock:
            if self.state != RequestState.ROUTING:
                return
        self.advance(RequestState.GENERATING)


class FusionEngine:
    """
    Clause-level dynamic adapter fusion.

    Each request is segmented into clauses, and every clause is routed,
    looked up in the semantic cache and (on a miss) generated through the
    batched scheduler in parallel. Clause outputs land in per-ordinal slots
    and are joined in clause order once all are filled.
    """

    def __init__(
        self,
        registry: ExpertRegistry,
        predictor,
        oracle,
        backend,
        affinity: Optional[TaskAffinityMap] = None,
        config: Optional[FusionConfig] = None,
        cache: Optional[SemanticCache] = None,
        embedder=None,
    ):
        """
        Initialize engine.

        Args:
            registry: Expert registry
            predictor: RelevancePredictor producing per-expert logits
            oracle: PerplexityOracle for segmentation
            backend: GenerationBackend
            affinity: TaskAffinityMap (empty map if None)
            config: Default request configuration
            cache: SemanticCache (built from config if None)
            embedder: Fingerprint embedder for a default cache
        """
        self.config = config or FusionConfig()
        self.registry = registry
        self.predictor = predictor
        self.backend = backend
        self.affinity = affinity or TaskAffinityMap(registry)

        self.diagnostics = FusionDiagnostics()
        self.router = SparsegenRouter(self.config)
        self.segmenter = ClauseSegmenter(oracle, self.config)
        self.cache = cache or SemanticCache(
            embedder or HashingTextEmbedder(self.config.embedding_dim),
            threshold=self.config.cache_similarity_threshold,
            validator=self._cache_entry_valid,
        )
        self.scheduler = BatchedFusionScheduler(
            backend, self.config, diagnostics=self.diagnostics
        )
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="clausefusion-clause",
        )
        self._request_ids = itertools.count(1)
        self._closed = False

        registry.add_listener(self._on_registry_change)
        logger.info(f"Fusion engine initialized with config: {self.config}")

    # Registration API

    def register_expert(
        self,
        expert_id: str,
        domain: str,
        tags: Iterable[str] = (),
        storage_handle: Any = None,
    ) -> Expert:
        return self.registry.register_expert(expert_id, domain, tags, storage_handle)

    def deactivate_expert(self, expert_id: str) -> Expert:
        return self.registry.deactivate_expert(expert_id)

    def recompute_affinity(
        self,
        performance_matrix: np.ndarray,
        expert_ids: Sequence[str],
    ) -> Dict[str, Tuple[float, float]]:
        """Rebuild the affinity map; cached fusion results are dropped."""
        positions = self.affinity.recompute(performance_matrix, expert_ids)
        self.cache.invalidate()
        return positions

    def _on_registry_change(self) -> None:
        self.cache.invalidate()

    def _cache_entry_valid(self, entry: CacheEntry) -> bool:
        expert_ids = entry.namespace[0] if entry.namespace else ()
        return self.registry.all_active(expert_ids)

    # Request entry point

    def fuse_and_generate(
        self,
        text: str,
        config: Union[FusionConfig, Mapping[str, Any], None] = None,
    ) -> FusionResult:
        """
        Generate text with clause-level expert fusion.

        Args:
            text: Request text
            config: FusionConfig, mapping of overrides, or None for defaults

        Returns:
            FusionResult with clause outputs in original order

        Raises:
            SegmentationError: If segmentation fails
            FusionTimeoutError: If the request deadline passes
            BatchDispatchError: If the backend failed on a clause's batch
        """
        if self._closed:
            raise RuntimeError("Engine is closed")

        cfg = self._resolve_config(config)
        deadline = None
        if cfg.request_timeout is not None:
            deadline = time.monotonic() + cfg.request_timeout

        tracker = _RequestTracker(next(self._request_ids))
        try:
            outputs = self._run(text, cfg, deadline, tracker)
        except Exception as exc:
            tracker.advance(RequestState.FAILED)
            self.diagnostics.update_request(failed=True)
            logger.error(f"Request {tracker.request_id} failed: {type(exc).__name__}: {exc}")
            raise

        tracker.advance(RequestState.DONE)
        self.diagnostics.update_request()
        return FusionResult(
            outputs=tuple(outputs),
            text=cfg.clause_separator.join(o.text for o in outputs),
            states=tuple(tracker.history),
        )

    def _resolve_config(self, config) -> FusionConfig:
        if config is None:
            return self.config
        if isinstance(config, Mapping):
            config = FusionConfig.from_dict({**self.config.to_dict(), **dict(config)})
        elif not isinstance(config, FusionConfig):
            raise TypeError(f"config must be a FusionConfig or mapping, got {type(config).__name__}")

        changed = [
            name for name in ENGINE_FIELDS
            if getattr(config, name) != getattr(self.config, name)
        ]
        if changed:
            raise ValueError(
                f"{changed} are engine settings and cannot be overridden per request"
            )
        return config

    def _run(self, text, cfg, deadline, tracker) -> List[ClauseOutput]:
        clauses = self.segmenter.segment(
            text,
            threshold=cfg.ppl_margin_threshold,
            deadline=deadline,
            min_clause_chars=cfg.min_clause_chars,
        )
        if not clauses:
            return []

        tracker.advance(RequestState.ROUTING)

        slots: List[Optional[ClauseOutput]] = [None] * len(clauses)
        pending = {
            self._pool.submit(self._process_clause, clause, text, cfg, deadline, tracker): clause.index
            for clause in clauses
        }
        try:
            while pending:
                done, _ = wait(pending, timeout=_remaining(deadline), return_when=FIRST_COMPLETED)
                if not done:
                    raise FusionTimeoutError(
                        f"Deadline exceeded with {len(pending)} of {len(clauses)} clauses pending"
                    )
                for future in done:
                    slots[pending.pop(future)] = future.result()
        finally:
            for future in pending:
                future.cancel()

        if any(not o.cached and not o.fallback for o in slots):
            tracker.mark_generating()
        elif tracker.state == RequestState.ROUTING:
            tracker.advance(
                RequestState.CACHE_HIT if any(o.cached for o in slots) else RequestState.GENERATING
            )
        return slots

    # Per-clause pipeline

    def _process_clause(self, clause: Clause, source: str, cfg: FusionConfig, deadline, tracker) -> ClauseOutput:
        try:
            weights = self._route(clause, cfg)
        except RoutingDegenerate as exc:
            logger.warning(f"{exc}; generating clause {clause.index} with the base model")
            return self._fallback(clause, deadline)
        except FusionError as exc:
            logger.warning(
                f"Routing failed for clause {clause.index} ({exc}); falling back to base model"
            )
            return self._fallback(clause, deadline)

        self.diagnostics.update_routing(weights)
        base_context = source[:clause.start]

        if not cfg.enable_cache:
            text = self._generate(clause, weights, base_context, cfg, deadline, tracker)
            return ClauseOutput(clause, weights, text)

        namespace = (weights.signature.key, cfg.cache_namespace())
        while True:
            ticket = self.cache.begin(
                clause.text, namespace, threshold=cfg.cache_similarity_threshold
            )
            if ticket.is_hit:
                self.diagnostics.update_cache(hit=True)
                return ClauseOutput(clause, weights, ticket.result, cached=True)

            if ticket.is_joiner:
                try:
                    text = ticket.wait(_remaining(deadline))
                except ComputationAbandoned:
                    continue
                self.diagnostics.update_cache(hit=True)
                return ClauseOutput(clause, weights, text, cached=True)

            self.diagnostics.update_cache(hit=False)
            try:
                text = self._generate(clause, weights, base_context, cfg, deadline, tracker)
            except BaseException as exc:
                ticket.abandon(exc)
                raise
            ticket.complete(text)
            return ClauseOutput(clause, weights, text)

    def _route(self, clause: Clause, cfg: FusionConfig) -> FusionWeights:
        try:
            logits = self.predictor.predict(clause.text)
        except Exception as exc:
            raise FusionError(f"Relevance predictor failed on clause {clause.index}: {exc}") from exc

        # Experts unknown to or deactivated in the registry are not candidates
        candidates = {e: v for e, v in logits.items() if self.registry.is_active(e)}
        if not candidates:
            raise RoutingDegenerate(f"No candidate expert for clause {clause.index}")

        weights = self.router.route(
            clause, candidates, self.affinity, lambda_val=cfg.lambda_val, config=cfg
        )
        if weights.is_empty():
            raise RoutingDegenerate(f"Empty fusion weights for clause {clause.index}")
        return weights

    def _generate(self, clause, weights, base_context, cfg, deadline, tracker) -> str:
        tracker.mark_generating()
        request = self.scheduler.submit(
            clause,
            weights,
            base_context=base_context,
            max_size=cfg.batch_max_size,
            max_wait=cfg.batch_max_wait,
        )
        return self.scheduler.wait(request, _remaining(deadline))

    def _fallback(self, clause: Clause, deadline) -> ClauseOutput:
        if deadline is not None and time.monotonic() >= deadline:
            raise FusionTimeoutError(f"Deadline exceeded before base generation of clause {clause.index}")
        self.diagnostics.update_fallback()
        text = self.backend.generate_base(clause.text)
        return ClauseOutput(clause, FusionWeights.empty(), text, fallback=True)

    # Lifecycle

    def close(self) -> None:
        """Detach from the registry and shut down the scheduler and worker pools."""
        if self._closed:
            return
        self._closed = True
        self.registry.remove_listener(self._on_registry_change)
        self.scheduler.close()
        self._pool.shutdown(wait=True)
        self.segmenter.close()
        logger.info("Fusion engine closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())
