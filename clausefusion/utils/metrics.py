"""
Diagnostic metrics for the fusion engine.

Implements runtime metrics for monitoring routing and serving behavior:
- Routing entropy of clause fusion weights
- Per-expert utilization
- Semantic cache hit rate
- Batch occupancy and shared batch failures
"""

import math
import threading
from collections import Counter
from typing import Dict, Iterable, List

from .routing import FusionWeights


class RoutingEntropyMetric:
    """
    Entropy of clause-level fusion weights.

    Higher entropy means denser blends; 0 means single-expert routing.
    """

    def __init__(self):
        self.entropies: List[float] = []
        self.normalized: List[float] = []

    def update(self, weights: FusionWeights) -> None:
        """
        Record the weights of one routed clause.

        Args:
            weights: Fusion weights (empty weights are ignored)
        """
        if weights.is_empty():
            return

        # H = -sum(p * log(p))
        entropy = -sum(p * math.log(p) for _, p in weights.items() if p > 0)
        max_entropy = math.log(len(weights))

        self.entropies.append(entropy)
        self.normalized.append(entropy / max_entropy if max_entropy > 0 else 0.0)

    def compute(self) -> float:
        """Mean entropy over recorded clauses."""
        if not self.entropies:
            return 0.0
        return float(sum(self.entropies) / len(self.entropies))

    def compute_normalized(self) -> float:
        """Mean entropy normalized by the support size (0 to 1)."""
        if not self.normalized:
            return 0.0
        return float(sum(self.normalized) / len(self.normalized))

    def reset(self) -> None:
        self.entropies.clear()
        self.normalized.clear()


class ExpertUtilizationTracker:
    """
    Track how often each expert is active in a clause blend.

    Monitors per-expert activation frequency to identify underutilized experts.
    """

    def __init__(self):
        self.expert_counts: Counter = Counter()
        self.total_steps = 0

    def update(self, weights: FusionWeights) -> None:
        """
        Count the support of one routed clause.

        Args:
            weights: Fusion weights
        """
        for expert_id in weights.support:
            self.expert_counts[expert_id] += 1
        self.total_steps += 1

    def get_per_expert_frequency(self) -> Dict[str, float]:
        """
        Fraction of routed clauses each expert was active in.

        Returns:
            frequencies: Dictionary mapping expert id to activation frequency
        """
        if self.total_steps == 0:
            return {}
        return {
            expert_id: count / self.total_steps
            for expert_id, count in sorted(self.expert_counts.items())
        }

    def get_underutilized_experts(
        self,
        expert_ids: Iterable[str],
        threshold: float = 0.01,
    ) -> List[str]:
        """
        Experts active in fewer than ``threshold`` of routed clauses.

        Args:
            expert_ids: Experts to check (e.g. the registry's active ids)
            threshold: Minimum activation frequency

        Returns:
            underutilized: Sorted expert ids
        """
        frequencies = self.get_per_expert_frequency()
        return sorted(e for e in expert_ids if frequencies.get(e, 0.0) < threshold)

    def compute_utilization_percentage(self, expert_ids: Iterable[str]) -> float:
        """Percentage of the given experts activated at least once (0-100)."""
        expert_ids = list(expert_ids)
        if not expert_ids:
            return 0.0
        used = sum(1 for e in expert_ids if self.expert_counts.get(e, 0) > 0)
        return 100.0 * used / len(expert_ids)

    def reset(self) -> None:
        self.expert_counts.clear()
        self.total_steps = 0

    def get_stats(self) -> Dict[str, float]:
        counts = list(self.expert_counts.values())
        if not counts:
            return {"mean_count": 0.0, "max_count": 0.0, "min_count": 0.0}
        return {
            "mean_count": float(sum(counts) / len(counts)),
            "max_count": float(max(counts)),
            "min_count": float(min(counts)),
        }


class CacheHitRateMonitor:
    """Fraction of clause lookups served from the semantic cache."""

    def __init__(self):
        self.hits = 0
        self.misses = 0

    def update(self, hit: bool) -> None:
        if hit:
            self.hits += 1
        else:
            self.misses += 1

    def compute_hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0


class BatchOccupancyTracker:
    """Sizes of dispatched batches and shared batch failures."""

    def __init__(self):
        self.batch_sizes: List[int] = []
        self.shared_failures = 0

    def update(self, size: int, failed: bool = False) -> None:
        self.batch_sizes.append(size)
        if failed:
            self.shared_failures += 1

    def get_stats(self) -> Dict[str, float]:
        if not self.batch_sizes:
            return {"batches": 0.0, "mean_size": 0.0, "max_size": 0.0, "shared_failures": 0.0}
        return {
            "batches": float(len(self.batch_sizes)),
            "mean_size": float(sum(self.batch_sizes) / len(self.batch_sizes)),
            "max_size": float(max(self.batch_sizes)),
            "shared_failures": float(self.shared_failures),
        }

    def reset(self) -> None:
        self.batch_sizes.clear()
        self.shared_failures = 0


class FusionDiagnostics:
    """
    Thread-safe aggregate of all engine metrics.

    Fed by the engine and scheduler while requests are served.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.routing_entropy = RoutingEntropyMetric()
        self.expert_utilization = ExpertUtilizationTracker()
        self.cache_hit_rate = CacheHitRateMonitor()
        self.batch_occupancy = BatchOccupancyTracker()
        self.requests = 0
        self.failed_requests = 0
        self.fallback_clauses = 0

    def update_routing(self, weights: FusionWeights) -> None:
        with self._lock:
            self.routing_entropy.update(weights)
            self.expert_utilization.update(weights)

    def update_cache(self, hit: bool) -> None:
        with self._lock:
            self.cache_hit_rate.update(hit)

    def update_batch(self, size: int, failed: bool = False) -> None:
        with self._lock:
            self.batch_occupancy.update(size, failed)

    def update_fallback(self) -> None:
        with self._lock:
            self.fallback_clauses += 1

    def update_request(self, failed: bool = False) -> None:
        with self._lock:
            self.requests += 1
            if failed:
                self.failed_requests += 1

    def get_summary(self) -> Dict[str, float]:
        """
        Snapshot of all metrics.

        Returns:
            metrics: Dictionary with all metric values
        """
        with self._lock:
            summary = {
                "requests": float(self.requests),
                "failed_requests": float(self.failed_requests),
                "fallback_clauses": float(self.fallback_clauses),
                "routing_entropy": self.routing_entropy.compute(),
                "routing_entropy_normalized": self.routing_entropy.compute_normalized(),
                "cache_hit_rate": self.cache_hit_rate.compute_hit_rate(),
            }
            summary.update({
                f"expert_util_{k}": v
                for k, v in self.expert_utilization.get_stats().items()
            })
            summary.update({
                f"batch_{k}": v
                for k, v in self.batch_occupancy.get_stats().items()
            })
        return summary

    def reset(self) -> None:
        with self._lock:
            self.routing_entropy.reset()
            self.expert_utilization.reset()
            self.cache_hit_rate.reset()
            self.batch_occupancy.reset()
            self.requests = 0
            self.failed_requests = 0
            self.fallback_clauses = 0
