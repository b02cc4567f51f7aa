"""
Task affinity map: 2-D embedding of experts from performance correlation.

Experts whose performance across evaluation datasets is correlated sit close
together; the Euclidean distance between two positions is the cost of fusing
them. Positions are computed offline with metric multidimensional scaling on the
precomputed correlation distances.
"""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Sequence, Tuple

import numpy as np
from sklearn.manifold import MDS
from tqdm import tqdm

logger = logging.getLogger(__name__)


def correlation_to_distance(corr: np.ndarray) -> np.ndarray:
    """
    Map a correlation matrix to a distance matrix in [0, 1].

    Uses (1 - corr) / 2 so that corr = 1 -> 0 and corr = -1 -> 1.

    Args:
        corr: (n, n) - Correlation matrix with values in [-1, 1]

    Returns:
        distance: (n, n) - Symmetric distances with a zero diagonal
    """
    corr = np.clip(np.asarray(corr, dtype=np.float64), -1.0, 1.0)
    distance = (1.0 - corr) / 2.0
    np.fill_diagonal(distance, 0.0)
    return distance


def performance_correlation(performance_matrix: np.ndarray) -> np.ndarray:
    """
    Pearson correlation between expert performance rows.

    Rows with zero variance have no defined correlation; they are treated
    as uncorrelated (0) with every other row.

    Args:
        performance_matrix: (n_experts, n_datasets) - Scores per dataset

    Returns:
        corr: (n_experts, n_experts) - Correlation matrix
    """
    perf = np.asarray(performance_matrix, dtype=np.float64)
    if perf.ndim != 2:
        raise ValueError(f"performance_matrix must be 2D, got {perf.ndim}D")
    if not np.all(np.isfinite(perf)):
        raise ValueError("performance_matrix contains non-finite values")

    n = perf.shape[0]
    if n == 1 or perf.shape[1] < 2:
        return np.eye(n)

    with np.errstate(invalid="ignore", divide="ignore"):
        corr = np.corrcoef(perf)
    corr = np.nan_to_num(corr, nan=0.0)
    np.fill_diagonal(corr, 1.0)
    return np.clip(corr, -1.0, 1.0)


def build_performance_matrix(
    expert_ids: Sequence[str],
    datasets: Sequence[str],
    evaluate_fn: Callable[[str, str], float],
    show_progress: bool = True,
) -> np.ndarray:
    """
    Evaluate every expert on every dataset.

    Args:
        expert_ids: Experts to evaluate (rows)
        datasets: Evaluation dataset names (columns)
        evaluate_fn: Callable (expert_id, dataset) -> score
        show_progress: Display a progress bar

    Returns:
        performance_matrix: (n_experts, n_datasets)
    """
    matrix = np.zeros((len(expert_ids), len(datasets)), dtype=np.float64)
    pairs = [(i, j) for i in range(len(expert_ids)) for j in range(len(datasets))]

    for i, j in tqdm(pairs, desc="Evaluating experts", disable=not show_progress):
        matrix[i, j] = float(evaluate_fn(expert_ids[i], datasets[j]))

    return matrix


@dataclass(frozen=True)
class _AffinitySnapshot:
    """Immutable position table; replaced wholesale on recompute."""

    expert_ids: Tuple[str, ...]
    index: Dict[str, int]
    positions: np.ndarray
    stress: float = 0.0


class TaskAffinityMap:
    """
    2-D embedding of experts exposing a pairwise fusion cost.

    Readers always see one complete snapshot: ``recompute`` builds a new
    position table and swaps it in with a single reference assignment.
    """

    def __init__(self, registry=None, max_iter: int = 300):
        """
        Initialize an empty affinity map.

        Args:
            registry: Optional ExpertRegistry to publish positions to
            max_iter: Maximum MDS iterations
        """
        self.registry = registry
        self.max_iter = max_iter
        self._write_lock = threading.Lock()
        self._snapshot = _AffinitySnapshot((), {}, np.zeros((0, 2)))

    @property
    def expert_ids(self) -> Tuple[str, ...]:
        return self._snapshot.expert_ids

    @property
    def stress(self) -> float:
        return self._snapshot.stress

    def __contains__(self, expert_id: str) -> bool:
        return expert_id in self._snapshot.index

    def __len__(self) -> int:
        return len(self._snapshot.expert_ids)

    def recompute(
        self,
        performance_matrix: np.ndarray,
        expert_ids: Sequence[str],
    ) -> Dict[str, Tuple[float, float]]:
        """
        Rebuild all positions from a performance matrix.

        Deterministic for a fixed input, so repeated calls are idempotent.

        Args:
            performance_matrix: (n_experts, n_datasets) - Rows follow expert_ids
            expert_ids: Expert id for each row

        Returns:
            Mapping of expert id to its new 2-D position
        """
        perf = np.asarray(performance_matrix, dtype=np.float64)
        expert_ids = tuple(expert_ids)
        if perf.ndim != 2 or perf.shape[0] != len(expert_ids):
            raise ValueError(
                f"performance_matrix rows ({perf.shape[0] if perf.ndim else 0}) "
                f"must match expert_ids ({len(expert_ids)})"
            )
        if len(set(expert_ids)) != len(expert_ids):
            raise ValueError("expert_ids must be unique")

        distance = correlation_to_distance(performance_correlation(perf))
        positions, stress = self._embed(distance)

        snapshot = _AffinitySnapshot(
            expert_ids=expert_ids,
            index={e: i for i, e in enumerate(expert_ids)},
            positions=positions,
            stress=stress,
        )
        published = self._publish(snapshot)

        logger.info(
            f"Recomputed task affinity for {len(expert_ids)} experts (stress={stress:.6f})"
        )
        return published

    def _embed(self, distance: np.ndarray) -> Tuple[np.ndarray, float]:
        n = distance.shape[0]
        if n == 0:
            return np.zeros((0, 2)), 0.0
        if n == 1:
            return np.zeros((1, 2)), 0.0

        distance = (distance + distance.T) / 2.0
        mds = MDS(
            n_components=2,
            dissimilarity="precomputed",
            max_iter=self.max_iter,
            n_init=1,
            random_state=0,
        )
        positions = mds.fit_transform(distance)
        return np.asarray(positions, dtype=np.float64), float(mds.stress_)

    def _publish(self, snapshot: _AffinitySnapshot) -> Dict[str, Tuple[float, float]]:
        positions = {
            e: (float(snapshot.positions[i, 0]), float(snapshot.positions[i, 1]))
            for i, e in enumerate(snapshot.expert_ids)
        }
        with self._write_lock:
            self._snapshot = snapshot
            if self.registry is not None:
                self.registry.update_positions(positions)
        return positions

    def position(self, expert_id: str) -> Tuple[float, float]:
        """
        2-D position of an expert.

        Raises:
            KeyError: If the expert has no computed position
        """
        snap = self._snapshot
        i = snap.index[expert_id]
        return float(snap.positions[i, 0]), float(snap.positions[i, 1])

    def fusion_cost(self, expert_a: str, expert_b: str) -> float:
        """
        Cost of fusing two experts, in [0, 1].

        Raises:
            KeyError: If either expert has no computed position
        """
        snap = self._snapshot
        a = snap.positions[snap.index[expert_a]]
        b = snap.positions[snap.index[expert_b]]
        return float(np.clip(np.linalg.norm(a - b), 0.0, 1.0))

    def cost_matrix(self, expert_ids: Sequence[str]) -> np.ndarray:
        """
        Pairwise fusion costs for a list of experts.

        Experts without a position contribute zero cost.

        Returns:
            costs: (n, n) - Symmetric, zero diagonal
        """
        snap = self._snapshot
        n = len(expert_ids)
        costs = np.zeros((n, n), dtype=np.float64)
        rows = [snap.index.get(e) for e in expert_ids]
        for i in range(n):
            for j in range(i + 1, n):
                if rows[i] is None or rows[j] is None:
                    continue
                d = np.linalg.norm(snap.positions[rows[i]] - snap.positions[rows[j]])
                costs[i, j] = costs[j, i] = min(1.0, float(d))
        return costs

    def save(self, path) -> None:
        """Persist positions as JSON."""
        snap = self._snapshot
        payload = {
            "expert_ids": list(snap.expert_ids),
            "positions": snap.positions.tolist(),
            "stress": snap.stress,
        }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(payload, f, indent=2)
        logger.info(f"Saved task affinity map to {path}")

    def load(self, path) -> None:
        """Load positions saved by ``save``, replacing the current table."""
        with open(path, "r") as f:
            payload = json.load(f)

        expert_ids = tuple(payload["expert_ids"])
        positions = np.asarray(payload["positions"], dtype=np.float64).reshape(-1, 2)
        if positions.shape[0] != len(expert_ids):
            raise ValueError("Corrupt affinity file: positions do not match expert_ids")

        snapshot = _AffinitySnapshot(
            expert_ids=expert_ids,
            index={e: i for i, e in enumerate(expert_ids)},
            positions=positions,
            stress=float(payload.get("stress", 0.0)),
        )
        self._publish(snapshot)
        logger.info(f"Loaded task affinity map from {path}")
