"""
Expert registry: metadata for every registered adapter.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import RegistryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Expert:
    """
    A registered low-rank adapter.

    Instances are immutable; the registry swaps in updated copies when an
    expert is deactivated or its affinity position is recomputed.
    """

    expert_id: str
    domain: str
    tags: FrozenSet[str] = frozenset()
    storage_handle: Any = None
    position: Optional[Tuple[float, float]] = None
    active: bool = True

    @property
    def keywords(self) -> FrozenSet[str]:
        """Lowercased domain and compatibility tags."""
        return frozenset(t.lower() for t in self.tags | {self.domain})


class ExpertRegistry:
    """
    Thread-safe registry of expert metadata.

    Experts are never deleted: deactivation is a soft delete so that results
    referencing them stay resolvable. Listeners are notified whenever the
    active expert set changes.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._experts: Dict[str, Expert] = {}
        self._listeners: List[Callable[[], None]] = []
        self._version = 0

    @property
    def version(self) -> int:
        """Counter bumped on every active-set change."""
        return self._version

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked after each active-set change."""
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> bool:
        """
        Unregister a callback added with ``add_listener``.

        Returns:
            True if the callback was registered
        """
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)
                return True
        return False

    def register_expert(
        self,
        expert_id: str,
        domain: str,
        tags: Iterable[str] = (),
        storage_handle: Any = None,
    ) -> Expert:
        """
        Register (or reactivate) an expert.

        Args:
            expert_id: Unique identifier
            domain: Domain tag (e.g. "math")
            tags: Compatibility tags
            storage_handle: Opaque handle used by the generation backend

        Returns:
            The registered expert

        Raises:
            RegistryError: If an active expert with this id already exists
        """
        if not expert_id:
            raise RegistryError("expert_id must be a non-empty string")

        with self._lock:
            existing = self._experts.get(expert_id)
            if existing is not None and existing.active:
                raise RegistryError(f"Expert already registered: {expert_id}")

            expert = Expert(
                expert_id=expert_id,
                domain=domain,
                tags=frozenset(tags),
                storage_handle=storage_handle,
                position=existing.position if existing is not None else None,
            )
            self._experts[expert_id] = expert
            self._version += 1
            listeners = list(self._listeners)

        logger.info(
            f"{'Reactivated' if existing is not None else 'Registered'} expert "
            f"{expert_id} (domain={domain})"
        )
        self._notify(listeners)
        return expert

    def deactivate_expert(self, expert_id: str) -> Expert:
        """
        Soft-delete an expert.

        Raises:
            RegistryError: If the expert is unknown
        """
        with self._lock:
            expert = self._experts.get(expert_id)
            if expert is None:
                raise RegistryError(f"Unknown expert: {expert_id}")
            if not expert.active:
                return expert

            expert = replace(expert, active=False)
            self._experts[expert_id] = expert
            self._version += 1
            listeners = list(self._listeners)

        logger.info(f"Deactivated expert {expert_id}")
        self._notify(listeners)
        return expert

    def get(self, expert_id: str) -> Expert:
        """
        Look up an expert (active or not).

        Raises:
            RegistryError: If the expert is unknown
        """
        with self._lock:
            try:
                return self._experts[expert_id]
            except KeyError:
                raise RegistryError(f"Unknown expert: {expert_id}") from None

    def is_active(self, expert_id: str) -> bool:
        with self._lock:
            expert = self._experts.get(expert_id)
            return expert is not None and expert.active

    def all_active(self, expert_ids: Iterable[str]) -> bool:
        """True if every given expert is registered and active."""
        with self._lock:
            return all(self.is_active(e) for e in expert_ids)

    def active_experts(self) -> List[Expert]:
        """Active experts sorted by id."""
        with self._lock:
            return [e for _, e in sorted(self._experts.items()) if e.active]

    def active_ids(self) -> List[str]:
        return [e.expert_id for e in self.active_experts()]

    def update_positions(self, positions: Mapping[str, Tuple[float, float]]) -> None:
        """
        Replace affinity positions of known experts.

        Only called by TaskAffinityMap after a recompute. Unknown ids are
        ignored.
        """
        with self._lock:
            updated = dict(self._experts)
            for expert_id, position in positions.items():
                expert = updated.get(expert_id)
                if expert is not None:
                    updated[expert_id] = replace(
                        expert, position=(float(position[0]), float(position[1]))
                    )
            self._experts = updated

    def __len__(self) -> int:
        with self._lock:
            return len(self._experts)

    def __contains__(self, expert_id: str) -> bool:
        with self._lock:
            return expert_id in self._experts

    @staticmethod
    def _notify(listeners: List[Callable[[], None]]) -> None:
        for callback in listeners:
            callback()
