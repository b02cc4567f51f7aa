"""
Semantic result cache with single-flight coalescing.

Lookups match stored entries by embedding similarity rather than exact text,
so paraphrase-level repeats are served from cache. While a result is being
computed, lookups landing in the same near-duplicate bucket attach to the
outstanding computation instead of starting their own.
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional

import numpy as np

from .errors import ComputationAbandoned, FusionTimeoutError
from .models.embeddings import HashingTextEmbedder, cosine_similarity

logger = logging.getLogger(__name__)

HIT = "hit"
OWNER = "owner"
JOINER = "joiner"


@dataclass(eq=False)
class CacheEntry:
    """A stored result and the fingerprint it was stored under."""

    fingerprint: np.ndarray
    text: str
    result: Any
    namespace: Hashable = None
    created_at: float = field(default_factory=time.time)
    last_access: float = field(default_factory=time.time)


@dataclass(eq=False)
class _InFlight:
    fingerprint: np.ndarray
    text: str
    namespace: Hashable
    generation: int
    threshold: float
    future: Future = field(default_factory=Future)


class CacheTicket:
    """
    Outcome of ``SemanticCache.begin``.

    A ``hit`` carries the cached result. The ``owner`` must finish with
    exactly one of ``complete`` or ``abandon``. A ``joiner`` waits for the
    owner's result with ``wait``.
    """

    def __init__(self, cache, status: str, result: Any = None, flight: Optional[_InFlight] = None):
        self._cache = cache
        self.status = status
        self.result = result
        self._flight = flight
        self._finished = False

    @property
    def is_hit(self) -> bool:
        return self.status == HIT

    @property
    def is_owner(self) -> bool:
        return self.status == OWNER

    @property
    def is_joiner(self) -> bool:
        return self.status == JOINER

    def wait(self, timeout: Optional[float] = None) -> Any:
        """
        Wait for the shared computation.

        Raises:
            ComputationAbandoned: If the owner gave up; retry with ``begin``
            FusionTimeoutError: If the timeout elapses first
        """
        if not self.is_joiner:
            raise RuntimeError(f"wait() called on a {self.status} ticket")
        try:
            return self._flight.future.result(timeout=timeout)
        except FutureTimeoutError:
            raise FusionTimeoutError("Timed out waiting for a shared cache computation") from None

    def complete(self, result: Any) -> None:
        """Publish the computed result to joiners and store it."""
        self._check_owner()
        self._finished = True
        self._cache._complete(self._flight, result)

    def abandon(self, reason: Optional[BaseException] = None) -> None:
        """Release joiners without a result. Idempotent."""
        if not self.is_owner or self._finished:
            return
        self._finished = True
        self._cache._abandon(self._flight, reason)

    def _check_owner(self) -> None:
        if not self.is_owner:
            raise RuntimeError(f"complete() called on a {self.status} ticket")
        if self._finished:
            raise RuntimeError("Ticket already finished")


class SemanticCache:
    """
    Near-duplicate tolerant result cache.

    Two texts fall in the same bucket when they are identical or the cosine
    similarity of their fingerprints exceeds ``threshold``. Entries are
    partitioned by namespace; results never cross namespaces.

    Storing a result replaces any entry already in its bucket. ``invalidate``
    drops every entry and discards results of computations that started
    before it.
    """

    def __init__(
        self,
        embedder: Optional[Callable[[str], np.ndarray]] = None,
        threshold: float = 0.95,
        validator: Optional[Callable[[CacheEntry], bool]] = None,
    ):
        """
        Initialize cache.

        Args:
            embedder: Callable text -> vector (HashingTextEmbedder if None)
            threshold: Similarity a match must exceed, in [0, 1]
            validator: Optional check run on every hit; failing entries are
                evicted and the lookup is a miss
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be between 0 and 1, got {threshold}")

        self.embedder = embedder or HashingTextEmbedder()
        self.threshold = threshold
        self.validator = validator

        self._lock = threading.Lock()
        self._entries: Dict[Hashable, List[CacheEntry]] = {}
        self._inflight: Dict[Hashable, List[_InFlight]] = {}
        self._generation = 0

        self._hits = 0
        self._misses = 0
        self._coalesced = 0

    @property
    def generation(self) -> int:
        return self._generation

    def fingerprint(self, text: str) -> np.ndarray:
        return np.asarray(self.embedder(text), dtype=np.float32)

    def _matches(self, fingerprint, text, other_fp, other_text, threshold) -> bool:
        if text == other_text:
            return True
        return cosine_similarity(fingerprint, other_fp) > threshold

    def _find_entry(self, namespace, fingerprint, text, threshold) -> Optional[CacheEntry]:
        best, best_sim = None, -1.0
        for entry in self._entries.get(namespace, ()):
            if entry.text == text:
                return entry
            sim = cosine_similarity(fingerprint, entry.fingerprint)
            if sim > threshold and sim > best_sim:
                best, best_sim = entry, sim
        return best

    def _find_flight(self, namespace, fingerprint, text, threshold) -> Optional[_InFlight]:
        for flight in self._inflight.get(namespace, ()):
            if self._matches(fingerprint, text, flight.fingerprint, flight.text, threshold):
                return flight
        return None

    def lookup(
        self,
        text: str,
        namespace: Hashable = None,
        threshold: Optional[float] = None,
    ) -> Optional[Any]:
        """
        Return the cached result for a near-duplicate text, or None on a miss.

        Args:
            text: Lookup text
            namespace: Cache partition
            threshold: Similarity threshold override
        """
        threshold = self.threshold if threshold is None else threshold
        fingerprint = self.fingerprint(text)
        while True:
            with self._lock:
                entry = self._find_entry(namespace, fingerprint, text, threshold)
                if entry is None:
                    self._misses += 1
                    return None
            if self._accept(namespace, entry):
                return entry.result

    def store(
        self,
        text: str,
        result: Any,
        namespace: Hashable = None,
        threshold: Optional[float] = None,
    ) -> CacheEntry:
        """
        Store a result, replacing any entry in the same bucket.

        Returns:
            The new entry
        """
        threshold = self.threshold if threshold is None else threshold
        entry = CacheEntry(self.fingerprint(text), text, result, namespace)
        with self._lock:
            self._insert(entry, threshold)
        return entry

    def begin(
        self,
        text: str,
        namespace: Hashable = None,
        threshold: Optional[float] = None,
    ) -> CacheTicket:
        """
        Look up a text and, on a miss, claim or join its computation.

        Args:
            text: Lookup text
            namespace: Cache partition
            threshold: Similarity threshold override

        Returns:
            CacheTicket with status hit, owner or joiner
        """
        threshold = self.threshold if threshold is None else threshold
        fingerprint = self.fingerprint(text)
        while True:
            with self._lock:
                entry = self._find_entry(namespace, fingerprint, text, threshold)
                if entry is None:
                    flight = self._find_flight(namespace, fingerprint, text, threshold)
                    if flight is not None:
                        self._coalesced += 1
                        return CacheTicket(self, JOINER, flight=flight)

                    self._misses += 1
                    flight = _InFlight(fingerprint, text, namespace, self._generation, threshold)
                    self._inflight.setdefault(namespace, []).append(flight)
                    return CacheTicket(self, OWNER, flight=flight)

            if self._accept(namespace, entry):
                return CacheTicket(self, HIT, result=entry.result)

    def get_or_compute(
        self,
        text: str,
        compute_fn: Callable[[], Any],
        namespace: Hashable = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Return a cached result or compute it at most once per bucket.

        Concurrent callers in the same bucket share one ``compute_fn`` call.
        If that call raises, the exception propagates to its caller and the
        waiting callers retry.

        Raises:
            FusionTimeoutError: If waiting on a shared computation times out
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            ticket = self.begin(text, namespace)
            if ticket.is_hit:
                return ticket.result

            if ticket.is_joiner:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                try:
                    return ticket.wait(remaining)
                except ComputationAbandoned:
                    continue

            try:
                result = compute_fn()
            except BaseException as exc:
                ticket.abandon(exc)
                raise
            ticket.complete(result)
            return result

    def invalidate(self) -> int:
        """
        Drop every entry.

        Computations already in flight still deliver to their joiners but
        their results are not stored.

        Returns:
            Number of entries dropped
        """
        with self._lock:
            dropped = sum(len(v) for v in self._entries.values())
            self._entries = {}
            self._generation += 1
        logger.info(f"Invalidated semantic cache ({dropped} entries dropped)")
        return dropped

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "coalesced": self._coalesced,
                "entries": sum(len(v) for v in self._entries.values()),
                "in_flight": sum(len(v) for v in self._inflight.values()),
                "generation": self._generation,
            }

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._entries.values())

    # Internal helpers (callers hold no lock unless stated)

    def _accept(self, namespace, entry: CacheEntry) -> bool:
        if self.validator is not None and not self.validator(entry):
            with self._lock:
                bucket = self._entries.get(namespace, [])
                if entry in bucket:
                    bucket.remove(entry)
            logger.info(f"Evicted stale cache entry in namespace {namespace!r}")
            return False

        with self._lock:
            entry.last_access = time.time()
            self._hits += 1
        return True

    def _insert(self, entry: CacheEntry, threshold: float) -> None:
        # Caller holds the lock
        bucket = self._entries.setdefault(entry.namespace, [])
        for i, existing in enumerate(bucket):
            if self._matches(entry.fingerprint, entry.text, existing.fingerprint, existing.text, threshold):
                bucket[i] = entry
                return
        bucket.append(entry)

    def _release(self, flight: _InFlight) -> bool:
        # Caller holds the lock
        flights = self._inflight.get(flight.namespace, [])
        if flight in flights:
            flights.remove(flight)
        if not flights:
            self._inflight.pop(flight.namespace, None)
        return flight.generation == self._generation

    def _complete(self, flight: _InFlight, result: Any) -> None:
        with self._lock:
            current = self._release(flight)
            if current:
                entry = CacheEntry(flight.fingerprint, flight.text, result, flight.namespace)
                self._insert(entry, flight.threshold)
        flight.future.set_result(result)

    def _abandon(self, flight: _InFlight, reason: Optional[BaseException]) -> None:
        with self._lock:
            self._release(flight)
        message = "Shared cache computation was abandoned"
        if reason is not None:
            message = f"{message}: {reason}"
        flight.future.set_exception(ComputationAbandoned(message))
