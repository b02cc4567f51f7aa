"""
Clause segmentation by perplexity-minima detection.

Text is first split into sentence-like units. A context-conditioned
perplexity oracle scores each unit given the units before it; a unit whose
perplexity is a clear local minimum closes a clause.
"""

import logging
import math
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence

from .config import FusionConfig
from .errors import FusionError, FusionTimeoutError, SegmentationError
from .utils.validation import validate_text

logger = logging.getLogger(__name__)

# Unit terminators: sentence punctuation followed by whitespace/end, or newlines
_UNIT_END = re.compile(r"[.!?;:]+(?=\s|$)|\n+")


@dataclass(frozen=True)
class Clause:
    """
    Contiguous span of the request text.

    ``text == source[start:end]`` for the request the clause came from.
    """

    text: str
    start: int
    end: int
    index: int

    def __len__(self) -> int:
        return self.end - self.start


class TextUnit(NamedTuple):
    """Sentence-like segmentation unit with its offsets."""

    text: str
    start: int
    end: int


def split_units(text: str) -> List[TextUnit]:
    """
    Split text into sentence-like units.

    Units end at ``. ! ? ; :`` followed by whitespace or end of text, or at
    newlines. Surrounding whitespace is excluded from each unit and blank
    units are dropped.

    Args:
        text: Input text

    Returns:
        units: Ordered units with offsets into ``text``
    """
    units: List[TextUnit] = []
    start = 0
    for match in _UNIT_END.finditer(text):
        _append_unit(units, text, start, match.end())
        start = match.end()
    _append_unit(units, text, start, len(text))
    return units


def _append_unit(units: List[TextUnit], text: str, start: int, end: int) -> None:
    span = text[start:end]
    stripped = span.strip()
    if not stripped:
        return
    lead = len(span) - len(span.lstrip())
    begin = start + lead
    units.append(TextUnit(stripped, begin, begin + len(stripped)))


def find_boundaries(ppls: Sequence[float], threshold: float) -> List[int]:
    """
    Indices of perplexity minima that close a clause.

    Index ``i`` (never the first or last) is a boundary when it is a strict
    local minimum and both neighbours exceed it by more than ``threshold``.

    Args:
        ppls: Per-unit perplexities
        threshold: Minimum margin on both sides

    Returns:
        boundaries: Ascending unit indices
    """
    boundaries = []
    for i in range(1, len(ppls) - 1):
        left = ppls[i - 1] - ppls[i]
        right = ppls[i + 1] - ppls[i]
        if left > 0 and right > 0 and left > threshold and right > threshold:
            boundaries.append(i)
    return boundaries


class ClauseSegmenter:
    """
    Splits request text into clauses at perplexity minima.

    Stateless across requests: each call only conditions on units of the
    text being segmented. Under a deadline, oracle calls run on a worker
    pool so a slow oracle cannot hold the request past it.
    """

    def __init__(self, oracle, config: Optional[FusionConfig] = None):
        """
        Initialize segmenter.

        Args:
            oracle: PerplexityOracle with ``score(context_units, next_unit)``
            config: Fusion configuration (defaults used if None)
        """
        self.oracle = oracle
        self.config = config or FusionConfig()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    def perplexities(
        self,
        units: Sequence[str],
        deadline: Optional[float] = None,
    ) -> List[float]:
        """
        Score every unit given all preceding units.

        Args:
            units: Unit texts in order
            deadline: Absolute ``time.monotonic()`` deadline

        Returns:
            ppls: One positive perplexity per unit

        Raises:
            SegmentationError: If the oracle fails or returns an invalid score
            FusionTimeoutError: If the deadline passes
        """
        ppls = []
        for i, unit in enumerate(units):
            if deadline is not None and time.monotonic() >= deadline:
                raise FusionTimeoutError(
                    f"Deadline exceeded while scoring unit {i} of {len(units)}"
                )
            try:
                score = float(self._score(list(units[:i]), unit, deadline))
            except FusionError:
                raise
            except Exception as exc:
                raise SegmentationError(
                    f"Perplexity oracle failed on unit {i}: {exc}"
                ) from exc

            if not math.isfinite(score) or score <= 0:
                raise SegmentationError(
                    f"Perplexity oracle returned invalid score {score} for unit {i}"
                )
            ppls.append(score)
        return ppls

    def _score(self, context: List[str], unit: str, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.oracle.score(context, unit)

        future = self._executor().submit(self.oracle.score, context, unit)
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            # The oracle call cannot be interrupted; its result is discarded
            future.cancel()
            raise FusionTimeoutError(
                f"Deadline exceeded waiting for the perplexity oracle on unit {len(context)}"
            ) from None

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.config.max_workers,
                    thread_name_prefix="clausefusion-oracle",
                )
            return self._pool

    def close(self, wait: bool = True) -> None:
        """Shut down the oracle worker pool, if one was started."""
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    def segment(
        self,
        text: str,
        threshold: Optional[float] = None,
        deadline: Optional[float] = None,
        min_clause_chars: Optional[int] = None,
    ) -> List[Clause]:
        """
        Segment text into clauses.

        Args:
            text: Request text
            threshold: Boundary margin (config value if None)
            deadline: Absolute ``time.monotonic()`` deadline
            min_clause_chars: Merge shorter clauses into a neighbour (config value if None)

        Returns:
            clauses: Ordered clauses covering every unit of the text

        Raises:
            SegmentationError: On malformed input or oracle failure
            FusionTimeoutError: If the deadline passes
        """
        validate_text(text)
        if threshold is None:
            threshold = self.config.ppl_margin_threshold
        if min_clause_chars is None:
            min_clause_chars = self.config.min_clause_chars

        units = split_units(text)
        if not units:
            return []
        if len(units) == 1:
            unit = units[0]
            return [Clause(unit.text, unit.start, unit.end, 0)]

        ppls = self.perplexities([u.text for u in units], deadline=deadline)
        boundaries = find_boundaries(ppls, threshold)
        logger.debug(f"Segmented {len(units)} units, boundaries at {boundaries}")

        # Boundary unit is the last unit of its clause
        spans = []
        first = 0
        for b in boundaries:
            spans.append((units[first].start, units[b].end))
            first = b + 1
        if first < len(units):
            spans.append((units[first].start, units[-1].end))

        if min_clause_chars > 0:
            spans = _merge_short(spans, min_clause_chars)

        return [
            Clause(text[start:end], start, end, i) for i, (start, end) in enumerate(spans)
        ]


def _merge_short(spans, min_chars: int):
    merged = []
    for start, end in spans:
        if merged and (end - start < min_chars or merged[-1][1] - merged[-1][0] < min_chars):
            merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged
