"""
Shared fixtures and collaborator fakes.
"""

import threading
import time

import pytest

from clausefusion import (
    ExpertRegistry,
    FusionConfig,
    FusionEngine,
    GenerationBackend,
    PerplexityOracle,
    RelevancePredictor,
    TagOverlapRelevancePredictor,
)

EXAMPLE_PROMPT = "Solve: what is 15% of 200? Then write a short poem about it."


class SequenceOracle(PerplexityOracle):
    """Returns ppls[i] for the i-th unit of a request."""

    def __init__(self, ppls):
        self.ppls = list(ppls)
        self.calls = []

    def score(self, context_units, next_unit):
        self.calls.append((list(context_units), next_unit))
        return self.ppls[len(context_units)]


class MappingOracle(PerplexityOracle):
    """Looks scores up by unit text."""

    def __init__(self, scores, default=10.0):
        self.scores = dict(scores)
        self.default = default

    def score(self, context_units, next_unit):
        return self.scores.get(next_unit, self.default)


class FailingOracle(PerplexityOracle):
    def score(self, context_units, next_unit):
        raise RuntimeError("oracle unavailable")


class SlowOracle(PerplexityOracle):
    def __init__(self, delay):
        self.delay = delay

    def score(self, context_units, next_unit):
        time.sleep(self.delay)
        return 10.0


class TablePredictor(RelevancePredictor):
    """Returns the logits of the first needle found in the clause."""

    def __init__(self, table):
        self.table = dict(table)

    def predict(self, clause_text):
        for needle, logits in self.table.items():
            if needle in clause_text:
                return dict(logits)
        return {}


class RecordingBackend(GenerationBackend):
    """
    Echo backend recording every batch.

    ``delays`` maps a substring of the clause text to a sleep in seconds.
    """

    def __init__(self, delays=None, fail=False):
        self.delays = dict(delays or {})
        self.fail = fail
        self.batches = []
        self.base_calls = []
        self._lock = threading.Lock()

    def generate(self, base_context, signature, weights, text):
        return f"<{signature}>{text}"

    def generate_base(self, text):
        with self._lock:
            self.base_calls.append(text)
        return f"<base>{text}"

    def generate_batch(self, signature, items):
        with self._lock:
            self.batches.append((signature, [clause.text for clause, _, _ in items]))
        for clause, _, _ in items:
            for needle, delay in self.delays.items():
                if needle in clause.text:
                    time.sleep(delay)
        if self.fail:
            raise RuntimeError("backend exploded")
        return super().generate_batch(signature, items)

    @property
    def batch_sizes(self):
        with self._lock:
            return [len(texts) for _, texts in self.batches]


@pytest.fixture
def registry():
    reg = ExpertRegistry()
    reg.register_expert("math", "analytical", ["math", "solve", "calculate", "percent"])
    reg.register_expert("creative", "creative", ["write", "poem", "story"])
    return reg


@pytest.fixture
def example_oracle():
    # Units: "Solve:", "what is 15% of 200?", "Then write a short poem about it."
    return SequenceOracle([12.0, 4.0, 15.0])


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def make_engine(registry, example_oracle, backend):
    engines = []

    def _make(oracle=None, backend_=None, config=None, predictor=None, **kwargs):
        engine = FusionEngine(
            registry=registry,
            predictor=predictor or TagOverlapRelevancePredictor(registry),
            oracle=oracle or example_oracle,
            backend=backend_ or backend,
            config=config or FusionConfig(batch_max_wait=0.005),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.close()
