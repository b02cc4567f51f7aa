"""
Tests for signature-batched scheduling.
"""

import time

import pytest

from clausefusion import BatchDispatchError, BatchedFusionScheduler, FusionConfig, FusionTimeoutError
from clausefusion.segmenter import Clause
from clausefusion.utils.routing import FusionWeights

from .conftest import RecordingBackend

MATH = FusionWeights({"math": 1.0})
MATH_CREATIVE = FusionWeights({"math": 0.6, "creative": 0.4})
MATH_CREATIVE_OTHER = FusionWeights({"creative": 0.7, "math": 0.3})


def clause(text, index=0):
    return Clause(text, 0, len(text), index)


@pytest.fixture
def make_scheduler():
    schedulers = []

    def _make(backend, **overrides):
        scheduler = BatchedFusionScheduler(backend, FusionConfig(**overrides))
        schedulers.append(scheduler)
        return scheduler

    yield _make

    for scheduler in schedulers:
        scheduler.close()


def test_identical_supports_share_a_batch(make_scheduler):
    backend = RecordingBackend()
    scheduler = make_scheduler(backend, batch_max_wait=0.2)

    a = scheduler.submit(clause("first"), MATH_CREATIVE)
    b = scheduler.submit(clause("second"), MATH_CREATIVE_OTHER)

    assert scheduler.wait(a, timeout=5) == "<creative+math>first"
    assert scheduler.wait(b, timeout=5) == "<creative+math>second"
    assert backend.batch_sizes == [2]


def test_different_supports_never_merge(make_scheduler):
    backend = RecordingBackend()
    scheduler = make_scheduler(backend, batch_max_wait=0.1)

    a = scheduler.submit(clause("only math"), MATH)
    b = scheduler.submit(clause("math and creative"), MATH_CREATIVE)
    scheduler.wait(a, timeout=5)
    scheduler.wait(b, timeout=5)

    for signature, texts in backend.batches:
        assert len(texts) == 1
    assert {str(s) for s, _ in backend.batches} == {"math", "creative+math"}


def test_full_batch_released_before_wait(make_scheduler):
    backend = RecordingBackend()
    scheduler = make_scheduler(backend, batch_max_wait=30.0, batch_max_size=3)

    requests = [scheduler.submit(clause(f"item {i}"), MATH) for i in range(3)]
    start = time.monotonic()
    outputs = [scheduler.wait(r, timeout=5) for r in requests]

    assert time.monotonic() - start < 5
    assert outputs == [f"<math>item {i}" for i in range(3)]
    assert backend.batch_sizes == [3]


def test_batch_takes_tightest_member_limits(make_scheduler):
    backend = RecordingBackend()
    scheduler = make_scheduler(backend, batch_max_wait=30.0, batch_max_size=10)

    a = scheduler.submit(clause("a"), MATH)
    b = scheduler.submit(clause("b"), MATH, max_size=2)
    scheduler.wait(a, timeout=5)
    scheduler.wait(b, timeout=5)
    assert backend.batch_sizes == [2]


def test_max_wait_releases_partial_batch(make_scheduler):
    backend = RecordingBackend()
    scheduler = make_scheduler(backend, batch_max_wait=0.05, batch_max_size=100)

    request = scheduler.submit(clause("lonely"), MATH)
    assert scheduler.wait(request, timeout=5) == "<math>lonely"
    assert backend.batch_sizes == [1]


def test_backend_failure_is_shared(make_scheduler):
    backend = RecordingBackend(fail=True)
    scheduler = make_scheduler(backend, batch_max_wait=0.1)

    requests = [scheduler.submit(clause(f"item {i}"), MATH) for i in range(3)]
    errors = []
    for request in requests:
        with pytest.raises(BatchDispatchError) as info:
            scheduler.wait(request, timeout=5)
        errors.append(info.value)

    assert all(e.shared_failure for e in errors)
    assert all(e.batch_size == 3 for e in errors)
    assert all(str(e.signature) == "math" for e in errors)
    assert isinstance(errors[0].cause, RuntimeError)


def test_wrong_output_count_is_a_dispatch_error(make_scheduler):
    class ShortBackend(RecordingBackend):
        def generate_batch(self, signature, items):
            return ["only one"]

    scheduler = make_scheduler(ShortBackend(), batch_max_wait=0.0)
    a = scheduler.submit(clause("a"), MATH, max_wait=0.1)
    b = scheduler.submit(clause("b"), MATH, max_wait=0.1)
    with pytest.raises(BatchDispatchError):
        scheduler.wait(a, timeout=5)
    with pytest.raises(BatchDispatchError):
        scheduler.wait(b, timeout=5)


def test_detach_pending_member(make_scheduler):
    backend = RecordingBackend()
    scheduler = make_scheduler(backend, batch_max_wait=0.3)

    keep = scheduler.submit(clause("keep"), MATH)
    drop = scheduler.submit(clause("drop"), MATH)
    assert scheduler.detach(drop) is True
    assert drop.future.cancelled()

    assert scheduler.wait(keep, timeout=5) == "<math>keep"
    assert backend.batches[0][1] == ["keep"]


def test_wait_timeout_detaches(make_scheduler):
    backend = RecordingBackend()
    scheduler = make_scheduler(backend, batch_max_wait=30.0)

    request = scheduler.submit(clause("slow"), MATH)
    with pytest.raises(FusionTimeoutError):
        scheduler.wait(request, timeout=0.05)
    assert scheduler.pending_count() == 0


def test_empty_weights_rejected(make_scheduler):
    scheduler = make_scheduler(RecordingBackend())
    with pytest.raises(ValueError):
        scheduler.submit(clause("x"), FusionWeights.empty())


def test_close_flushes_pending():
    backend = RecordingBackend()
    scheduler = BatchedFusionScheduler(backend, FusionConfig(batch_max_wait=30.0))
    request = scheduler.submit(clause("late"), MATH)
    scheduler.close()

    assert request.future.result(timeout=5) == "<math>late"
    with pytest.raises(RuntimeError):
        scheduler.submit(clause("after close"), MATH)
