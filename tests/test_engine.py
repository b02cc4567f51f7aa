"""
End-to-end tests for the fusion engine.
"""

import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from clausefusion import (
    BatchDispatchError,
    FusionConfig,
    FusionTimeoutError,
    RequestState,
    SegmentationError,
)

import clausefusion.models.router as router_module

from .conftest import (
    EXAMPLE_PROMPT,
    FailingOracle,
    MappingOracle,
    RecordingBackend,
    SlowOracle,
    TablePredictor,
)


def test_example_prompt_routes_each_clause(make_engine):
    engine = make_engine()
    result = engine.fuse_and_generate(EXAMPLE_PROMPT)

    assert len(result) >= 2
    first, second = result.outputs[0], result.outputs[-1]
    assert first.weights.dominant() == "math"
    assert second.weights.dominant() == "creative"
    assert abs(first.weights.total() - 1.0) <= 1e-6

    assert result.text == " ".join(o.text for o in result.outputs)
    assert result.text == (
        "<math>Solve: what is 15% of 200? <creative>Then write a short poem about it."
    )
    assert [c.index for c in result.clauses] == list(range(len(result)))
    assert result.states[0] == RequestState.SEGMENTING
    assert result.states[-1] == RequestState.DONE


def test_result_to_dict(make_engine):
    result = make_engine().fuse_and_generate(EXAMPLE_PROMPT)
    payload = result.to_dict()

    assert payload["text"] == result.text
    assert payload["fusion_weights"] == {"creative": 0.5, "math": 0.5}
    assert [c["weights"] for c in payload["clauses"]] == [{"math": 1.0}, {"creative": 1.0}]
    assert all(c["fallback"] is False for c in payload["clauses"])


def test_order_preserved_when_late_clause_finishes_first(make_engine):
    backend = RecordingBackend(delays={"Solve": 0.3})
    engine = make_engine(backend_=backend)

    result = engine.fuse_and_generate(EXAMPLE_PROMPT)
    assert [o.clause.index for o in result.outputs] == [0, 1]
    assert result.text.startswith("<math>Solve")


def test_clause_without_candidates_falls_back_to_base(make_engine, backend):
    oracle = MappingOracle({"Hello there.": 12.0, "How are you?": 3.0, "Write a poem.": 15.0})
    engine = make_engine(oracle=oracle)

    result = engine.fuse_and_generate("Hello there. How are you? Write a poem.")
    fallback, fused = result.outputs

    assert fallback.fallback is True
    assert fallback.weights.is_empty()
    assert fallback.text == "<base>Hello there. How are you?"
    assert fused.weights.dominant() == "creative"
    assert backend.base_calls == ["Hello there. How are you?"]
    assert engine.diagnostics.get_summary()["fallback_clauses"] == 1.0


def test_repeat_request_is_served_from_cache(make_engine, backend):
    engine = make_engine()
    engine.fuse_and_generate(EXAMPLE_PROMPT)
    batches = len(backend.batches)

    again = engine.fuse_and_generate(EXAMPLE_PROMPT)
    assert all(o.cached for o in again.outputs)
    assert len(backend.batches) == batches
    assert RequestState.CACHE_HIT in again.states
    assert RequestState.GENERATING not in again.states


def test_cache_can_be_disabled_per_request(make_engine, backend):
    engine = make_engine()
    engine.fuse_and_generate(EXAMPLE_PROMPT)
    again = engine.fuse_and_generate(EXAMPLE_PROMPT, {"enable_cache": False})
    assert not any(o.cached for o in again.outputs)


def test_different_lambda_does_not_share_cache(make_engine):
    engine = make_engine()
    engine.fuse_and_generate(EXAMPLE_PROMPT)
    other = engine.fuse_and_generate(EXAMPLE_PROMPT, FusionConfig(lambda_val=0.9))
    assert not any(o.cached for o in other.outputs)


def test_registry_change_invalidates_cache(make_engine, backend):
    engine = make_engine()
    engine.fuse_and_generate(EXAMPLE_PROMPT)
    assert len(engine.cache) == 2

    engine.deactivate_expert("creative")
    assert len(engine.cache) == 0

    result = engine.fuse_and_generate(EXAMPLE_PROMPT)
    assert result.outputs[1].fallback is True
    assert result.outputs[0].weights.dominant() == "math"


def test_registration_api_delegates(make_engine):
    engine = make_engine()
    engine.register_expert("code", "programming", ["python"], storage_handle="h-code")
    assert engine.registry.is_active("code")


def test_segmentation_failure_fails_request(make_engine):
    engine = make_engine(oracle=FailingOracle())
    with pytest.raises(SegmentationError):
        engine.fuse_and_generate(EXAMPLE_PROMPT)
    assert engine.diagnostics.get_summary()["failed_requests"] == 1.0


def test_batch_failure_reaches_request(make_engine):
    engine = make_engine(backend_=RecordingBackend(fail=True))
    with pytest.raises(BatchDispatchError) as info:
        engine.fuse_and_generate(EXAMPLE_PROMPT)
    assert info.value.shared_failure is True
    # Failed computations are not cached
    assert len(engine.cache) == 0


def test_request_timeout(make_engine):
    backend = RecordingBackend(delays={"Solve": 1.0})
    engine = make_engine(backend_=backend)

    with pytest.raises(TimeoutError):
        engine.fuse_and_generate(EXAMPLE_PROMPT, {"request_timeout": 0.1})
    with pytest.raises(FusionTimeoutError):
        engine.fuse_and_generate("Solve for x.", {"request_timeout": 0.1})
    assert engine.scheduler.pending_count() == 0


def test_empty_text(make_engine):
    result = make_engine().fuse_and_generate("")
    assert result.text == ""
    assert len(result) == 0
    assert result.states == (RequestState.SEGMENTING, RequestState.DONE)


def test_config_overrides(make_engine):
    engine = make_engine()
    with pytest.raises(ValueError):
        engine.fuse_and_generate(EXAMPLE_PROMPT, {"temperature": 0.1})
    with pytest.raises(TypeError):
        engine.fuse_and_generate(EXAMPLE_PROMPT, 0.5)

    # A huge margin suppresses the boundary
    result = engine.fuse_and_generate(EXAMPLE_PROMPT, {"ppl_margin_threshold": 100.0})
    assert len(result) == 1
    assert result.clauses[0].text == EXAMPLE_PROMPT


def test_concurrent_requests_share_batches(make_engine, backend):
    engine = make_engine(config=FusionConfig(batch_max_wait=0.3, enable_cache=False))
    prompts = [f"Solve {i} plus {i}." for i in range(6)]

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(engine.fuse_and_generate, prompts))

    assert [r.text for r in results] == [f"<math>{p}" for p in prompts]
    assert max(backend.batch_sizes) >= 2
    assert sum(backend.batch_sizes) == 6


def test_closed_engine_rejects_requests(make_engine):
    engine = make_engine()
    engine.close()
    with pytest.raises(RuntimeError):
        engine.fuse_and_generate(EXAMPLE_PROMPT)


def test_slow_oracle_cannot_outlive_request_timeout(make_engine):
    engine = make_engine(oracle=SlowOracle(0.5))
    start = time.monotonic()
    with pytest.raises(FusionTimeoutError):
        engine.fuse_and_generate(EXAMPLE_PROMPT, {"request_timeout": 0.1})
    assert time.monotonic() - start < 0.4
    assert engine.diagnostics.get_summary()["failed_requests"] == 1.0


def test_huge_logits_are_still_fused(make_engine):
    predictor = TablePredictor({
        "Solve": {"math": 1e17, "creative": 1e17},
        "poem": {"creative": 1.0},
    })
    engine = make_engine(predictor=predictor)

    result = engine.fuse_and_generate(EXAMPLE_PROMPT)
    first, second = result.outputs
    assert first.fallback is False
    assert first.weights.to_dict() == pytest.approx({"creative": 0.5, "math": 0.5})
    assert first.text.startswith("<creative+math>")
    assert second.text == "<creative>Then write a short poem about it."
    assert result.states[-1] == RequestState.DONE


def test_non_finite_logits_are_sanitized(make_engine):
    predictor = TablePredictor({
        "Solve": {"math": float("inf"), "creative": float("nan")},
        "poem": {"creative": 1.0},
    })
    result = make_engine(predictor=predictor).fuse_and_generate(EXAMPLE_PROMPT)

    first = result.outputs[0]
    assert first.fallback is False
    # Nothing finite survives, so both candidates tie
    assert first.weights.to_dict() == pytest.approx({"creative": 0.5, "math": 0.5})


def test_persistent_instability_falls_back_for_that_clause(make_engine, backend, monkeypatch):
    projection = router_module.sparsegen_lin

    def unstable_for_blends(u, lambda_val, eps=1e-10):
        if u.numel() > 1:
            return u * float("nan")
        return projection(u, lambda_val, eps)

    monkeypatch.setattr(router_module, "sparsegen_lin", unstable_for_blends)
    predictor = TablePredictor({
        "Solve": {"math": float("inf"), "creative": 1.0},
        "poem": {"creative": 1.0},
    })
    engine = make_engine(predictor=predictor)

    result = engine.fuse_and_generate(EXAMPLE_PROMPT)
    unstable, fused = result.outputs

    assert unstable.fallback is True
    assert unstable.weights.is_empty()
    assert unstable.text == "<base>Solve: what is 15% of 200?"
    assert fused.fallback is False
    assert fused.text == "<creative>Then write a short poem about it."
    assert backend.base_calls == ["Solve: what is 15% of 200?"]
    assert result.states[-1] == RequestState.DONE


def test_closed_engine_stops_listening_to_registry(make_engine, registry):
    engine = make_engine()
    engine.fuse_and_generate(EXAMPLE_PROMPT)
    engine.close()

    registry.deactivate_expert("creative")
    assert len(engine.cache) == 2


@pytest.mark.parametrize("override", [{"max_workers": 2}, {"embedding_dim": 64}])
def test_engine_settings_cannot_change_per_request(make_engine, override):
    engine = make_engine()
    with pytest.raises(ValueError):
        engine.fuse_and_generate(EXAMPLE_PROMPT, override)
    with pytest.raises(ValueError):
        engine.fuse_and_generate(EXAMPLE_PROMPT, FusionConfig(**override))

    # Restating the engine's own value is accepted
    same = {name: getattr(engine.config, name) for name in override}
    assert len(engine.fuse_and_generate(EXAMPLE_PROMPT, same)) == 2
