"""
Tests for clause segmentation.
"""

import time

import pytest

from clausefusion import ClauseSegmenter, FusionConfig, FusionTimeoutError, SegmentationError
from clausefusion.segmenter import find_boundaries, split_units

from .conftest import EXAMPLE_PROMPT, FailingOracle, MappingOracle, SequenceOracle, SlowOracle

PPLS = [12.5, 15.3, 8.2, 18.7, 11.4, 6.8, 14.2, 19.5]


def test_find_boundaries_reference_series():
    assert find_boundaries(PPLS, 0.5) == [2, 5]


def test_margin_suppresses_shallow_minima():
    assert find_boundaries([10.0, 9.8, 10.0], 0.5) == []
    assert find_boundaries([10.0, 9.0, 10.0], 0.5) == [1]
    # Endpoints are never boundaries
    assert find_boundaries([1.0, 5.0, 0.5], 0.0) == []


def test_split_units_keeps_offsets():
    text = "First part. Second part!  Third: fourth\nfifth"
    units = split_units(text)
    assert [u.text for u in units] == ["First part.", "Second part!", "Third:", "fourth", "fifth"]
    for unit in units:
        assert text[unit.start:unit.end] == unit.text


def test_split_units_ignores_inner_punctuation():
    units = split_units("Pi is 3.14 roughly. Done.")
    assert [u.text for u in units] == ["Pi is 3.14 roughly.", "Done."]


def test_example_prompt_splits_into_three_units():
    assert len(split_units(EXAMPLE_PROMPT)) == 3


def test_boundary_unit_closes_its_clause():
    text = " ".join(f"Unit {i}." for i in range(len(PPLS)))
    clauses = ClauseSegmenter(SequenceOracle(PPLS)).segment(text, threshold=0.5)

    assert [c.text for c in clauses] == [
        "Unit 0. Unit 1. Unit 2.",
        "Unit 3. Unit 4. Unit 5.",
        "Unit 6. Unit 7.",
    ]
    assert [c.index for c in clauses] == [0, 1, 2]
    for clause in clauses:
        assert text[clause.start:clause.end] == clause.text


def test_oracle_sees_preceding_units_as_context():
    oracle = SequenceOracle([12.0, 4.0, 15.0])
    ClauseSegmenter(oracle).segment(EXAMPLE_PROMPT)

    assert oracle.calls[0] == ([], "Solve:")
    assert oracle.calls[2][0] == ["Solve:", "what is 15% of 200?"]


def test_example_prompt_clauses():
    clauses = ClauseSegmenter(SequenceOracle([12.0, 4.0, 15.0])).segment(EXAMPLE_PROMPT)
    assert [c.text for c in clauses] == [
        "Solve: what is 15% of 200?",
        "Then write a short poem about it.",
    ]


def test_empty_and_single_unit_text():
    segmenter = ClauseSegmenter(FailingOracle())
    assert segmenter.segment("") == []
    assert segmenter.segment("   \n ") == []

    clauses = segmenter.segment("  just one sentence  ")
    assert len(clauses) == 1
    assert clauses[0].text == "just one sentence"


def test_no_boundaries_gives_single_clause():
    text = "Alpha. Beta. Gamma."
    clauses = ClauseSegmenter(MappingOracle({}, default=10.0)).segment(text)
    assert len(clauses) == 1
    assert clauses[0].text == text


def test_oracle_failure_fails_segmentation():
    with pytest.raises(SegmentationError):
        ClauseSegmenter(FailingOracle()).segment("One. Two. Three.")


@pytest.mark.parametrize("bad_score", [0.0, -1.0, float("nan"), float("inf")])
def test_invalid_scores_fail_segmentation(bad_score):
    oracle = SequenceOracle([5.0, bad_score, 5.0])
    with pytest.raises(SegmentationError):
        ClauseSegmenter(oracle).segment("One. Two. Three.")


def test_non_string_input_rejected():
    with pytest.raises(SegmentationError):
        ClauseSegmenter(FailingOracle()).segment(b"bytes are not text")


def test_expired_deadline_times_out():
    segmenter = ClauseSegmenter(SequenceOracle([1.0, 2.0, 3.0]))
    with pytest.raises(TimeoutError):
        segmenter.segment("One. Two. Three.", deadline=time.monotonic() - 1.0)
    with pytest.raises(FusionTimeoutError):
        segmenter.segment("One. Two. Three.", deadline=time.monotonic() - 1.0)


def test_slow_oracle_is_bounded_by_deadline():
    segmenter = ClauseSegmenter(SlowOracle(0.5))
    start = time.monotonic()
    with pytest.raises(FusionTimeoutError):
        segmenter.segment("One. Two. Three.", deadline=start + 0.1)
    assert time.monotonic() - start < 0.4
    segmenter.close()


def test_deadline_leaves_fast_oracle_results_unchanged():
    segmenter = ClauseSegmenter(SequenceOracle([12.0, 4.0, 15.0]))
    clauses = segmenter.segment(EXAMPLE_PROMPT, deadline=time.monotonic() + 5.0)
    assert [c.text for c in clauses] == [
        "Solve: what is 15% of 200?",
        "Then write a short poem about it.",
    ]
    segmenter.close()


def test_short_clauses_are_merged():
    text = " ".join(f"Unit {i}." for i in range(len(PPLS)))
    segmenter = ClauseSegmenter(SequenceOracle(PPLS), FusionConfig(min_clause_chars=20))
    clauses = segmenter.segment(text)

    # "Unit 6. Unit 7." is 15 chars and joins the clause before it
    assert [c.text for c in clauses] == [
        "Unit 0. Unit 1. Unit 2.",
        "Unit 3. Unit 4. Unit 5. Unit 6. Unit 7.",
    ]
    assert [c.index for c in clauses] == [0, 1]
