"""
Tests for the expert registry.
"""

import pytest

from clausefusion import ExpertRegistry, RegistryError


def test_register_and_lookup():
    registry = ExpertRegistry()
    expert = registry.register_expert("math", "Analytical", ["Solve", "math"], storage_handle="s3://math")

    assert registry.get("math") == expert
    assert expert.keywords == frozenset({"analytical", "solve", "math"})
    assert expert.position is None
    assert "math" in registry
    assert registry.active_ids() == ["math"]


def test_duplicate_active_id_rejected():
    registry = ExpertRegistry()
    registry.register_expert("math", "analytical")
    with pytest.raises(RegistryError):
        registry.register_expert("math", "analytical")
    with pytest.raises(KeyError):
        registry.register_expert("math", "analytical")


def test_unknown_expert():
    registry = ExpertRegistry()
    with pytest.raises(RegistryError, match="Unknown expert: ghost"):
        registry.get("ghost")
    with pytest.raises(RegistryError):
        registry.deactivate_expert("ghost")
    with pytest.raises(RegistryError):
        registry.register_expert("", "empty")


def test_deactivation_is_soft():
    registry = ExpertRegistry()
    registry.register_expert("math", "analytical")
    registry.register_expert("creative", "creative")

    registry.deactivate_expert("math")
    assert not registry.is_active("math")
    assert registry.get("math").active is False
    assert registry.active_ids() == ["creative"]
    assert len(registry) == 2
    assert not registry.all_active(["math", "creative"])
    # Idempotent
    registry.deactivate_expert("math")


def test_reactivation_keeps_position():
    registry = ExpertRegistry()
    registry.register_expert("math", "analytical")
    registry.update_positions({"math": (0.25, -0.5), "unknown": (1.0, 1.0)})
    registry.deactivate_expert("math")

    expert = registry.register_expert("math", "analytical", ["solve"])
    assert expert.active
    assert expert.position == (0.25, -0.5)
    assert "unknown" not in registry


def test_listeners_fire_on_active_set_changes():
    registry = ExpertRegistry()
    events = []
    registry.add_listener(lambda: events.append(registry.version))

    registry.register_expert("math", "analytical")
    registry.deactivate_expert("math")
    registry.deactivate_expert("math")
    registry.update_positions({"math": (0.0, 0.0)})

    assert events == [1, 2]


def test_active_experts_sorted_by_id():
    registry = ExpertRegistry()
    for expert_id in ("zeta", "alpha", "mid"):
        registry.register_expert(expert_id, "domain")
    assert [e.expert_id for e in registry.active_experts()] == ["alpha", "mid", "zeta"]


def test_removed_listener_stops_firing():
    registry = ExpertRegistry()
    events = []

    def listener():
        events.append(registry.version)

    registry.add_listener(listener)
    registry.register_expert("math", "analytical")
    assert registry.remove_listener(listener) is True
    assert registry.remove_listener(listener) is False

    registry.deactivate_expert("math")
    assert events == [1]
