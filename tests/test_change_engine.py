"""
Morphos - tests/test_change_engine.py
Single-change pipeline: validation, conflicts, projection, history.
"""

from datetime import datetime, timezone

import pytest
from structlog.testing import capture_logs

from morphos.change_engine import ChangeEngine
from morphos.changes import (
    AbilityDelta,
    BehaviorDelta,
    Change,
    ChangePriority,
    ChangeResult,
    PhysicalDelta,
    TraitDelta,
)
from morphos.config import ChangeEngineConfig
from morphos.events import EVT_CHANGE_APPLIED, EVT_CHANGE_CONFLICTING, EVT_CHANGE_REJECTED
from morphos.state import Ability


def _form(change_id, form, priority=ChangePriority.NORMAL):
    return Change.create(change_id=change_id, priority=priority,
                         traits=TraitDelta(set_forms={"claws": form}))


def test_valid_change_is_applied_and_recorded(creature, change_engine, recorder):
    change = Change.create(change_id="c1", physical=PhysicalDelta(add_features={"gills"}))
    report = change_engine.process_change(creature, change)

    assert report.result is ChangeResult.APPLIED
    assert report.ok
    assert "gills" in creature.physical.features
    history = change_engine.get_history()
    assert [r.change.id for r in history] == ["c1"]
    assert history[0].sequence == 1
    assert history[0].receipt.added_features == frozenset({"gills"})
    assert recorder.of(EVT_CHANGE_APPLIED)[0].data["change_id"] == "c1"


def test_empty_change_is_rejected(creature, change_engine, recorder):
    report = change_engine.process_change(creature, Change.create())
    assert report.result is ChangeResult.REJECTED
    assert change_engine.get_history() == []
    assert len(recorder.of(EVT_CHANGE_REJECTED)) == 1


def test_rejected_change_leaves_state_untouched(creature, change_engine):
    before = creature.copy()
    change = Change.create(traits=TraitDelta(
        set_forms={"claws": "venom_claws"},
        strength_modifiers={"wings": 0.2},
    ))
    report = change_engine.process_change(creature, change)
    assert report.result is ChangeResult.REJECTED
    assert "unknown_target" in {i.code for i in report.issues}
    assert creature == before


def test_warnings_apply_as_partial(creature, change_engine):
    change = Change.create(behavior=BehaviorDelta(remove_behaviors={"swimming"}, add_behaviors={"howl"}))
    report = change_engine.process_change(creature, change)
    assert report.result is ChangeResult.PARTIAL
    assert report.ok
    assert "howl" in creature.behavior.behaviors


def test_stricter_level_rejects_warnings(creature):
    engine = ChangeEngine(ChangeEngineConfig(min_validation_level="warning"))
    change = Change.create(behavior=BehaviorDelta(remove_behaviors={"swimming"}))
    assert engine.process_change(creature, change).result is ChangeResult.REJECTED


def test_projection_below_strength_floor_is_invalid_state(creature, change_engine):
    change = Change.create(traits=TraitDelta(strength_modifiers={"claws": -0.55}))
    report = change_engine.process_change(creature, change)
    assert report.result is ChangeResult.INVALID_STATE
    assert creature.traits.traits["claws"].strength == 0.6
    assert change_engine.get_history() == []


def test_overdrawn_charges_are_invalid_state(creature, change_engine):
    change = Change.create(abilities=AbilityDelta(consume_charges={"spit": 3}))
    assert change_engine.process_change(creature, change).result is ChangeResult.INVALID_STATE
    assert creature.abilities.abilities["spit"].charges == 2


# ----------------------------------------------------------
# Conflicts
# ----------------------------------------------------------

def test_higher_priority_record_blocks_lower_change(creature, change_engine, recorder):
    change_engine.process_change(creature, _form("high", "venom_claws", ChangePriority.HIGH))
    report = change_engine.process_change(creature, _form("low", "barbed_claws", ChangePriority.LOW))

    assert report.result is ChangeResult.CONFLICTING
    assert creature.traits.traits["claws"].form == "venom_claws"
    assert recorder.of(EVT_CHANGE_CONFLICTING)[0].data["change_id"] == "low"


def test_equal_priority_later_change_supersedes(creature, change_engine):
    change_engine.process_change(creature, _form("first", "venom_claws"))
    report = change_engine.process_change(creature, _form("second", "barbed_claws"))

    assert report.result is ChangeResult.APPLIED
    assert report.superseded == ("first",)
    assert creature.traits.traits["claws"].form == "barbed_claws"
    first, second = change_engine.get_history()
    assert first.superseded and not first.live
    assert second.live


def test_higher_priority_change_supersedes_lower_record(creature, change_engine):
    change_engine.process_change(creature, _form("low", "venom_claws", ChangePriority.LOW))
    report = change_engine.process_change(creature, _form("crit", "barbed_claws", ChangePriority.CRITICAL))
    assert report.result is ChangeResult.APPLIED
    assert report.superseded == ("low",)


def test_priority_wins_regardless_of_submission_order(creature):
    outcomes = []
    for order in (("low", "high"), ("high", "low")):
        state = creature.copy()
        engine = ChangeEngine()
        changes = {
            "low": _form("low", "barbed_claws", ChangePriority.LOW),
            "high": _form("high", "venom_claws", ChangePriority.HIGH),
        }
        reports = engine.process_changes(state, [changes[k] for k in order])
        by_id = {r.change_id: r.result for r in reports}
        assert [r.change_id for r in reports] == list(order)
        outcomes.append((state.traits.traits["claws"].form, by_id["high"], by_id["low"]))

    assert outcomes[0] == outcomes[1] == ("venom_claws", ChangeResult.APPLIED, ChangeResult.CONFLICTING)


def test_has_conflicting_changes_is_a_pure_query(creature, change_engine):
    change_engine.process_change(creature, _form("first", "venom_claws"))
    candidate = _form("candidate", "barbed_claws", ChangePriority.CRITICAL)
    assert change_engine.has_conflicting_changes(candidate)
    assert not change_engine.has_conflicting_changes(_form("same", "venom_claws"))
    assert len(change_engine.get_history()) == 1
    assert creature.traits.traits["claws"].form == "venom_claws"


def test_zero_conflict_window_disables_conflict_checks(creature):
    engine = ChangeEngine(ChangeEngineConfig(conflict_window=0))
    engine.process_change(creature, _form("high", "venom_claws", ChangePriority.HIGH))
    report = engine.process_change(creature, _form("low", "barbed_claws", ChangePriority.LOW))
    assert report.result is ChangeResult.APPLIED


def test_equal_priority_changes_together_discard_the_earlier_whole(creature, change_engine, recorder):
    hooks = Change.create(change_id="hooks", traits=TraitDelta(
        set_forms={"claws": "hooks"}, strength_modifiers={"claws": 0.2}))
    blades = _form("blades", "blades")

    reports = change_engine.process_changes(creature, [hooks, blades])

    assert [r.result for r in reports] == [ChangeResult.CONFLICTING, ChangeResult.APPLIED]
    claws = creature.traits.traits["claws"]
    assert claws.form == "blades"
    assert claws.strength == 0.6
    assert [r.change.id for r in change_engine.get_history()] == ["blades"]
    assert recorder.of(EVT_CHANGE_CONFLICTING)[0].data["change_id"] == "hooks"


def test_rejected_change_does_not_displace_a_valid_one(creature, change_engine):
    valid = _form("valid", "hooks")
    broken = Change.create(change_id="broken", traits=TraitDelta(
        set_forms={"claws": "blades"}, strength_modifiers={"wings": 0.1}))

    reports = change_engine.process_changes(creature, [valid, broken])

    assert [r.result for r in reports] == [ChangeResult.APPLIED, ChangeResult.REJECTED]
    assert creature.traits.traits["claws"].form == "hooks"


# ----------------------------------------------------------
# Minimum validation level
# ----------------------------------------------------------

@pytest.mark.parametrize("change", [
    Change.create(traits=TraitDelta(strength_modifiers={"wings": 0.1})),
    Change.create(abilities=AbilityDelta(consume_charges={"pounce": 1})),
    Change.create(traits=TraitDelta(suppress_traits={"fur"}, release_traits={"fur"})),
], ids=["unknown_target", "not_consumable", "self_conflict"])
def test_unappliable_changes_are_rejected_at_critical_level(change, creature):
    engine = ChangeEngine(ChangeEngineConfig(min_validation_level="critical"))
    before = creature.copy()

    report = engine.process_change(creature, change)

    assert report.result is ChangeResult.REJECTED
    assert creature == before
    assert engine.get_history() == []


def test_critical_level_applies_lesser_errors_as_partial(creature):
    engine = ChangeEngine(ChangeEngineConfig(min_validation_level="critical"))
    change = Change.create(abilities=AbilityDelta(
        add_abilities=(Ability(id="pounce", name="Pounce", power=3.0),)))

    report = engine.process_change(creature, change)

    assert report.result is ChangeResult.PARTIAL
    assert {i.code for i in report.issues} == {"already_present"}
    assert creature.abilities.abilities["pounce"].power == 1.2


# ----------------------------------------------------------
# History
# ----------------------------------------------------------

def test_history_keeps_most_recent_records_in_order(creature, change_engine):
    for i in range(150):
        change = Change.create(change_id=f"c{i}", behavior=BehaviorDelta(add_behaviors={f"b{i}"}))
        assert change_engine.process_change(creature, change).ok

    history = change_engine.get_history()
    assert len(history) == 100
    assert [r.change.id for r in history] == [f"c{i}" for i in range(50, 150)]
    assert [r.sequence for r in history] == list(range(51, 151))
    assert [c.id for c in change_engine.get_recent_changes(3)] == ["c147", "c148", "c149"]


def test_history_capacity_is_configurable(creature):
    engine = ChangeEngine(ChangeEngineConfig(history_capacity=2))
    for i in range(4):
        engine.process_change(creature, Change.create(behavior=BehaviorDelta(add_behaviors={f"b{i}"})))
    assert len(engine.get_history()) == 2


def test_records_are_stamped_by_injected_clock(creature):
    stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)
    engine = ChangeEngine(clock=lambda: stamp)
    engine.process_change(creature, Change.create(physical=PhysicalDelta(add_features={"gills"})))
    assert engine.get_history()[0].applied_at == stamp


def test_clear_history(creature, change_engine):
    change_engine.process_change(creature, Change.create(physical=PhysicalDelta(add_features={"gills"})))
    change_engine.clear_history()
    assert change_engine.get_history() == []
    assert not change_engine.can_undo()
    assert change_engine.get_recent_changes(0) == []


def test_applied_change_is_logged(creature, change_engine):
    with capture_logs() as logs:
        change_engine.process_change(creature, _form("c1", "venom_claws"))
    applied = [entry for entry in logs if entry["event"] == "change_applied"]
    assert applied[0]["change_id"] == "c1"
    assert applied[0]["creature_id"] == "stalker-1"
    assert applied[0]["log_level"] == "info"
