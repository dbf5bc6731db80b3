"""
Morphos - tests/test_integration_loop.py
Full simulation loop over seed data and a scripted stress pit.
"""

import pytest

from conftest import make_stressor
from morphos.changes import BehaviorDelta, Change, ChangeSource
from morphos.config import SimulationConfig, StressConfig, ThresholdConfig, ThresholdType
from morphos.ecs.components import CreatureIdentity, Extinct, Habitat
from morphos.events import EVT_SYNTHESIS_COMPLETED, EventRecorder
from morphos.exceptions import UnknownCreatureError
from morphos.loop import SimulationLoop
from morphos.narrative import NarrativeGenerator
from morphos.stress import StressorCatalog
from morphos.synthesis import SynthesisStage
from morphos.synthesis_rules import (
    CatalystType,
    SynthesisOutcome,
    SynthesisRequirement,
    SynthesisRule,
    SynthesisRuleRegistry,
)


@pytest.fixture
def pit_sim():
    catalog = StressorCatalog([make_stressor("pressure", type="physical", rate=0.25)],
                              environments={"pit": ["pressure"]})
    rules = SynthesisRuleRegistry([SynthesisRule(
        source_form="hide",
        catalyst_type=CatalystType.STRESS,
        target_form="scaled_hide",
        requirement=SynthesisRequirement(min_intensity=0.3, min_stability=0.2),
        outcome=SynthesisOutcome(result_form="scaled_hide", suppressed_traits=["fur"]),
    )])
    config = SimulationConfig(stress=StressConfig(thresholds=[
        ThresholdConfig(type=ThresholdType.SYNTHESIS_ENABLED, value=0.5, duration=1.0),
    ]))
    return SimulationLoop(catalog=catalog, rules=rules, config=config)


def test_seed_world_runs_and_volcanic_crawler_perishes():
    sim = SimulationLoop()
    recorder = EventRecorder(sim.bus)
    sim.spawn_from_template("marsh_stalker")
    sim.spawn_from_template("ash_crawler")

    summaries = sim.run(10)

    assert [s.tick for s in summaries] == list(range(1, 11))
    assert summaries[0].stress["ash_crawler"] > 0.0
    assert summaries[0].stress["marsh_stalker"] > 0.0
    assert sim.is_extinct("ash_crawler")
    assert sim.get_creature("ash_crawler").components[Extinct].cause == "critical_stress"
    assert sum(s.extinct.count("ash_crawler") for s in summaries) == 1
    assert "ash_crawler" not in summaries[-1].stress

    names = {"ash_crawler": "Ash Crawler", "marsh_stalker": "Marsh Stalker"}
    lines = NarrativeGenerator.chronicle_to_text(recorder.events, names)
    assert "Ash Crawler can endure no more." in lines


def test_swamp_habitat_carries_periodic_famine():
    sim = SimulationLoop()
    entity = sim.spawn_from_template("marsh_stalker")
    habitat = entity.components[Habitat]
    assert habitat.environment_id == "swamp"
    assert habitat.periodic == {"famine": 4}

    sim.run(4)
    assert "famine" in sim.get_stress_state("marsh_stalker").intensities
    assert sim.get_stress_state("marsh_stalker").resistances["environmental"] >= 0.1


def test_stress_catalysed_synthesis_completes(pit_sim, creature):
    recorder = EventRecorder(pit_sim.bus)
    pit_sim.spawn_creature(creature, "pit", name="Stalker")

    summaries = pit_sim.run(8)

    started = [r for s in summaries for r in s.started]
    assert [(r.trait_id, r.success) for r in started] == [("hide", True)]
    assert summaries[1].started[0].stage is SynthesisStage.INITIATING

    completed = [r for s in summaries for r in s.completed]
    assert len(completed) == 1 and completed[0].success
    hide = creature.traits.traits["hide"]
    assert hide.form == "scaled_hide"
    assert hide.synthesis_level == 1
    assert creature.traits.traits["fur"].suppressed
    assert pit_sim.get_synthesis_state("stalker-1", "hide").stage is SynthesisStage.NONE
    assert recorder.of(EVT_SYNTHESIS_COMPLETED)[0].target == "stalker-1"

    assert pit_sim.undo("stalker-1")
    assert creature.traits.traits["hide"].form == "hide"


def test_collaborator_surface(pit_sim, creature):
    pit_sim.spawn_creature(creature, "pit")
    with pytest.raises(ValueError):
        pit_sim.spawn_creature(creature.copy(), "pit")

    report = pit_sim.process_change("stalker-1", Change.create(
        source=ChangeSource.ENVIRONMENT, behavior=BehaviorDelta(add_behaviors={"digging"})))
    assert report.ok
    assert "digging" in creature.behavior.behaviors

    pit_sim.relocate("stalker-1", "nowhere")
    assert pit_sim.tick().stress == {"stalker-1": 0.0}

    pit_sim.destroy_creature("stalker-1")
    with pytest.raises(UnknownCreatureError):
        pit_sim.get_creature("stalker-1")
    with pytest.raises(UnknownCreatureError):
        pit_sim.get_stress_state("stalker-1")
    assert list(pit_sim.registry.Q.all_of(components=[CreatureIdentity])) == []
