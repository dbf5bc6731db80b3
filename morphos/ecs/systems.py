"""
Morphos - morphos/ecs/systems.py
ECS Systems: Pure functions for one simulation tick.
====================================================
Stack:       Python 3.11+ | python-tcod-ecs

Architecture notes
------------------
- Systems are pure functions operating on a tcod.ecs.Registry.
- Engines are passed in explicitly. There is no global manager.
- Dispatch order per tick is authoritative (see SimulationLoop.tick):
    1. periodic_schedule_system
    2. exposure_system
    3. threshold_system
    4. catalyst_system
    5. synthesis_system
    6. dissipation_system
- Entities carrying Extinct are skipped by every system.
"""

from __future__ import annotations
from typing import Dict, List

import tcod.ecs

from morphos.change_engine import ChangeEngine
from morphos.ecs.components import CreatureIdentity, Extinct, Habitat
from morphos.events import EVT_STRESS_EXTINCTION, CreatureEvent, EventBus
from morphos.log import get_logger
from morphos.stress import StressEngine, ThresholdCrossing, ThresholdType
from morphos.synthesis import StageTransition, SynthesisEngine, SynthesisResult
from morphos.synthesis_rules import CatalystType

logger = get_logger(__name__)

def _living(registry: tcod.ecs.Registry, *components: type) -> List[tcod.ecs.Entity]:
    query = registry.Q.all_of(components=[CreatureIdentity, *components]).none_of(components=[Extinct])
    return sorted(query, key=lambda e: e.components[CreatureIdentity].creature_id)

def find_creature(registry: tcod.ecs.Registry, creature_id: str) -> tcod.ecs.Entity | None:
    for entity in registry.Q.all_of(components=[CreatureIdentity]):
        if entity.components[CreatureIdentity].creature_id == creature_id:
            return entity
    return None

# ============================================================
# STRESS SYSTEMS
# ============================================================

def periodic_schedule_system(registry: tcod.ecs.Registry, tick: int) -> None:
    """Periodic stressors are active on ticks that are a multiple of their period."""
    for entity in _living(registry, Habitat):
        habitat = entity.components[Habitat]
        habitat.active_periodic = {
            sid for sid, period in habitat.periodic.items()
            if period > 0 and tick % period == 0
        }

def exposure_system(registry: tcod.ecs.Registry, stress: StressEngine,
                    delta_time: float) -> Dict[str, float]:
    """Expose every living creature to its habitat. Returns effective stress per creature."""
    levels: Dict[str, float] = {}
    for entity in _living(registry, Habitat):
        cid = entity.components[CreatureIdentity].creature_id
        habitat = entity.components[Habitat]
        levels[cid] = stress.apply_exposure(cid, habitat.environment_id, delta_time,
                                            habitat.active_periodic)
    return levels

def threshold_system(registry: tcod.ecs.Registry, stress: StressEngine, bus: EventBus,
                     delta_time: float, tick: int = 0) -> List[ThresholdCrossing]:
    """
    Evaluate stress thresholds. A CRITICAL crossing or a lethal environment
    marks the entity Extinct; the engines never recover from either.
    """
    crossings: List[ThresholdCrossing] = []
    for entity in _living(registry, Habitat):
        cid = entity.components[CreatureIdentity].creature_id
        fired = stress.evaluate_thresholds(cid, delta_time)
        crossings.extend(fired)
        if any(c.is_fatal for c in fired):
            entity.components[Extinct] = Extinct(cause="critical_stress", tick=tick)
        elif stress.is_lethal(cid, entity.components[Habitat].environment_id):
            entity.components[Extinct] = Extinct(cause="lethal_exposure", tick=tick)
            logger.warning("creature_extinct", creature_id=cid, cause="lethal_exposure")
            bus.emit(CreatureEvent(
                event_key=EVT_STRESS_EXTINCTION,
                source="threshold_system",
                target=cid,
                data={"cause": "lethal_exposure"},
            ))
    return crossings

def dissipation_system(registry: tcod.ecs.Registry, stress: StressEngine, delta_time: float) -> None:
    for entity in _living(registry):
        stress.dissipate(entity.components[CreatureIdentity].creature_id, delta_time)

# ============================================================
# SYNTHESIS SYSTEMS
# ============================================================

def catalyst_system(registry: tcod.ecs.Registry, stress: StressEngine,
                    crossings: List[ThresholdCrossing]) -> List[SynthesisResult]:
    """
    Stress as a synthesis catalyst.
    - A SYNTHESIS_ENABLED crossing begins a STRESS synthesis on every idle
      trait with a registered path, using the dominant stressor as catalyst
      id and effective stress as intensity.
    - Every running STRESS synthesis is fed the current effective stress.
    """
    started: List[SynthesisResult] = []
    enabled = {c.creature_id for c in crossings if c.threshold is ThresholdType.SYNTHESIS_ENABLED}

    for entity in _living(registry, SynthesisEngine):
        cid = entity.components[CreatureIdentity].creature_id
        engine = entity.components[SynthesisEngine]
        intensity = stress.calculate_effective_stress(cid)
        catalyst_id = stress.dominant_stressor(cid) or "ambient"

        for trait_id in engine.active_syntheses():
            engine.record_catalyst_exposure(trait_id, CatalystType.STRESS, catalyst_id, intensity)

        if cid not in enabled:
            continue
        active = set(engine.active_syntheses())
        for trait_id in sorted(engine.creature.traits.available()):
            if trait_id in active:
                continue
            form = engine.creature.traits.traits[trait_id].form
            targets = sorted(engine.rules.possible_targets(form, CatalystType.STRESS))
            if not targets:
                continue
            result = engine.begin_synthesis(trait_id, targets[0], CatalystType.STRESS,
                                            catalyst_id, intensity)
            started.append(result)
    return started

def synthesis_system(registry: tcod.ecs.Registry, delta_time: float) -> List[StageTransition | SynthesisResult]:
    """Progress every synthesis, then complete the ones that reached full completion."""
    outcomes: List[StageTransition | SynthesisResult] = []
    for entity in _living(registry, SynthesisEngine):
        engine = entity.components[SynthesisEngine]
        outcomes.extend(engine.progress_synthesis(delta_time))
        for trait_id in engine.ready_to_complete():
            outcomes.append(engine.complete_synthesis(trait_id))
    return outcomes

def reset_creature_engines(entity: tcod.ecs.Entity) -> None:
    """Clear per-creature history and synthesis buffers before the entity is dropped."""
    if ChangeEngine in entity.components:
        entity.components[ChangeEngine].reset()
    if SynthesisEngine in entity.components:
        entity.components[SynthesisEngine].reset()
