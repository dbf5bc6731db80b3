"""
Morphos - morphos/loop.py
Main Simulation Loop: wires the registry, EventBus and the three engines.
========================================================================
Stack:       Python 3.11+ | python-tcod-ecs | structlog
Status:      Integration entry point.

One StressEngine is shared by the simulation (it keeps a ledger per
creature). Each creature entity owns its CreatureState, ChangeEngine and
SynthesisEngine. Engines are constructed here and passed by reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import tcod.ecs

from morphos import data_loader
from morphos.change_engine import ChangeEngine, ChangeReport
from morphos.changes import Change
from morphos.config import SimulationConfig
from morphos.ecs.components import CreatureIdentity, Extinct, Habitat
from morphos.ecs.systems import (
    catalyst_system,
    dissipation_system,
    exposure_system,
    find_creature,
    periodic_schedule_system,
    reset_creature_engines,
    synthesis_system,
    threshold_system,
)
from morphos.events import EventBus
from morphos.exceptions import UnknownCreatureError
from morphos.log import bind_context, get_logger
from morphos.state import CreatureState
from morphos.stress import StressEngine, StressorCatalog, StressSnapshot, ThresholdCrossing
from morphos.synthesis import StageTransition, SynthesisEngine, SynthesisResult, SynthesisState
from morphos.synthesis_rules import SynthesisRuleRegistry

logger = get_logger(__name__)


@dataclass
class TickSummary:
    tick: int
    stress: Dict[str, float] = field(default_factory=dict)
    crossings: List[ThresholdCrossing] = field(default_factory=list)
    started: List[SynthesisResult] = field(default_factory=list)
    transitions: List[StageTransition] = field(default_factory=list)
    completed: List[SynthesisResult] = field(default_factory=list)
    extinct: List[str] = field(default_factory=list)


class SimulationLoop:
    """
    Core executor for the Morphos simulation.
    Wires the EventBus, Registry, StressEngine and per-creature engines.
    """
    def __init__(
        self,
        catalog: Optional[StressorCatalog] = None,
        rules: Optional[SynthesisRuleRegistry] = None,
        config: Optional[SimulationConfig] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.config = config or SimulationConfig()
        self.registry = tcod.ecs.Registry()
        self.bus = bus or EventBus()
        self.catalog = catalog if catalog is not None else data_loader.build_catalog()
        self.rules = rules if rules is not None else data_loader.build_rule_registry()
        self.stress = StressEngine(self.catalog, self.config.stress, self.bus)
        self.tick_count = 0

    # ----------------------------------------------------------
    # Creatures
    # ----------------------------------------------------------

    def spawn_creature(self, state: CreatureState, environment_id: str, *,
                       name: Optional[str] = None, periodic: Optional[Dict[str, int]] = None,
                       resistances: Optional[Dict[str, float]] = None,
                       template_origin: Optional[str] = None) -> tcod.ecs.Entity:
        cid = state.creature_id
        if find_creature(self.registry, cid) is not None:
            raise ValueError(f"Creature already exists: {cid}")

        change_engine = ChangeEngine(self.config.changes, self.bus, creature_id=cid)
        synthesis_engine = SynthesisEngine(self.rules, state, self.config.synthesis,
                                           change_engine=change_engine, bus=self.bus)

        entity = self.registry.new_entity()
        entity.components[CreatureIdentity] = CreatureIdentity(
            creature_id=cid, name=name or cid, template_origin=template_origin
        )
        entity.components[Habitat] = Habitat(environment_id=environment_id, periodic=dict(periodic or {}))
        entity.components[CreatureState] = state
        entity.components[ChangeEngine] = change_engine
        entity.components[SynthesisEngine] = synthesis_engine
        self.stress.register_creature(cid, resistances)

        logger.info("creature_spawned", creature_id=cid, environment=environment_id)
        return entity

    def spawn_from_template(self, template_id: str, creature_id: Optional[str] = None,
                            environment_id: Optional[str] = None) -> tcod.ecs.Entity:
        """Spawn from data/creatures/<template_id>.toml into its (or the given) environment."""
        definition = data_loader.get_creature_def(template_id)
        env_id = environment_id or definition.environment
        periodic: Dict[str, int] = {}
        for env in data_loader.get_environment_defs():
            if env.id == env_id:
                periodic = dict(env.periodic)
        return self.spawn_creature(
            definition.to_state(creature_id or template_id),
            env_id,
            name=definition.name,
            periodic=periodic,
            resistances=definition.resistances,
            template_origin=template_id,
        )

    def get_creature(self, creature_id: str) -> tcod.ecs.Entity:
        entity = find_creature(self.registry, creature_id)
        if entity is None:
            raise UnknownCreatureError(creature_id)
        return entity

    def destroy_creature(self, creature_id: str) -> None:
        entity = self.get_creature(creature_id)
        reset_creature_engines(entity)
        self.stress.remove_creature(creature_id)
        for component in (CreatureIdentity, Habitat, CreatureState, ChangeEngine, SynthesisEngine, Extinct):
            if component in entity.components:
                del entity.components[component]
        logger.info("creature_destroyed", creature_id=creature_id)

    def relocate(self, creature_id: str, environment_id: str,
                 periodic: Optional[Dict[str, int]] = None) -> None:
        habitat = self.get_creature(creature_id).components[Habitat]
        habitat.environment_id = environment_id
        habitat.periodic = dict(periodic or {})
        habitat.active_periodic = set()

    # ----------------------------------------------------------
    # Collaborator surface
    # ----------------------------------------------------------

    def process_change(self, creature_id: str, change: Change) -> ChangeReport:
        entity = self.get_creature(creature_id)
        return entity.components[ChangeEngine].process_change(entity.components[CreatureState], change)

    def undo(self, creature_id: str) -> bool:
        entity = self.get_creature(creature_id)
        return entity.components[ChangeEngine].undo(entity.components[CreatureState])

    def get_stress_state(self, creature_id: str) -> StressSnapshot:
        return self.stress.get_stress_state(creature_id)

    def get_synthesis_state(self, creature_id: str, trait_id: str) -> Optional[SynthesisState]:
        return self.get_creature(creature_id).components[SynthesisEngine].get_synthesis_state(trait_id)

    def is_extinct(self, creature_id: str) -> bool:
        return Extinct in self.get_creature(creature_id).components

    # ----------------------------------------------------------
    # Tick
    # ----------------------------------------------------------

    def tick(self, delta_time: float = 1.0) -> TickSummary:
        """Advance the simulation by one tick of delta_time."""
        self.tick_count += 1
        bind_context(tick=self.tick_count)
        summary = TickSummary(tick=self.tick_count)

        alive_before = {
            e.components[CreatureIdentity].creature_id
            for e in self.registry.Q.all_of(components=[CreatureIdentity]).none_of(components=[Extinct])
        }

        periodic_schedule_system(self.registry, self.tick_count)
        summary.stress = exposure_system(self.registry, self.stress, delta_time)
        summary.crossings = threshold_system(self.registry, self.stress, self.bus,
                                             delta_time, self.tick_count)
        summary.started = catalyst_system(self.registry, self.stress, summary.crossings)
        for outcome in synthesis_system(self.registry, delta_time):
            if isinstance(outcome, StageTransition):
                summary.transitions.append(outcome)
            else:
                summary.completed.append(outcome)
        dissipation_system(self.registry, self.stress, delta_time)

        summary.extinct = sorted(
            e.components[CreatureIdentity].creature_id
            for e in self.registry.Q.all_of(components=[CreatureIdentity, Extinct])
            if e.components[CreatureIdentity].creature_id in alive_before
        )
        logger.debug(
            "tick_completed",
            tick=self.tick_count,
            crossings=len(summary.crossings),
            transitions=len(summary.transitions),
            extinct=summary.extinct,
        )
        return summary

    def run(self, ticks: int, delta_time: float = 1.0) -> List[TickSummary]:
        return [self.tick(delta_time) for _ in range(ticks)]
