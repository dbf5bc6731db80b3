"""Shared fixtures for the Morphos test suite."""

from __future__ import annotations

import pytest

from morphos import data_loader
from morphos.change_engine import ChangeEngine
from morphos.config import clear_settings_cache
from morphos.events import EventBus, EventRecorder
from morphos.log import clear_context
from morphos.state import (
    Ability,
    AbilityState,
    BehaviorState,
    CreatureState,
    PhysicalState,
    Trait,
    TraitState,
)
from morphos.stress import ResistanceProfile, StressorCatalog, StressorDef, StressorType
from morphos.synthesis_rules import (
    CatalystType,
    SynthesisOutcome,
    SynthesisRequirement,
    SynthesisRule,
    SynthesisRuleRegistry,
)


@pytest.fixture(autouse=True)
def reset_caches():
    """Settings, data caches and log context never leak between tests."""
    clear_settings_cache()
    data_loader.clear_caches()
    yield
    clear_settings_cache()
    data_loader.clear_caches()
    clear_context()


@pytest.fixture
def creature() -> CreatureState:
    return CreatureState(
        creature_id="stalker-1",
        physical=PhysicalState(size="medium", shape="quadruped", features={"long_tail"}),
        abilities=AbilityState(abilities={
            "pounce": Ability(id="pounce", name="Pounce", power=1.2),
            "spit": Ability(id="spit", name="Spit", power=0.5, charges=2),
        }),
        traits=TraitState(traits={
            "claws": Trait(id="claws", name="Claws", form="claws", strength=0.6, stability=0.9),
            "hide": Trait(id="hide", name="Hide", form="hide", strength=0.5, stability=0.8),
            "fur": Trait(id="fur", name="Fur", form="fur", strength=0.3),
        }),
        behavior=BehaviorState(intelligence="cunning", aggression="territorial",
                               behaviors={"ambush"}),
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def change_engine(bus) -> ChangeEngine:
    return ChangeEngine(bus=bus, creature_id="stalker-1")


def make_stressor(stressor_id: str = "heat", *, type: str = "thermal", rate: float = 0.2,
                  dissipation: float = 0.1, continuous: bool = True, lethal: bool = False,
                  base_resistance: float = 0.0, adaptation_threshold: float = 0.0,
                  acquisition_rate: float = 0.0) -> StressorDef:
    return StressorDef(
        id=stressor_id,
        name=stressor_id.title(),
        type=StressorType(type),
        accumulation_rate=rate,
        dissipation_rate=dissipation,
        is_continuous=continuous,
        is_lethal=lethal,
        resistance=ResistanceProfile(
            base_resistance=base_resistance,
            adaptation_threshold=adaptation_threshold,
            acquisition_rate=acquisition_rate,
        ),
    )


@pytest.fixture
def thermal_catalog() -> StressorCatalog:
    return StressorCatalog([make_stressor("heat")], environments={"desert": ["heat"]})


@pytest.fixture
def rules() -> SynthesisRuleRegistry:
    return SynthesisRuleRegistry([
        SynthesisRule(
            source_form="claws",
            catalyst_type=CatalystType.ENVIRONMENTAL,
            target_form="venom-claws",
            requirement=SynthesisRequirement(min_intensity=0.5),
            outcome=SynthesisOutcome(
                result_form="venom-claws",
                granted_abilities=["venomous_strike"],
                stability_modifier=0.9,
                suppressed_traits=["fur"],
            ),
        ),
        SynthesisRule(
            source_form="hide",
            catalyst_type=CatalystType.STRESS,
            target_form="scaled_hide",
            requirement=SynthesisRequirement(min_intensity=0.3, min_stability=0.5),
        ),
    ])
