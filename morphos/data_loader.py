"""
Morphos - morphos/data_loader.py
JIT Data Loaders for TOML seed data powered by Pydantic.
========================================================
Stack:       Python 3.11+ | Pydantic v2 | tomllib
Status:      Core data validation and loading layer.

Layout under DATA_DIR:
    stressors.toml          [[stressors]]
    environments.toml       [[environments]]
    synthesis_rules.toml    [stability] + [[rules]]
    creatures/<id>.toml     one creature template per file

Collections that are missing load as empty. A missing single definition
raises DataNotFoundError. Malformed or invalid files raise ConfigError.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from morphos.config import StabilityFactors
from morphos.exceptions import ConfigError, DataNotFoundError
from morphos.state import (
    Ability,
    AbilityState,
    BehaviorState,
    CreatureState,
    PhysicalState,
    Trait,
    TraitState,
)
from morphos.stress import StressorCatalog, StressorDef
from morphos.synthesis_rules import SynthesisRule, SynthesisRuleRegistry

# ================================================================================
# SCHEMAS
# ================================================================================

class StressorCollectionDef(BaseModel):
    model_config = ConfigDict(frozen=True)
    stressors: List[StressorDef] = Field(default_factory=list)

class EnvironmentDef(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    name: str
    description: str = ""
    stressors: List[str] = Field(default_factory=list)
    # periodic stressor id -> active every N ticks
    periodic: Dict[str, int] = Field(default_factory=dict)

class EnvironmentCollectionDef(BaseModel):
    model_config = ConfigDict(frozen=True)
    environments: List[EnvironmentDef] = Field(default_factory=list)

class SynthesisRuleCollectionDef(BaseModel):
    model_config = ConfigDict(frozen=True)
    stability: StabilityFactors = Field(default_factory=StabilityFactors)
    rules: List[SynthesisRule] = Field(default_factory=list)

class TraitDef(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    name: str
    form: str
    strength: float = 0.5
    stability: float = 1.0
    synthesis_level: int = 0
    category: str = "physical"

class AbilityDef(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    name: str
    power: float = 1.0
    active: bool = True
    charges: Optional[int] = None
    granted_by: Optional[str] = None

class CreatureDef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    environment: str
    size: str = "medium"
    shape: str = "quadruped"
    features: List[str] = Field(default_factory=list)
    intelligence: str = "animal"
    aggression: str = "neutral"
    social_structure: str = "solitary"
    behaviors: List[str] = Field(default_factory=list)
    traits: List[TraitDef] = Field(default_factory=list)
    abilities: List[AbilityDef] = Field(default_factory=list)
    resistances: Dict[str, float] = Field(default_factory=dict)

    def to_state(self, creature_id: str) -> CreatureState:
        """Fresh, mutable CreatureState built from this template."""
        return CreatureState(
            creature_id=creature_id,
            physical=PhysicalState(size=self.size, shape=self.shape, features=set(self.features)),
            abilities=AbilityState(abilities={a.id: Ability(**a.model_dump()) for a in self.abilities}),
            traits=TraitState(traits={t.id: Trait(**t.model_dump()) for t in self.traits}),
            behavior=BehaviorState(
                intelligence=self.intelligence,
                aggression=self.aggression,
                social_structure=self.social_structure,
                behaviors=set(self.behaviors),
            ),
        )

# ================================================================================
# LOADERS & CACHE (JIT)
# ================================================================================

_STRESSOR_CACHE: Optional[List[StressorDef]] = None
_ENVIRONMENT_CACHE: Optional[List[EnvironmentDef]] = None
_RULES_CACHE: Optional[SynthesisRuleCollectionDef] = None
_CREATURE_CACHE: Dict[str, CreatureDef] = {}


DATA_DIR = Path(__file__).parent.parent / "data"

def clear_caches() -> None:
    """Drops every cached definition. Call after pointing DATA_DIR elsewhere."""
    global _STRESSOR_CACHE, _ENVIRONMENT_CACHE, _RULES_CACHE
    _STRESSOR_CACHE = None
    _ENVIRONMENT_CACHE = None
    _RULES_CACHE = None
    _CREATURE_CACHE.clear()

def set_data_dir(path: Path) -> None:
    global DATA_DIR
    DATA_DIR = Path(path)
    clear_caches()

def _read_toml(path: Path) -> Dict[str, Any]:
    with open(path, "rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Malformed TOML: {exc}", source_file=str(path)) from exc

def _parse(model: type, data: Dict[str, Any], path: Path) -> Any:
    try:
        return model(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid {model.__name__}: {exc}", source_file=str(path)) from exc

def get_stressor_defs() -> List[StressorDef]:
    """Loads all stressor definitions from TOML. Cached globally."""
    global _STRESSOR_CACHE
    if _STRESSOR_CACHE is not None:
        return _STRESSOR_CACHE

    path = DATA_DIR / "stressors.toml"
    if not path.exists():
        return []

    _STRESSOR_CACHE = _parse(StressorCollectionDef, _read_toml(path), path).stressors
    return _STRESSOR_CACHE

def get_environment_defs() -> List[EnvironmentDef]:
    """Loads all environment definitions from TOML. Cached globally."""
    global _ENVIRONMENT_CACHE
    if _ENVIRONMENT_CACHE is not None:
        return _ENVIRONMENT_CACHE

    path = DATA_DIR / "environments.toml"
    if not path.exists():
        return []

    _ENVIRONMENT_CACHE = _parse(EnvironmentCollectionDef, _read_toml(path), path).environments
    return _ENVIRONMENT_CACHE

def get_environment_def(environment_id: str) -> EnvironmentDef:
    for env in get_environment_defs():
        if env.id == environment_id:
            return env
    raise DataNotFoundError("Environment definition not found",
                            details={"environment_id": environment_id})

def get_synthesis_rules() -> SynthesisRuleCollectionDef:
    """Loads the synthesis rule table from TOML. Cached globally."""
    global _RULES_CACHE
    if _RULES_CACHE is not None:
        return _RULES_CACHE

    path = DATA_DIR / "synthesis_rules.toml"
    if not path.exists():
        return SynthesisRuleCollectionDef()

    _RULES_CACHE = _parse(SynthesisRuleCollectionDef, _read_toml(path), path)
    return _RULES_CACHE

def get_creature_def(creature_id: str) -> CreatureDef:
    """JIT loads a creature template from TOML."""
    if creature_id in _CREATURE_CACHE:
        return _CREATURE_CACHE[creature_id]

    path = DATA_DIR / "creatures" / f"{creature_id}.toml"
    if not path.exists():
        raise DataNotFoundError("Creature definition not found", details={"path": str(path)})

    creature = _parse(CreatureDef, _read_toml(path), path)
    _CREATURE_CACHE[creature_id] = creature
    return creature

def get_creature_defs() -> Dict[str, CreatureDef]:
    """Pre-loads every creature template."""
    path = DATA_DIR / "creatures"
    if not path.exists():
        return {}

    for file in sorted(path.glob("*.toml")):
        if file.stem not in _CREATURE_CACHE:
            get_creature_def(file.stem)

    return dict(_CREATURE_CACHE)

# ================================================================================
# BUILDERS
# ================================================================================

def build_catalog() -> StressorCatalog:
    """StressorCatalog with every loaded stressor mapped to its environments."""
    environments = get_environment_defs()
    catalog = StressorCatalog(get_stressor_defs())
    for env in environments:
        for sid in [*env.stressors, *env.periodic]:
            if sid not in catalog:
                raise ConfigError(
                    f"Environment '{env.id}' references unknown stressor '{sid}'",
                    source_file=str(DATA_DIR / "environments.toml"),
                )
            catalog.map_to_environment(sid, env.id)
    return catalog

def build_rule_registry() -> SynthesisRuleRegistry:
    table = get_synthesis_rules()
    return SynthesisRuleRegistry(table.rules, stability=table.stability)
